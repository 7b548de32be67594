"""
Custom exception classes for the PandasAI MCP Service.

Every exception carries a display-ready `message` and a short `kind` label.
The protocol dispatcher turns them into `{"error": {"code", "message"}}`
envelopes, and the FastAPI application maps them to HTTP responses through
dedicated exception handlers.
"""

class MCPServiceError(Exception):
    """Base class for exceptions in this application."""
    kind = "ServiceError"

    def __init__(self, message: str = "An error occurred in the MCP service."):
        self.message = message
        super().__init__(self.message)

class InvalidRequestError(MCPServiceError):
    """Raised when a request is missing a required field or has the wrong shape."""
    kind = "InvalidRequest"

class UnsupportedMethodError(MCPServiceError):
    """Raised when the protocol method is not one the dispatcher knows."""
    kind = "UnsupportedMethod"

    def __init__(self, method: object):
        """
        Initializes UnsupportedMethodError.

        Args:
            method: The method value received in the request, as sent.
        """
        super().__init__(message=f"Unsupported MCP method: {method}")
        self.method = method

class UnknownToolError(MCPServiceError):
    """Raised when `tools/call` names a tool the router does not provide."""
    kind = "UnknownTool"

    def __init__(self, tool_name: object):
        super().__init__(message=f"Unknown tool: {tool_name}")
        self.tool_name = tool_name

class NoDatasetLoadedError(MCPServiceError):
    """Raised when an analysis is requested before any file was uploaded."""
    kind = "NoDatasetLoaded"

    def __init__(self):
        super().__init__(message="No dataset loaded. Please upload a data file first.")

class NoBackendConfiguredError(MCPServiceError):
    """Raised when an analysis is requested before an LLM backend was configured."""
    kind = "NoBackendConfigured"

    def __init__(self):
        super().__init__(message="No LLM backend configured. Please configure an LLM first.")

class UnsupportedFormatError(MCPServiceError):
    """Raised when an uploaded file has an extension the table loader cannot read."""
    kind = "UnsupportedFormat"

    def __init__(self, filename: str, extension: str = None):
        """
        Initializes UnsupportedFormatError.

        Args:
            filename: The name of the file with the unsupported type.
            extension: Optional. The detected file extension.
        """
        detail = f"Unsupported file format for '{filename}'. Please upload a CSV or Excel file."
        if extension:
            detail += f" (Extension: {extension})"
        super().__init__(message=detail)
        self.filename = filename
        self.extension = extension

class UpstreamCollaboratorFailure(MCPServiceError):
    """
    Raised when a collaborator (table loader, backend configurator, analysis
    engine) fails. The message is the stage prefix followed by the original
    error message.
    """
    kind = "UpstreamCollaboratorFailure"
    prefix = "Upstream call failed: "

    def __init__(self, original_error: str):
        """
        Initializes UpstreamCollaboratorFailure.

        Args:
            original_error: A string representation of the original error.
        """
        super().__init__(message=f"{self.prefix}{original_error}")
        self.original_error = original_error

class DatasetLoadError(UpstreamCollaboratorFailure):
    """Raised when the table loader cannot parse an uploaded file."""
    prefix = "Failed to load file: "

class BackendConfigurationError(UpstreamCollaboratorFailure):
    """Raised when the backend configurator rejects a configuration."""
    prefix = "Backend configuration failed: "

class AnalysisFailedError(UpstreamCollaboratorFailure):
    """Raised when the analysis engine fails to answer a question."""
    prefix = "Analysis failed: "

class FileUploadError(MCPServiceError):
    """Base class for errors that occur while receiving an upload."""
    kind = "FileUploadError"

    def __init__(self, message: str = "File upload failed."):
        super().__init__(message=message)

class FileSizeExceededError(FileUploadError):
    """Raised when an uploaded file exceeds the configured size limit."""
    kind = "FileSizeExceeded"

    def __init__(self, filename: str, max_size_mb: float):
        """
        Initializes FileSizeExceededError.

        Args:
            filename: The name of the file that exceeded the size limit.
            max_size_mb: The maximum allowed file size in megabytes.
        """
        super().__init__(message=f"File '{filename}' exceeds maximum size of {max_size_mb:.2f} MB.")
        self.filename = filename
        self.max_size_mb = max_size_mb

class LLMProviderError(MCPServiceError):
    """Raised for errors related to LLM provider setup or interactions."""
    kind = "LLMProviderError"

    def __init__(self, provider_name: str, message: str):
        super().__init__(message=f"Error with LLM provider '{provider_name}': {message}")
        self.provider_name = provider_name
