"""
Main FastAPI application for the PandasAI MCP Service.

This module sets up the FastAPI application, including:
- The `/mcp` endpoint, which hands `{method, params}` to the protocol dispatcher.
- The `/sse` Server-Sent Events stream for connection, heartbeat and status events.
- REST routes for upload, analysis, LLM configuration, status and docs.
- Custom exception handlers for consistent error responses.
- Structlog integration for structured logging.
- Request ID middleware for tracing.
"""

import argparse
import logging # Still needed for some structlog stdlib interactions
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

import aiofiles
import aiofiles.os
import structlog
import uvicorn
from fastapi import Body, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request as StarletteRequest

from . import exceptions
from .analysis import AnalysisEngine
from .config import Settings, settings as default_settings
from .events import EventBroadcaster, utc_timestamp
from .llm_providers import LLMProviderFactory
from .loaders import detect_extension, load_table
from .protocol import ProtocolDispatcher, error_envelope, is_error
from .session import Dataset, SessionStore
from .tools import ToolRouter


# --- Structlog Configuration ---
def configure_logging(level: str = "INFO") -> None:
    """Routes structlog and stdlib logging through one JSON handler on the root logger."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    json_formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
        ]
    )

    root_logger = logging.getLogger()
    if not any(getattr(h, "_pandasai_mcp", False) for h in root_logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(json_formatter)
        handler._pandasai_mcp = True
        root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

configure_logging(default_settings.LOG_LEVEL)

logger = structlog.get_logger(__name__)

TableLoader = Callable[..., Awaitable[Dataset]]


# --- Request ID Middleware ---
class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to add a unique request ID to each request and log context."""
    async def dispatch(self, request: StarletteRequest, call_next: RequestResponseEndpoint):
        """
        Clears context variables, binds a new request_id, and processes the request.
        The request_id is also added to the response headers.
        """
        structlog.contextvars.clear_contextvars()
        request_id: str = str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# Request models
class AnalyzeRequest(BaseModel):
    """Request model for /analyze."""
    model_config = ConfigDict(extra="ignore")

    query: Optional[str] = Field(default=None, description="The question to answer about the uploaded data.")
    backend_config: Optional[Dict[str, Any]] = Field(default=None, description="Optional LLM configuration applied before the analysis.")
    llm_config: Optional[Dict[str, Any]] = Field(default=None, description="Alias of backend_config.")


def error_body(message: str, kind: str) -> Dict[str, Any]:
    return {"error": message, "message": message, "kind": kind}


def status_code_for(exc: exceptions.MCPServiceError) -> int:
    if isinstance(exc, exceptions.UpstreamCollaboratorFailure):
        return 500
    if isinstance(exc, exceptions.FileSizeExceededError):
        return 413 # Payload Too Large
    if isinstance(exc, exceptions.UnsupportedFormatError):
        return 415 # Unsupported Media Type
    if isinstance(exc, (exceptions.NoDatasetLoadedError, exceptions.NoBackendConfiguredError,
                        exceptions.FileUploadError, exceptions.InvalidRequestError)):
        return 400
    return 500


def create_app(
    app_settings: Optional[Settings] = None,
    session_store: Optional[SessionStore] = None,
    configurator: Optional[Callable[[Any], Awaitable[Any]]] = None,
    engine: Optional[Any] = None,
    loader: Optional[TableLoader] = None,
    broadcaster: Optional[EventBroadcaster] = None
) -> FastAPI:
    """
    Builds the FastAPI application around one session.

    Every collaborator can be injected; by default the app uses the pandas
    table loader, `LLMProviderFactory.configure` and `AnalysisEngine`.
    """
    cfg = app_settings or default_settings
    store = session_store or SessionStore()
    router = ToolRouter(
        store,
        configurator=configurator or LLMProviderFactory.configure,
        engine=engine or AnalysisEngine(sample_rows=cfg.ANALYSIS_SAMPLE_ROWS, system_prompt=cfg.ANALYSIS_SYSTEM_PROMPT),
    )
    dispatcher = ProtocolDispatcher(router, server_name=cfg.SERVICE_NAME, server_version=cfg.SERVICE_VERSION)
    events = broadcaster or EventBroadcaster(
        store,
        heartbeat_interval=cfg.SSE_HEARTBEAT_SECONDS,
        status_interval=cfg.SSE_STATUS_SECONDS,
        queue_size=cfg.SSE_QUEUE_SIZE,
        disconnect_poll_interval=cfg.SSE_DISCONNECT_POLL_SECONDS,
        service_name=cfg.SERVICE_NAME,
        service_version=cfg.SERVICE_VERSION,
    )
    load = loader or load_table

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("application_startup", service=cfg.SERVICE_NAME, version=cfg.SERVICE_VERSION, upload_dir=str(cfg.UPLOAD_DIR))
        yield
        logger.info("application_shutdown_initiated", sse_subscribers=events.subscriber_count)
        await events.close_all()

    app = FastAPI(
        title=cfg.SERVICE_NAME,
        version=cfg.SERVICE_VERSION,
        description="Natural-language analysis of uploaded CSV/Excel data over MCP and REST.",
        docs_url="/swagger",
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.settings = cfg
    app.state.session_store = store
    app.state.tool_router = router
    app.state.dispatcher = dispatcher
    app.state.broadcaster = events

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception Handlers
    @app.exception_handler(exceptions.UpstreamCollaboratorFailure)
    async def upstream_failure_handler(request: Request, exc: exceptions.UpstreamCollaboratorFailure) -> JSONResponse:
        """Handles collaborator failures (load, backend configuration, analysis) with a 500 response."""
        logger.error("upstream_collaborator_failure", error_type=type(exc).__name__, original_error=exc.original_error, path=str(request.url.path))
        return JSONResponse(status_code=500, content=error_body(exc.message, exc.kind))

    @app.exception_handler(exceptions.MCPServiceError)
    async def service_error_handler(request: Request, exc: exceptions.MCPServiceError) -> JSONResponse:
        """Handles the remaining service errors, choosing the status code from the error type."""
        status_code = status_code_for(exc)
        logger.warn("service_error", error_kind=exc.kind, status_code=status_code, path=str(request.url.path), message=exc.message)
        return JSONResponse(status_code=status_code, content=error_body(exc.message, exc.kind))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        message = "Invalid request body."
        logger.warn("request_validation_error", path=str(request.url.path), errors=exc.errors())
        return JSONResponse(status_code=400, content=error_body(message, "ValidationError"))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            logger.warn("endpoint_not_found", path=str(request.url.path))
            return JSONResponse(status_code=404, content={"error": "Endpoint not found", "path": request.url.path})
        logger.warn("http_exception_occurred", status_code=exc.status_code, detail=exc.detail, path=str(request.url.path))
        return JSONResponse(status_code=exc.status_code, content=error_body(str(exc.detail), "HTTPError"), headers=exc.headers)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catches any unhandled exceptions and returns a generic 500 error."""
        logger.error("unhandled_exception", path=str(request.url.path), error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "message": str(exc)},
        )

    # --- MCP protocol ---
    @app.post("/mcp")
    async def mcp_endpoint(request: Request) -> JSONResponse:
        """MCP protocol endpoint: `{method, params}` in, `{result}` or `{error}` out."""
        try:
            body = await request.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            envelope = await dispatcher.dispatch(body.get("method"), body.get("params"))
        else:
            logger.warn("mcp_invalid_body")
            envelope = error_envelope("MCP request body must be a JSON object with 'method' and 'params'.")

        return JSONResponse(status_code=400 if is_error(envelope) else 200, content=envelope)

    # --- SSE ---
    @app.get("/sse")
    async def sse_endpoint(request: Request) -> StreamingResponse:
        """Server-Sent Events stream of connection, heartbeat and status events."""
        return StreamingResponse(
            events.stream(request.is_disconnected),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    # --- REST API ---
    @app.post("/upload")
    async def upload_file(file: Optional[UploadFile] = File(None)) -> Dict[str, Any]:
        """Upload a CSV/Excel file; it replaces the current dataset."""
        if file is None or not file.filename:
            raise exceptions.FileUploadError("Please select a file to upload.")

        filename = Path(file.filename).name
        detect_extension(filename, cfg.ALLOWED_EXTENSIONS)

        content = await file.read()
        if len(content) > cfg.MAX_UPLOAD_FILE_SIZE_BYTES:
            raise exceptions.FileSizeExceededError(
                filename=filename,
                max_size_mb=cfg.MAX_UPLOAD_FILE_SIZE_BYTES / (1024 * 1024)
            )

        staged_path = cfg.UPLOAD_DIR / f"{uuid.uuid4()}-{filename}"
        logger.info("upload_received", filename=filename, size_bytes=len(content), staged_path=str(staged_path))
        async with aiofiles.open(staged_path, 'wb') as f:
            await f.write(content)

        try:
            dataset = await load(staged_path, source_name=filename, allowed_extensions=cfg.ALLOWED_EXTENSIONS)
        finally:
            await aiofiles.os.remove(staged_path)

        store.set_dataset(dataset)
        return {
            "message": "File uploaded successfully",
            "filename": dataset.source_name,
            "rows": dataset.row_count,
            "columns": dataset.column_count,
            "preview": dataset.preview(cfg.PREVIEW_ROWS),
        }

    @app.post("/analyze")
    async def analyze(request: AnalyzeRequest) -> Dict[str, Any]:
        """Answer a question about the current dataset."""
        if not request.query:
            raise exceptions.InvalidRequestError("Please provide an analysis query.")
        arguments: Dict[str, Any] = {"query": request.query}
        inline_config = request.backend_config if request.backend_config is not None else request.llm_config
        if inline_config is not None:
            arguments["backend_config"] = inline_config
        return await router.analyze_data(arguments)

    async def configure_llm(config: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
        """Configure the LLM backend."""
        return await router.configure_llm(config)

    app.add_api_route("/configure-llm", configure_llm, methods=["POST"])
    app.add_api_route("/configure-backend", configure_llm, methods=["POST"])

    @app.get("/status")
    async def status() -> Dict[str, Any]:
        """Service identity plus the session snapshot. Read-only."""
        return {
            "status": "running",
            "service": cfg.SERVICE_NAME,
            "version": cfg.SERVICE_VERSION,
            "timestamp": utc_timestamp(),
            **store.snapshot(),
        }

    @app.get("/docs")
    async def docs() -> Dict[str, Any]:
        return {
            "title": f"{cfg.SERVICE_NAME} API",
            "version": cfg.SERVICE_VERSION,
            "description": "Natural-language analysis of CSV/Excel data over MCP",
            "endpoints": {
                "POST /mcp": "MCP protocol endpoint",
                "GET /sse": "Server-Sent Events stream",
                "POST /upload": "Upload a CSV or Excel file",
                "POST /analyze": "Analyze the uploaded data",
                "POST /configure-llm": "Configure the LLM backend",
                "GET /status": "Service status",
                "GET /docs": "API documentation",
            },
            "sse": {
                "endpoint": "/sse",
                "description": "Server-Sent Events with service status and heartbeats",
                "events": {
                    "connection": "Sent once when the stream opens",
                    "heartbeat": f"Every {cfg.SSE_HEARTBEAT_SECONDS:g} seconds",
                    "status": f"On connect and every {cfg.SSE_STATUS_SECONDS:g} seconds",
                },
            },
        }

    @app.get("/")
    async def root() -> Dict[str, Any]:
        return {
            "message": cfg.SERVICE_NAME,
            "version": cfg.SERVICE_VERSION,
            "docs": "/docs",
            "status": "/status",
        }

    return app


app = create_app()


def serve(argv: Optional[Sequence[str]] = None) -> None:
    """Command-line entry point: `pandasai-mcp start [--host H] [--port P]`."""
    parser = argparse.ArgumentParser(prog="pandasai-mcp", description=default_settings.SERVICE_NAME)
    subparsers = parser.add_subparsers(dest="command")
    start_parser = subparsers.add_parser("start", help="Run the HTTP service")
    start_parser.add_argument("--host", default=default_settings.SERVER_HOST, help="Bind address")
    start_parser.add_argument("--port", type=int, default=default_settings.SERVER_PORT, help="Bind port")
    start_parser.add_argument("--log-level", default=default_settings.LOG_LEVEL, help="Root log level")
    args = parser.parse_args(argv)

    host = getattr(args, "host", default_settings.SERVER_HOST)
    port = getattr(args, "port", default_settings.SERVER_PORT)
    log_level = getattr(args, "log_level", default_settings.LOG_LEVEL)

    configure_logging(log_level)
    logger.info("service_starting", address=f"http://{host}:{port}", docs=f"http://{host}:{port}/docs", status=f"http://{host}:{port}/status")
    uvicorn.run(app, host=host, port=port, log_level=log_level.lower())


if __name__ == "__main__":
    serve()
