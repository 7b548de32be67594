"""
Tool routing for `tools/call`.

`ToolRouter` maps a tool name to one of the application operations
(`analyze_data`, `configure_llm`) and runs it against the shared
`SessionStore`. Collaborators are injected so the router can be exercised
without network access:

- `configurator`: awaitable `(config) -> backend handle`
- `engine`: object with awaitable `analyze(dataset, query, backend) -> {"answer": ...}`
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from mcp import types

from . import exceptions
from .session import SessionStore

logger = structlog.get_logger(__name__)

DEFAULT_ANSWER = "Analysis complete"

BackendConfigurator = Callable[[Any], Awaitable[Any]]


def text_content(text: str) -> Dict[str, Any]:
    """Wraps text into the tool-result content envelope."""
    content = types.TextContent(type="text", text=text)
    return {"content": [content.model_dump(mode="json", exclude_none=True)]}


TOOL_DEFINITIONS: List[types.Tool] = [
    types.Tool(
        name="analyze_data",
        description="Ask a natural-language question about the currently uploaded CSV/Excel table.",
        inputSchema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The question to answer about the data."},
                "backend_config": {
                    "type": "object",
                    "description": "Optional LLM configuration. Replaces the configured backend for this and later calls.",
                },
            },
            "required": ["query"],
        },
    ),
    types.Tool(
        name="configure_llm",
        description="Configure the LLM backend used by analyze_data.",
        inputSchema={
            "type": "object",
            "properties": {
                "provider": {"type": "string", "enum": ["openai", "anthropic", "deepseek"]},
                "model": {"type": "string"},
                "api_key": {"type": "string"},
                "base_url": {"type": "string"},
                "temperature": {"type": "number"},
                "max_tokens": {"type": "integer"},
            },
            "required": ["model"],
        },
    ),
]


class ToolRouter:
    """Second-level dispatch from tool name to application operation."""

    def __init__(self, session_store: SessionStore, configurator: BackendConfigurator, engine: Any) -> None:
        self.session_store = session_store
        self.configurator = configurator
        self.engine = engine
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            "analyze_data": self.analyze_data,
            "configure_llm": self.configure_llm,
        }

    @property
    def tool_names(self) -> List[str]:
        return list(self._handlers)

    def list_tools(self) -> List[types.Tool]:
        return [tool for tool in TOOL_DEFINITIONS if tool.name in self._handlers]

    async def call(self, name: Any, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Runs the tool called `name`.

        Raises:
            exceptions.UnknownToolError: If no tool has that name.
        """
        handler = self._handlers.get(name) if isinstance(name, str) else None
        if handler is None:
            logger.warn("unknown_tool_requested", tool_name=name)
            raise exceptions.UnknownToolError(name)
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise exceptions.InvalidRequestError(f"Arguments for tool '{name}' must be an object.")
        return await handler(arguments)

    async def _configure_backend(self, config: Any) -> Any:
        try:
            backend = await self.configurator(config)
        except Exception as e:
            message = e.message if isinstance(e, exceptions.MCPServiceError) else str(e)
            logger.error("backend_configuration_failed", error=message, exc_info=True)
            raise exceptions.BackendConfigurationError(message) from e
        # Last write wins, no merge with the previous backend.
        self.session_store.set_backend(backend)
        return backend

    async def analyze_data(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """
        Answers `arguments["query"]` against the current dataset.

        An inline `backend_config` (or `llm_config`) is applied first and stays
        configured for later calls. The dataset is checked before the backend.

        Raises:
            exceptions.BackendConfigurationError: If the inline configuration is rejected.
            exceptions.NoDatasetLoadedError: If nothing has been uploaded.
            exceptions.NoBackendConfiguredError: If no backend is configured.
            exceptions.AnalysisFailedError: If the analysis engine fails.
        """
        query = arguments.get("query")
        inline_config = arguments.get("backend_config", arguments.get("llm_config"))

        if inline_config is not None:
            await self._configure_backend(inline_config)

        # Captured once; a concurrent upload does not affect this call.
        state = self.session_store.get()
        dataset, backend = state.dataset, state.backend
        if dataset is None:
            raise exceptions.NoDatasetLoadedError()
        if backend is None:
            raise exceptions.NoBackendConfiguredError()

        try:
            result = await self.engine.analyze(dataset, query, backend)
        except Exception as e:
            message = e.message if isinstance(e, exceptions.MCPServiceError) else str(e)
            logger.error("analysis_failed", dataset_name=dataset.source_name, query=query, error=message, exc_info=True)
            raise exceptions.AnalysisFailedError(message) from e

        answer = (result or {}).get("answer") if isinstance(result, dict) else result
        return text_content(answer or DEFAULT_ANSWER)

    async def configure_llm(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """
        Configures the backend and confirms with the `model` the caller sent.

        Raises:
            exceptions.BackendConfigurationError: If the configuration is rejected.
        """
        await self._configure_backend(arguments)
        return text_content(f"LLM configured successfully: {arguments.get('model')}")
