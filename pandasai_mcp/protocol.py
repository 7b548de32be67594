"""
MCP method dispatch.

`ProtocolDispatcher` turns a decoded `{method, params}` request into exactly
one envelope: `{"result": {...}}` on success or
`{"error": {"code": -1, "message": ...}}` on any failure. Only `tools/call`
reaches the session, through the `ToolRouter`.
"""

from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from mcp import types

from . import exceptions
from .config import settings
from .tools import ToolRouter

logger = structlog.get_logger(__name__)

ERROR_CODE = -1

Envelope = Dict[str, Any]


def error_envelope(message: str, code: int = ERROR_CODE) -> Envelope:
    return {"error": {"code": code, "message": message}}


def is_error(envelope: Envelope) -> bool:
    return "error" in envelope


def redact(value: Any) -> Any:
    """Masks API keys in logged parameters."""
    if isinstance(value, dict):
        return {k: ("***" if "key" in str(k).lower() and v else redact(v)) for k, v in value.items()}
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


class ProtocolDispatcher:
    """Maps MCP method names to handlers and translates failures."""

    def __init__(
        self,
        tool_router: ToolRouter,
        server_name: Optional[str] = None,
        server_version: Optional[str] = None
    ) -> None:
        self.tool_router = tool_router
        self.server_name = server_name or settings.SERVICE_NAME
        self.server_version = server_version or settings.SERVICE_VERSION
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            "initialize": self.initialize,
            "notifications/initialized": self.notifications_initialized,
            "tools/list": self.list_tools,
            "tools/call": self.call_tool,
        }

    @property
    def methods(self):
        return list(self._handlers)

    async def dispatch(self, method: Any, params: Any = None) -> Envelope:
        """
        Runs the handler for `method` and wraps its outcome.

        Args:
            method: The protocol method name.
            params: The method parameters. Missing or null means `{}`.

        Returns:
            Envelope: Exactly one of `result` or `error`.
        """
        if params is None:
            params = {}
        logger.info("mcp_request", method=method, params=redact(params))

        try:
            handler = self._handlers.get(method) if isinstance(method, str) else None
            if handler is None:
                raise exceptions.UnsupportedMethodError(method)
            if not isinstance(params, dict):
                raise exceptions.InvalidRequestError("MCP params must be an object.")
            result = await handler(params)
        except exceptions.MCPServiceError as e:
            logger.warn("mcp_request_failed", method=method, error_kind=e.kind, error=e.message)
            return error_envelope(e.message)
        except Exception as e:
            logger.error("mcp_request_unexpected_error", method=method, error=str(e), exc_info=True)
            return error_envelope(str(e) or type(e).__name__)

        return {"result": result}

    async def initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Returns server identity and capabilities. Does not touch the session."""
        requested_version = params.get("protocolVersion")
        result = types.InitializeResult(
            protocolVersion=requested_version if isinstance(requested_version, str) else types.LATEST_PROTOCOL_VERSION,
            capabilities=types.ServerCapabilities(tools=types.ToolsCapability(listChanged=False)),
            serverInfo=types.Implementation(name=self.server_name, version=self.server_version),
        )
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    async def notifications_initialized(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"success": True}

    async def list_tools(self, params: Dict[str, Any]) -> Dict[str, Any]:
        result = types.ListToolsResult(tools=self.tool_router.list_tools())
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    async def call_tool(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments")
        logger.info("mcp_tool_call", tool_name=name)
        return await self.tool_router.call(name, arguments)
