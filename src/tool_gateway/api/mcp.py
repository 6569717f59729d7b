"""MCP JSON-RPC request handling.

Every client transport (``POST /mcp``, ``POST /sse``) funnels through
``McpHandler.handle_raw`` so there is exactly one call path into the router.
"""

import json
import logging
from typing import Any

from pydantic import ValidationError

from tool_gateway.exceptions import (
    INTERNAL_ERROR,
    GatewayError,
    InvalidParamsError,
    InvalidRequestError,
    MethodNotFoundError,
    ProtocolParseError,
)
from tool_gateway.manager.request_router import RequestRouter
from tool_gateway.manager.session_manager import SERVER_INFO
from tool_gateway.manager.tool_registry import ToolRegistry
from tool_gateway.models.jsonrpc import (
    PROTOCOL_VERSION,
    JsonRpcRequest,
    ToolCallParams,
    error_response,
    result_response,
)

logger = logging.getLogger(__name__)


def to_tool_content(result: Any) -> dict[str, Any]:
    """Wrap a provider result as MCP tool content.

    Results that already carry a ``content`` list pass through untouched.
    """
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        return result
    if isinstance(result, str):
        text = result
    else:
        text = json.dumps(result, indent=2, ensure_ascii=False)
    return {"content": [{"type": "text", "text": text}]}


class McpHandler:
    """Parses, dispatches and answers client JSON-RPC requests."""

    def __init__(self, registry: ToolRegistry, router: RequestRouter) -> None:
        self._registry = registry
        self._router = router

    async def handle_raw(self, body: bytes) -> dict[str, Any] | None:
        """Handle an HTTP request body.

        Returns:
            The JSON-RPC response, or None for a notification
        """
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.info(f"Rejected unparseable request body: {e}")
            return error_response(None, ProtocolParseError("Parse error: body is not valid JSON").to_error())
        return await self.handle(payload)

    async def handle(self, payload: Any) -> dict[str, Any] | None:
        request_id = payload.get("id") if isinstance(payload, dict) else None
        try:
            request = self._parse(payload)
        except GatewayError as e:
            return error_response(request_id, e.to_error())

        if request.is_notification:
            logger.debug(f"Client notification: {request.method}")
            return None

        try:
            result = await self._dispatch(request)
        except GatewayError as e:
            logger.info(f"{request.method} failed: {e.kind}: {e.message}")
            return error_response(request.id, e.to_error())
        except Exception:
            logger.exception(f"Unhandled error serving {request.method}")
            return error_response(
                request.id,
                {"code": INTERNAL_ERROR, "message": "Internal error", "data": {"kind": "InternalError"}},
            )
        return result_response(request.id, result)

    def _parse(self, payload: Any) -> JsonRpcRequest:
        if not isinstance(payload, dict):
            raise InvalidRequestError("Invalid Request: expected a JSON object")
        try:
            return JsonRpcRequest.model_validate(payload)
        except ValidationError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err["loc"])
            raise InvalidRequestError(f"Invalid Request: bad field(s) {fields or 'body'}") from e

    async def _dispatch(self, request: JsonRpcRequest) -> Any:
        method = request.method
        if method == "initialize":
            return {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {"listChanged": True}},
                "serverInfo": SERVER_INFO,
            }
        if method == "ping":
            return {}
        if method == "tools/list":
            return {"tools": [t.to_wire() for t in self._registry.list_all()]}
        if method == "tools/call":
            try:
                params = ToolCallParams.model_validate(request.params or {})
            except ValidationError as e:
                raise InvalidParamsError(
                    "Invalid params: tools/call needs a 'name' and an 'arguments' object"
                ) from e
            result = await self._router.call(params.name, params.arguments)
            return to_tool_content(result)
        raise MethodNotFoundError(method)
