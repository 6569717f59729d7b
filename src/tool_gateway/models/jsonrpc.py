"""JSON-RPC 2.0 envelopes used on the client-facing endpoints."""

from typing import Any, Literal

from pydantic import BaseModel, Field

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"


class JsonRpcRequest(BaseModel):
    """An inbound client request or notification."""

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    method: str = Field(min_length=1)
    params: dict[str, Any] | None = None
    id: str | int | None = None

    @property
    def is_notification(self) -> bool:
        """A request without an ``id`` member expects no response."""
        return "id" not in self.model_fields_set


class ToolCallParams(BaseModel):
    """Parameters of a ``tools/call`` request."""

    name: str = Field(min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)


def result_response(request_id: str | int | None, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "result": result, "id": request_id}


def error_response(request_id: str | int | None, error: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "error": error, "id": request_id}


def notification(method: str, params: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "method": method, "params": params}
