"""Error taxonomy for the Tool Gateway.

Every error carries enough context (kind, tool, provider) to be surfaced to
the calling client as a structured JSON-RPC error. None of them are fatal to
the gateway process.
"""

from typing import Any

# JSON-RPC 2.0 reserved codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class GatewayError(Exception):
    """Base class for all gateway-level errors."""

    kind = "GatewayError"
    code = INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        tool_name: str | None = None,
        provider_id: str | None = None,
    ) -> None:
        self.message = message
        self.tool_name = tool_name
        self.provider_id = provider_id
        super().__init__(message)

    def to_error(self) -> dict[str, Any]:
        """Render as a JSON-RPC error object."""
        data: dict[str, Any] = {"kind": self.kind}
        if self.tool_name is not None:
            data["tool"] = self.tool_name
        if self.provider_id is not None:
            data["provider"] = self.provider_id
        return {"code": self.code, "message": self.message, "data": data}


class ToolNotFoundError(GatewayError):
    """Raised when no registered tool has the requested name."""

    kind = "ToolNotFound"
    code = INVALID_PARAMS

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Unknown tool: {tool_name}", tool_name=tool_name)


class DuplicateToolError(GatewayError):
    """Raised when registering a tool name that is already taken."""

    kind = "DuplicateTool"
    code = -32010

    def __init__(self, tool_name: str, provider_id: str | None = None) -> None:
        super().__init__(
            f"Tool '{tool_name}' already registered",
            tool_name=tool_name,
            provider_id=provider_id,
        )


class ProviderUnavailableError(GatewayError):
    """Raised when the owning provider cannot accept work."""

    kind = "ProviderUnavailable"
    code = -32011


class ProviderCrashedError(GatewayError):
    """Raised for requests that were in flight when a provider exited."""

    kind = "ProviderCrashed"
    code = -32012


class CallTimeoutError(GatewayError):
    """Raised when a provider did not answer before the call deadline."""

    kind = "Timeout"
    code = -32013


class ProtocolParseError(GatewayError):
    """Raised for malformed frames, from either a client or a provider."""

    kind = "ProtocolParseError"
    code = PARSE_ERROR


class HandshakeFailedError(GatewayError):
    """Raised when a provider does not complete `initialize` in time."""

    kind = "HandshakeFailed"
    code = -32014


class ProviderError(GatewayError):
    """A provider answered with a JSON-RPC error envelope."""

    kind = "ProviderError"

    def __init__(
        self,
        message: str,
        code: int | None = None,
        tool_name: str | None = None,
        provider_id: str | None = None,
    ) -> None:
        super().__init__(message, tool_name=tool_name, provider_id=provider_id)
        self.code = code if isinstance(code, int) else INTERNAL_ERROR


class InvalidRequestError(ProtocolParseError):
    """A client body that is JSON but not a valid JSON-RPC request."""

    code = INVALID_REQUEST


class InvalidParamsError(GatewayError):
    """A client request whose params do not fit the method."""

    kind = "InvalidParams"
    code = INVALID_PARAMS


class MethodNotFoundError(GatewayError):
    """A client asked for a JSON-RPC method the gateway does not serve."""

    kind = "MethodNotFound"
    code = METHOD_NOT_FOUND

    def __init__(self, method: str) -> None:
        super().__init__(f"Method not found: {method}")
