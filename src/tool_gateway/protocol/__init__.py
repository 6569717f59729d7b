"""Provider wire protocol: frame codec and per-connection correlation."""

from tool_gateway.protocol.connection import ProviderConnection
from tool_gateway.protocol.frames import decode_frame, encode_request, validate_response

__all__ = ["ProviderConnection", "decode_frame", "encode_request", "validate_response"]
