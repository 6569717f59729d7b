"""Line-delimited JSON-RPC frames exchanged with provider processes."""

import json
from typing import Any

from tool_gateway.exceptions import ProtocolParseError
from tool_gateway.models.jsonrpc import JSONRPC_VERSION


def encode_request(request_id: int, method: str, params: dict[str, Any] | None = None) -> bytes:
    """Serialize an outbound call as a single newline-terminated frame."""
    frame: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        frame["params"] = params
    return (json.dumps(frame, separators=(",", ":")) + "\n").encode("utf-8")


def encode_notification(method: str, params: dict[str, Any] | None = None) -> bytes:
    frame: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        frame["params"] = params
    return (json.dumps(frame, separators=(",", ":")) + "\n").encode("utf-8")


def decode_frame(line: bytes) -> dict[str, Any]:
    """Parse one inbound line into a JSON object.

    Raises:
        ProtocolParseError: If the line is not a JSON object
    """
    try:
        frame = json.loads(line.decode("utf-8", errors="replace"))
    except json.JSONDecodeError as e:
        raise ProtocolParseError(f"Invalid JSON frame: {e.msg}") from e
    if not isinstance(frame, dict):
        raise ProtocolParseError("Frame is not a JSON object")
    return frame


def frame_id(frame: dict[str, Any]) -> int | None:
    """Correlation id of a frame, if it carries a usable one."""
    value = frame.get("id")
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def is_response(frame: dict[str, Any]) -> bool:
    """Responses carry an id and no method; everything else is unsolicited."""
    return "method" not in frame and "id" in frame


def validate_response(frame: dict[str, Any]) -> None:
    """Check the response envelope holds exactly one of result / error.

    Raises:
        ProtocolParseError: If the envelope is malformed
    """
    has_result = "result" in frame
    has_error = "error" in frame
    if has_result == has_error:
        raise ProtocolParseError(
            "Response must carry exactly one of 'result' or 'error'"
        )
    if has_error:
        error = frame["error"]
        if not isinstance(error, dict) or "message" not in error:
            raise ProtocolParseError("Response 'error' must be an object with a message")
