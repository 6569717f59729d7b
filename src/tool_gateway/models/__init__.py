"""Pydantic models for the Tool Gateway."""

from tool_gateway.models.health import GatewayHealth, HealthStatus
from tool_gateway.models.jsonrpc import JsonRpcRequest, ToolCallParams
from tool_gateway.models.provider import LaunchSpec, ProviderState, ProviderStatus
from tool_gateway.models.session import SessionState
from tool_gateway.models.tool import ToolDeclaration, ToolDescriptor

__all__ = [
    "GatewayHealth",
    "HealthStatus",
    "JsonRpcRequest",
    "LaunchSpec",
    "ProviderState",
    "ProviderStatus",
    "SessionState",
    "ToolCallParams",
    "ToolDeclaration",
    "ToolDescriptor",
]
