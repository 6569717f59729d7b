"""Provider supervision, tool registry, request routing and SSE sessions."""

from tool_gateway.manager.provider_supervisor import Provider, ProviderSupervisor
from tool_gateway.manager.request_router import PendingRequest, RequestRouter
from tool_gateway.manager.session_manager import Session, SessionManager
from tool_gateway.manager.tool_registry import RegistrySnapshot, ToolRegistry

__all__ = [
    "PendingRequest",
    "Provider",
    "ProviderSupervisor",
    "RegistrySnapshot",
    "RequestRouter",
    "Session",
    "SessionManager",
    "ToolRegistry",
]
