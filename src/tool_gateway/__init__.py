"""Tool Gateway - local tool-invocation gateway for MCP clients."""

__version__ = "0.1.0"

from tool_gateway.exceptions import (
    GatewayError,
    ProviderCrashedError,
    ProviderUnavailableError,
    ToolNotFoundError,
)

__all__ = [
    "__version__",
    "GatewayError",
    "ProviderCrashedError",
    "ProviderUnavailableError",
    "ToolNotFoundError",
]
