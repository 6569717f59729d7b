"""Gateway health models."""

from enum import Enum

from pydantic import BaseModel, Field

from tool_gateway.models.provider import ProviderState, ProviderStatus


class HealthStatus(str, Enum):
    """Overall health status."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"  # Some providers not serving, gateway still up
    CRITICAL = "critical"  # No provider can serve calls


class GatewayHealth(BaseModel):
    """Payload of ``GET /health``."""

    status: HealthStatus
    version: str
    providers: list[dict] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=list)
    sessions: int = 0

    @classmethod
    def build(
        cls,
        version: str,
        providers: list[ProviderStatus],
        tools: list[str],
        sessions: int,
    ) -> "GatewayHealth":
        return cls(
            status=cls._status_for(providers),
            version=version,
            providers=[p.to_wire() for p in providers],
            tools=tools,
            sessions=sessions,
        )

    @staticmethod
    def _status_for(providers: list[ProviderStatus]) -> HealthStatus:
        if not providers:
            return HealthStatus.HEALTHY

        serving = [p for p in providers if p.state == ProviderState.RUNNING]
        if len(serving) == len(providers):
            return HealthStatus.HEALTHY
        if any(p.state != ProviderState.STOPPED for p in providers):
            return HealthStatus.DEGRADED
        return HealthStatus.CRITICAL
