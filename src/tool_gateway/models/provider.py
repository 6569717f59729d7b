"""Provider lifecycle models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from tool_gateway.models.tool import ToolDeclaration


class ProviderState(str, Enum):
    """Lifecycle state of a provider process."""

    STARTING = "starting"  # Spawned, waiting for the initialize handshake
    RUNNING = "running"
    DEGRADED = "degraded"  # Missed one heartbeat
    RESTARTING = "restarting"  # Backing off before the next spawn
    STOPPED = "stopped"  # Terminal until an operator restart


# States in which a provider has no usable connection yet
PENDING_STATES = frozenset({ProviderState.STARTING, ProviderState.RESTARTING})
# States in which a provider accepts new calls
SERVING_STATES = frozenset({ProviderState.RUNNING, ProviderState.DEGRADED})


class LaunchSpec(BaseModel):
    """How to start a provider process."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    command: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    # Static tool declarations; when None, tools are discovered via tools/list
    tools: list[ToolDeclaration] | None = None


class ProviderStatus(BaseModel):
    """Read-only snapshot of a provider, safe to hand out of the supervisor."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    state: ProviderState
    restart_count: int = Field(default=0, alias="restartCount")
    last_heartbeat_at: datetime | None = Field(default=None, alias="lastHeartbeatAt")
    pending_requests: int = Field(default=0, alias="pendingRequests")
    pid: int | None = None

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "state": self.state.value,
            "restartCount": self.restart_count,
        }
