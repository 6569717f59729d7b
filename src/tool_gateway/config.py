"""Configuration and environment loading for the Tool Gateway."""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from tool_gateway.models.provider import LaunchSpec

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Server
    host: str = "127.0.0.1"
    port: int = 3006
    debug: bool = False
    log_level: str = "INFO"

    # Provider launch specs (JSON file with a "providers" or "mcpServers" object)
    providers_file: Path | None = None

    # Provider supervision
    handshake_timeout: float = 5.0
    heartbeat_interval: float = 15.0
    restart_backoff_base: float = 1.0
    restart_backoff_cap: float = 60.0
    restart_max_attempts: int = 5
    restart_window: float = 600.0  # Rolling window for the restart budget
    shutdown_grace: float = 5.0
    provider_stream_limit: int = 4 * 1024 * 1024  # Max bytes per provider frame
    provider_outbound_queue: int = 64

    # Request routing
    call_timeout: float = 30.0
    startup_policy: Literal["wait", "fail_fast"] = "wait"
    startup_wait: float = 2.0
    call_ordering: Literal["interleave", "serialize"] = "interleave"

    # SSE sessions
    session_heartbeat_interval: float = 30.0
    session_queue_size: int = 100


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def load_launch_specs(path: Path | None) -> list[LaunchSpec]:
    """Load provider launch specs from a JSON file.

    Accepts either ``{"providers": {...}}`` or the MCP client style
    ``{"mcpServers": {...}}``, keyed by provider id. A missing path yields
    no providers; an unreadable or invalid file raises ``ValueError``.
    """
    if path is None:
        return []

    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Cannot read providers file {path}: {e}") from e

    entries = raw.get("providers", raw.get("mcpServers", {})) if isinstance(raw, dict) else None
    if not isinstance(entries, dict):
        raise ValueError(f"Providers file {path} must map provider ids to launch specs")

    specs: list[LaunchSpec] = []
    for provider_id, entry in entries.items():
        try:
            specs.append(LaunchSpec.model_validate({**entry, "id": provider_id}))
        except (TypeError, ValidationError) as e:
            raise ValueError(f"Invalid launch spec for provider '{provider_id}': {e}") from e

    logger.info(f"Loaded {len(specs)} provider launch specs from {path}")
    return specs
