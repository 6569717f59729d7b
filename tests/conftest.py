"""Global test configuration for the Tool Gateway."""

import os
import sys
from pathlib import Path

import pytest

from tool_gateway.models.provider import LaunchSpec

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture(autouse=True, scope="session")
def _set_test_env_vars():
    """Pin settings that would otherwise come from a developer's .env.

    Only sets values that aren't already present, so real env vars take
    precedence.
    """
    defaults = {
        "HANDSHAKE_TIMEOUT": "5",
        "CALL_TIMEOUT": "5",
    }
    originals = {}
    for key, value in defaults.items():
        if key not in os.environ:
            os.environ[key] = value
            originals[key] = None
        else:
            originals[key] = os.environ[key]

    # Clear the lru_cache on get_settings so it picks up the new env vars
    from tool_gateway.config import get_settings
    get_settings.cache_clear()

    yield

    for key, original in originals.items():
        if original is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = original
    get_settings.cache_clear()


@pytest.fixture
def echo_spec():
    """Launch spec for the echo fixture provider (tools discovered via tools/list)."""

    def make(provider_id: str = "echo", *flags: str) -> LaunchSpec:
        return LaunchSpec(
            id=provider_id,
            command=sys.executable,
            args=[str(FIXTURES_DIR / "echo_provider.py"), *flags],
        )

    return make


@pytest.fixture
def crash_spec():
    """Launch spec for a provider that exits immediately, with a static tool list."""
    return LaunchSpec(
        id="crashy",
        command=sys.executable,
        args=[str(FIXTURES_DIR / "crash_provider.py")],
        tools=[{"name": "doomed", "description": "Never reachable"}],
    )
