"""Request router for ``tools/call``.

Resolves the owning provider through the registry, checks the provider can
take work, tracks the call as a pending request with a deadline and maps
every failure to a gateway error.
"""

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Literal
from uuid import uuid4

from tool_gateway.exceptions import (
    CallTimeoutError,
    GatewayError,
    ProviderUnavailableError,
)
from tool_gateway.manager.provider_supervisor import ProviderSupervisor
from tool_gateway.manager.tool_registry import ToolRegistry
from tool_gateway.models.provider import PENDING_STATES, SERVING_STATES, ProviderState

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """A dispatched call waiting for its provider's reply."""

    tool_name: str
    provider_id: str
    deadline: float  # time.monotonic() based
    result_slot: asyncio.Future | None = None  # Set once the frame is queued
    correlation_id: int | None = None
    id: str = field(default_factory=lambda: uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tool": self.tool_name,
            "provider": self.provider_id,
            "correlation_id": self.correlation_id,
            "remaining_seconds": max(0.0, self.deadline - time.monotonic()),
        }


class RequestRouter:
    """Dispatches tool calls to providers."""

    def __init__(
        self,
        registry: ToolRegistry,
        supervisor: ProviderSupervisor,
        *,
        default_timeout: float = 30.0,
        startup_policy: Literal["wait", "fail_fast"] = "wait",
        startup_wait: float = 2.0,
        call_ordering: Literal["interleave", "serialize"] = "interleave",
    ) -> None:
        self._registry = registry
        self._supervisor = supervisor
        self._default_timeout = default_timeout
        self._startup_policy = startup_policy
        self._startup_wait = startup_wait
        self._call_ordering = call_ordering
        self._pending: dict[str, PendingRequest] = {}
        self._provider_locks: dict[str, asyncio.Lock] = {}

    @property
    def pending(self) -> dict[str, PendingRequest]:
        """Read-only view of in-flight requests, keyed by request id."""
        return dict(self._pending)

    async def call(
        self,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Invoke a tool and return the provider's raw result.

        Raises:
            ToolNotFoundError: Unknown tool name
            ProviderUnavailableError: Provider stopped, or not ready in time
            ProviderCrashedError: Provider exited while the call was in flight
            CallTimeoutError: No reply before the deadline
            ProtocolParseError: Provider answered with a malformed frame
            ProviderError: Provider answered with an error
        """
        descriptor = self._registry.lookup(tool_name)
        provider_id = descriptor.provider_id
        await self._ensure_serving(tool_name, provider_id)

        timeout = self._default_timeout if timeout is None else timeout
        if self._call_ordering == "serialize":
            lock = self._provider_locks.setdefault(provider_id, asyncio.Lock())
            async with lock:
                return await self._dispatch(tool_name, provider_id, arguments or {}, timeout)
        return await self._dispatch(tool_name, provider_id, arguments or {}, timeout)

    async def _ensure_serving(self, tool_name: str, provider_id: str) -> None:
        provider = self._supervisor.get(provider_id)
        if provider is None or provider.state == ProviderState.STOPPED:
            raise ProviderUnavailableError(
                f"Provider {provider_id} is stopped; tool '{tool_name}' is unavailable",
                tool_name=tool_name,
                provider_id=provider_id,
            )

        if provider.state in PENDING_STATES:
            if self._startup_policy == "fail_fast":
                raise ProviderUnavailableError(
                    f"Provider {provider_id} is {provider.state.value}",
                    tool_name=tool_name,
                    provider_id=provider_id,
                )
            state = await self._supervisor.wait_until_ready(provider_id, self._startup_wait)
            if state not in SERVING_STATES:
                raise ProviderUnavailableError(
                    f"Provider {provider_id} not ready after {self._startup_wait:.1f}s",
                    tool_name=tool_name,
                    provider_id=provider_id,
                )

    async def _dispatch(
        self,
        tool_name: str,
        provider_id: str,
        arguments: dict[str, Any],
        timeout: float,
    ) -> Any:
        provider = self._supervisor.get(provider_id)
        connection = provider.connection if provider is not None else None
        if connection is None:
            raise ProviderUnavailableError(
                f"Provider {provider_id} has no open connection",
                tool_name=tool_name,
                provider_id=provider_id,
            )

        pending = PendingRequest(
            tool_name=tool_name,
            provider_id=provider_id,
            deadline=time.monotonic() + timeout,
        )
        self._pending[pending.id] = pending
        try:
            pending.correlation_id, pending.result_slot = await connection.send(
                "tools/call", {"name": tool_name, "arguments": arguments}
            )
            remaining = max(0.0, pending.deadline - time.monotonic())
            try:
                return await asyncio.wait_for(pending.result_slot, remaining)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Call to {tool_name} on provider {provider_id} timed out after {timeout:.1f}s"
                )
                raise CallTimeoutError(
                    f"Tool '{tool_name}' did not answer within {timeout:.1f}s",
                    tool_name=tool_name,
                    provider_id=provider_id,
                ) from None
        except GatewayError as e:
            if e.tool_name is not None and e.provider_id is not None:
                raise
            # Crash errors are shared by every request on the connection
            error = copy.copy(e)
            error.tool_name = e.tool_name or tool_name
            error.provider_id = e.provider_id or provider_id
            raise error from e
        finally:
            self._pending.pop(pending.id, None)
            if pending.correlation_id is not None:
                connection.discard(pending.correlation_id)
