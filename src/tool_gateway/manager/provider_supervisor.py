"""Provider supervisor: the only component that spawns or kills providers.

Each provider is a child process speaking line-delimited JSON-RPC on its
stdio. The supervisor owns its lifecycle:

- spawn + ``initialize`` handshake (bounded by the handshake timeout)
- tool discovery into the registry
- heartbeat pings (one miss -> degraded, two -> restart)
- restarts with exponential backoff inside a rolling attempt budget
- failing in-flight requests fast when the process exits
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import deque
from collections.abc import Iterable
from datetime import datetime, UTC
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from tool_gateway import __version__
from tool_gateway.api.events import EVENT_PROVIDER_STATE, EVENT_TOOLS_CHANGED
from tool_gateway.exceptions import (
    GatewayError,
    HandshakeFailedError,
    ProviderCrashedError,
    ProviderError,
)
from tool_gateway.models.jsonrpc import PROTOCOL_VERSION
from tool_gateway.models.provider import (
    PENDING_STATES,
    LaunchSpec,
    ProviderState,
    ProviderStatus,
)
from tool_gateway.models.tool import ToolDeclaration, ToolDescriptor
from tool_gateway.protocol.connection import ProviderConnection

if TYPE_CHECKING:
    from tool_gateway.api.events import EventBus
    from tool_gateway.config import Settings
    from tool_gateway.manager.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


class Provider:
    """A supervised provider process.

    Everything outside the supervisor reads it through properties; state
    and restart bookkeeping are only changed by ``ProviderSupervisor``.
    """

    def __init__(self, spec: LaunchSpec) -> None:
        self.spec = spec
        self._state = ProviderState.STARTING
        self._restart_count = 0
        self._last_heartbeat_at: datetime | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._connection: ProviderConnection | None = None
        self._spawn_lock = asyncio.Lock()
        self._changed = asyncio.Event()
        self._restart_attempts: deque[float] = deque()
        self._restart_task: asyncio.Task | None = None
        self._health_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._watch_task: asyncio.Task | None = None
        self.spawn_count = 0

    @property
    def id(self) -> str:
        return self.spec.id

    @property
    def state(self) -> ProviderState:
        return self._state

    @property
    def restart_count(self) -> int:
        return self._restart_count

    @property
    def last_heartbeat_at(self) -> datetime | None:
        return self._last_heartbeat_at

    @property
    def connection(self) -> ProviderConnection | None:
        return self._connection

    @property
    def pid(self) -> int | None:
        return self._process.pid if self.is_alive else None

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pending_requests(self) -> frozenset[int]:
        if self._connection is None:
            return frozenset()
        return self._connection.pending_ids

    def status(self) -> ProviderStatus:
        return ProviderStatus(
            id=self.id,
            state=self._state,
            restart_count=self._restart_count,
            last_heartbeat_at=self._last_heartbeat_at,
            pending_requests=len(self.pending_requests),
            pid=self.pid,
        )


class ProviderSupervisor:
    """Spawns, health-checks and restarts provider processes."""

    def __init__(
        self,
        registry: ToolRegistry,
        events: EventBus | None = None,
        *,
        handshake_timeout: float = 5.0,
        heartbeat_interval: float = 15.0,
        backoff_base: float = 1.0,
        backoff_cap: float = 60.0,
        max_attempts: int = 5,
        restart_window: float = 600.0,
        shutdown_grace: float = 5.0,
        stream_limit: int = 4 * 1024 * 1024,
        outbound_queue_size: int = 64,
    ) -> None:
        self._registry = registry
        self._events = events
        self._handshake_timeout = handshake_timeout
        self._heartbeat_interval = heartbeat_interval
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._max_attempts = max_attempts
        self._restart_window = restart_window
        self._shutdown_grace = shutdown_grace
        self._stream_limit = stream_limit
        self._outbound_queue_size = outbound_queue_size
        self._providers: dict[str, Provider] = {}
        self._closing = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: ToolRegistry,
        events: EventBus | None = None,
    ) -> ProviderSupervisor:
        return cls(
            registry,
            events,
            handshake_timeout=settings.handshake_timeout,
            heartbeat_interval=settings.heartbeat_interval,
            backoff_base=settings.restart_backoff_base,
            backoff_cap=settings.restart_backoff_cap,
            max_attempts=settings.restart_max_attempts,
            restart_window=settings.restart_window,
            shutdown_grace=settings.shutdown_grace,
            stream_limit=settings.provider_stream_limit,
            outbound_queue_size=settings.provider_outbound_queue,
        )

    # -- Queries -------------------------------------------------------------

    def get(self, provider_id: str) -> Provider | None:
        return self._providers.get(provider_id)

    def statuses(self) -> list[ProviderStatus]:
        return [p.status() for p in self._providers.values()]

    def live_process_count(self) -> int:
        return sum(1 for p in self._providers.values() if p.is_alive)

    async def wait_until_ready(self, provider_id: str, timeout: float) -> ProviderState | None:
        """Wait up to ``timeout`` for a starting/restarting provider to settle.

        Returns:
            The provider's state when it left a pending state or the wait
            ran out, or None for an unknown provider
        """
        provider = self._providers.get(provider_id)
        if provider is None:
            return None

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while provider.state in PENDING_STATES:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                await asyncio.wait_for(provider._changed.wait(), remaining)
            except asyncio.TimeoutError:
                break
        return provider.state

    # -- Lifecycle -----------------------------------------------------------

    async def start(self, spec: LaunchSpec) -> str:
        """Spawn a provider and attempt its initial handshake.

        A failed first attempt is not an error for the caller: the provider
        moves to ``restarting`` and the restart policy takes over.

        Raises:
            ValueError: If a provider with the same id is already supervised
        """
        if spec.id in self._providers:
            raise ValueError(f"Provider '{spec.id}' is already supervised")

        provider = Provider(spec)
        self._providers[spec.id] = provider
        if spec.tools is not None:
            self._publish_tools(provider, spec.tools)

        logger.info(f"Starting provider {spec.id}: {spec.command} {' '.join(spec.args)}")
        if not await self._launch(provider):
            self._schedule_restart(provider, "initial start failed")
        return spec.id

    async def start_all(self, specs: Iterable[LaunchSpec]) -> list[str]:
        return list(await asyncio.gather(*(self.start(spec) for spec in specs)))

    async def restart(self, provider_id: str) -> ProviderStatus:
        """Operator-level restart.

        Clears the rolling restart budget, so this also revives a provider
        that was stopped after exhausting it.

        Raises:
            KeyError: If the provider is unknown
        """
        provider = self._require(provider_id)
        await self._cancel_restart(provider)
        provider._restart_attempts.clear()
        provider._restart_count += 1
        self._transition(provider, ProviderState.RESTARTING)
        logger.info(f"Operator restart requested for provider {provider_id}")

        if not await self._launch(provider):
            self._schedule_restart(provider, "operator restart failed")
        return provider.status()

    async def stop(self, provider_id: str) -> None:
        """Stop a provider; it stays stopped until an operator restart.

        Raises:
            KeyError: If the provider is unknown
        """
        provider = self._require(provider_id)
        await self._cancel_restart(provider)
        async with provider._spawn_lock:
            self._transition(provider, ProviderState.STOPPED)
            await self._teardown(provider)
        logger.info(f"Provider {provider_id} stopped")

    async def shutdown(self) -> None:
        """Stop every provider. Used on gateway shutdown."""
        self._closing = True
        await asyncio.gather(
            *(self.stop(pid) for pid in list(self._providers)),
            return_exceptions=True,
        )
        logger.info("All providers stopped")

    def _require(self, provider_id: str) -> Provider:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise KeyError(provider_id)
        return provider

    # -- Spawning ------------------------------------------------------------

    async def _launch(self, provider: Provider) -> bool:
        """Spawn and handshake under the provider's spawn lock.

        Returns:
            True if the provider reached ``running``
        """
        async with provider._spawn_lock:
            if self._closing:
                return False
            try:
                return await self._spawn_and_handshake(provider)
            except asyncio.CancelledError:
                await self._teardown(provider)
                raise

    async def _spawn_and_handshake(self, provider: Provider) -> bool:
        spec = provider.spec
        await self._teardown(provider)
        self._transition(provider, ProviderState.STARTING)

        provider.spawn_count += 1
        try:
            process = await asyncio.create_subprocess_exec(
                spec.command,
                *spec.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=spec.cwd,
                env={**os.environ, **spec.env},
                limit=self._stream_limit,
            )
        except OSError as e:
            logger.error(f"Failed to spawn provider {spec.id}: {e}")
            return False

        connection = ProviderConnection(
            spec.id, process.stdout, process.stdin, self._outbound_queue_size
        )
        connection.start()
        provider._process = process
        provider._connection = connection
        provider._stderr_task = asyncio.create_task(
            self._forward_stderr(spec.id, process.stderr)
        )
        provider._watch_task = asyncio.create_task(
            self._watch(provider, process), name=f"provider-watch-{spec.id}"
        )

        try:
            await connection.request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": "tool-gateway", "version": __version__},
                },
                timeout=self._handshake_timeout,
            )
            await connection.notify("notifications/initialized")
        except (asyncio.TimeoutError, GatewayError) as e:
            error = HandshakeFailedError(
                f"Provider {spec.id} did not complete the initialize handshake"
                + (" in time" if isinstance(e, asyncio.TimeoutError) else f": {e}"),
                provider_id=spec.id,
            )
            logger.warning(error.message)
            await self._teardown(provider)
            return False

        if spec.tools is None:
            await self._discover_tools(provider, connection)

        provider._last_heartbeat_at = datetime.now(UTC)
        self._transition(provider, ProviderState.RUNNING)
        provider._health_task = asyncio.create_task(
            self._health_loop(provider, connection), name=f"provider-health-{spec.id}"
        )
        logger.info(f"Provider {spec.id} running (pid {process.pid})")
        return True

    async def _discover_tools(self, provider: Provider, connection: ProviderConnection) -> None:
        try:
            result = await connection.request("tools/list", timeout=self._handshake_timeout)
        except (asyncio.TimeoutError, GatewayError) as e:
            logger.warning(f"Tool discovery failed for provider {provider.id}: {e!r}")
            return

        raw_tools = result.get("tools", []) if isinstance(result, dict) else []
        declarations: list[ToolDeclaration] = []
        for raw in raw_tools:
            try:
                declarations.append(ToolDeclaration.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Provider {provider.id} declared an invalid tool: {e}")
        self._publish_tools(provider, declarations)

    def _publish_tools(self, provider: Provider, declarations: Iterable[ToolDeclaration]) -> None:
        before = self._registry.generation
        self._registry.replace_provider_tools(
            provider.id,
            [ToolDescriptor.from_declaration(d, provider.id) for d in declarations],
        )
        if self._events is not None and self._registry.generation != before:
            self._events.emit({
                "event": EVENT_TOOLS_CHANGED,
                "providerId": provider.id,
                "tools": [t.name for t in self._registry.tools_for(provider.id)],
            })

    async def _teardown(self, provider: Provider) -> None:
        """Close the connection and terminate the process, if any."""
        process, provider._process = provider._process, None
        connection, provider._connection = provider._connection, None

        current = asyncio.current_task()
        health_task, provider._health_task = provider._health_task, None
        if health_task is not None and health_task is not current:
            health_task.cancel()

        if connection is not None:
            await connection.close(
                ProviderCrashedError(
                    f"Provider {provider.id} was restarted or stopped",
                    provider_id=provider.id,
                )
            )

        if process is not None and process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), self._shutdown_grace)
            except asyncio.TimeoutError:
                logger.warning(f"Provider {provider.id} ignored SIGTERM, killing")
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass

        stderr_task, provider._stderr_task = provider._stderr_task, None
        if stderr_task is not None and not stderr_task.done():
            stderr_task.cancel()

    async def _forward_stderr(self, provider_id: str, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.info(f"[{provider_id}] {text}")

    # -- Crash detection & health --------------------------------------------

    async def _watch(self, provider: Provider, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if provider._process is not process:
            return  # Torn down on purpose

        logger.warning(f"Provider {provider.id} exited with code {returncode}")
        provider._process = None
        connection, provider._connection = provider._connection, None
        if connection is not None:
            await connection.close(
                ProviderCrashedError(
                    f"Provider {provider.id} exited with code {returncode}",
                    provider_id=provider.id,
                )
            )
        health_task, provider._health_task = provider._health_task, None
        if health_task is not None:
            health_task.cancel()

        # A crash during the handshake is handled by the launch path
        if provider.state in (ProviderState.RUNNING, ProviderState.DEGRADED):
            self._schedule_restart(provider, f"exited with code {returncode}")

    async def _health_loop(self, provider: Provider, connection: ProviderConnection) -> None:
        misses = 0
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await connection.request("ping", timeout=2 * self._heartbeat_interval)
            except ProviderError:
                pass  # An error reply still proves liveness
            except ProviderCrashedError:
                return  # The exit watcher takes over
            except (asyncio.TimeoutError, GatewayError) as e:
                misses += 1
                if misses == 1:
                    logger.warning(f"Provider {provider.id} missed a heartbeat: {e!r}")
                    self._transition(provider, ProviderState.DEGRADED)
                    continue
                logger.error(f"Provider {provider.id} missed {misses} heartbeats, restarting")
                self._schedule_restart(provider, "missed heartbeats")
                return

            misses = 0
            provider._last_heartbeat_at = datetime.now(UTC)
            if provider.state == ProviderState.DEGRADED:
                self._transition(provider, ProviderState.RUNNING)

    # -- Restart policy ------------------------------------------------------

    def _schedule_restart(self, provider: Provider, reason: str) -> None:
        if self._closing or provider.state == ProviderState.STOPPED:
            return
        if provider._restart_task is not None and not provider._restart_task.done():
            return  # One restart in flight per provider

        logger.warning(f"Provider {provider.id} needs a restart: {reason}")
        self._transition(provider, ProviderState.RESTARTING)
        provider._restart_task = asyncio.create_task(
            self._restart_loop(provider), name=f"provider-restart-{provider.id}"
        )

    async def _restart_loop(self, provider: Provider) -> None:
        async with provider._spawn_lock:
            await self._teardown(provider)

        attempts = provider._restart_attempts
        while not self._closing:
            now = time.monotonic()
            while attempts and now - attempts[0] > self._restart_window:
                attempts.popleft()

            if len(attempts) >= self._max_attempts:
                logger.critical(
                    f"Provider {provider.id} exhausted its restart budget "
                    f"({self._max_attempts} attempts in {self._restart_window:.0f}s); "
                    "operator restart required"
                )
                self._transition(provider, ProviderState.STOPPED, fatal=True)
                return

            delay = min(self._backoff_base * 2 ** len(attempts), self._backoff_cap)
            self._transition(provider, ProviderState.RESTARTING)
            logger.info(
                f"Restarting provider {provider.id} in {delay:.2f}s "
                f"(attempt {len(attempts) + 1}/{self._max_attempts})"
            )
            await asyncio.sleep(delay)

            attempts.append(time.monotonic())
            provider._restart_count += 1
            if await self._launch(provider):
                return

    async def _cancel_restart(self, provider: Provider) -> None:
        task, provider._restart_task = provider._restart_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # -- Events --------------------------------------------------------------

    def _transition(self, provider: Provider, state: ProviderState, fatal: bool = False) -> None:
        previous = provider._state
        if previous == state:
            return

        provider._state = state
        # Wake anyone in wait_until_ready, then arm a fresh event
        provider._changed.set()
        provider._changed = asyncio.Event()

        logger.info(f"Provider {provider.id}: {previous.value} -> {state.value}")
        if self._events is not None:
            event: dict[str, Any] = {
                "event": EVENT_PROVIDER_STATE,
                "providerId": provider.id,
                "state": state.value,
                "previousState": previous.value,
                "restartCount": provider.restart_count,
            }
            if fatal:
                event["fatal"] = True
            self._events.emit(event)
