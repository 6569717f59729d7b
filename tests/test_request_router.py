"""Tests for the request router."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from tool_gateway.exceptions import (
    CallTimeoutError,
    ProviderCrashedError,
    ProviderError,
    ProviderUnavailableError,
    ToolNotFoundError,
)
from tool_gateway.manager.provider_supervisor import ProviderSupervisor
from tool_gateway.manager.request_router import PendingRequest, RequestRouter
from tool_gateway.manager.tool_registry import ToolRegistry
from tool_gateway.models.provider import ProviderState
from tool_gateway.models.tool import ToolDescriptor


def _registry(*names: str, provider_id: str = "p1") -> ToolRegistry:
    registry = ToolRegistry()
    for name in names:
        registry.register(ToolDescriptor(name=name, provider_id=provider_id))
    return registry


def _mock_supervisor(state: ProviderState, connection=None) -> MagicMock:
    provider = MagicMock()
    provider.state = state
    provider.connection = connection
    supervisor = MagicMock()
    supervisor.get.return_value = provider
    supervisor.wait_until_ready = AsyncMock(return_value=state)
    return supervisor


def _mock_connection(*results) -> MagicMock:
    """A connection whose send() hands out pre-resolved futures."""
    loop = asyncio.get_running_loop()
    futures = []
    for result in results:
        future = loop.create_future()
        future.set_result(result)
        futures.append(future)
    connection = MagicMock()
    connection.send = AsyncMock(side_effect=[(i + 1, f) for i, f in enumerate(futures)])
    return connection


# ---------------------------------------------------------------------------
# TestRouting
# ---------------------------------------------------------------------------

class TestRouting:
    """Lookup and provider-state checks, with a mocked supervisor."""

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        supervisor = _mock_supervisor(ProviderState.RUNNING)
        router = RequestRouter(ToolRegistry(), supervisor)

        with pytest.raises(ToolNotFoundError):
            await router.call("missing", {})
        supervisor.get.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", list(ProviderState))
    async def test_unknown_tool_regardless_of_provider_state(self, state):
        router = RequestRouter(_registry("echo"), _mock_supervisor(state))

        with pytest.raises(ToolNotFoundError):
            await router.call("missing", {})

    @pytest.mark.asyncio
    async def test_stopped_provider_fails_immediately(self):
        supervisor = _mock_supervisor(ProviderState.STOPPED)
        router = RequestRouter(_registry("echo"), supervisor)

        with pytest.raises(ProviderUnavailableError) as exc:
            await router.call("echo", {})

        assert exc.value.tool_name == "echo"
        assert exc.value.provider_id == "p1"
        supervisor.wait_until_ready.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_provider_is_unavailable(self):
        supervisor = MagicMock()
        supervisor.get.return_value = None
        router = RequestRouter(_registry("echo"), supervisor)

        with pytest.raises(ProviderUnavailableError):
            await router.call("echo", {})

    @pytest.mark.asyncio
    async def test_degraded_provider_still_serves(self):
        connection = _mock_connection({"ok": True})
        router = RequestRouter(_registry("echo"), _mock_supervisor(ProviderState.DEGRADED, connection))

        assert await router.call("echo", {"msg": "x"}) == {"ok": True}
        connection.send.assert_awaited_once_with(
            "tools/call", {"name": "echo", "arguments": {"msg": "x"}}
        )
        connection.discard.assert_called_once_with(1)
        assert router.pending == {}


# ---------------------------------------------------------------------------
# TestStartupPolicy
# ---------------------------------------------------------------------------

class TestStartupPolicy:

    @pytest.mark.asyncio
    async def test_fail_fast_rejects_starting_provider(self):
        supervisor = _mock_supervisor(ProviderState.STARTING)
        router = RequestRouter(_registry("echo"), supervisor, startup_policy="fail_fast")

        with pytest.raises(ProviderUnavailableError, match="starting"):
            await router.call("echo", {})
        supervisor.wait_until_ready.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_wait_policy_dispatches_once_ready(self):
        connection = _mock_connection("done")
        supervisor = _mock_supervisor(ProviderState.RESTARTING, connection)
        supervisor.wait_until_ready = AsyncMock(return_value=ProviderState.RUNNING)
        router = RequestRouter(_registry("echo"), supervisor, startup_policy="wait", startup_wait=1.5)

        assert await router.call("echo", {}) == "done"
        supervisor.wait_until_ready.assert_awaited_once_with("p1", 1.5)

    @pytest.mark.asyncio
    async def test_wait_policy_gives_up(self):
        supervisor = _mock_supervisor(ProviderState.STARTING)
        supervisor.wait_until_ready = AsyncMock(return_value=ProviderState.STARTING)
        router = RequestRouter(_registry("echo"), supervisor, startup_policy="wait", startup_wait=0.1)

        with pytest.raises(ProviderUnavailableError, match="not ready"):
            await router.call("echo", {})

    @pytest.mark.asyncio
    async def test_wait_policy_provider_stopped_while_waiting(self):
        supervisor = _mock_supervisor(ProviderState.RESTARTING)
        supervisor.wait_until_ready = AsyncMock(return_value=ProviderState.STOPPED)
        router = RequestRouter(_registry("echo"), supervisor)

        with pytest.raises(ProviderUnavailableError):
            await router.call("echo", {})


# ---------------------------------------------------------------------------
# TestCallOrdering
# ---------------------------------------------------------------------------

class TestCallOrdering:

    @pytest.mark.asyncio
    async def test_serialize_allows_one_call_per_provider(self):
        loop = asyncio.get_running_loop()
        first, second = loop.create_future(), loop.create_future()
        connection = MagicMock()
        connection.send = AsyncMock(side_effect=[(1, first), (2, second)])
        router = RequestRouter(
            _registry("echo"),
            _mock_supervisor(ProviderState.RUNNING, connection),
            call_ordering="serialize",
        )

        t1 = asyncio.create_task(router.call("echo", {}))
        t2 = asyncio.create_task(router.call("echo", {}))
        await asyncio.sleep(0.01)
        assert connection.send.await_count == 1

        first.set_result("a")
        assert await t1 == "a"
        await asyncio.sleep(0.01)
        assert connection.send.await_count == 2

        second.set_result("b")
        assert await t2 == "b"

    @pytest.mark.asyncio
    async def test_interleave_sends_concurrently(self):
        loop = asyncio.get_running_loop()
        first, second = loop.create_future(), loop.create_future()
        connection = MagicMock()
        connection.send = AsyncMock(side_effect=[(1, first), (2, second)])
        router = RequestRouter(_registry("echo"), _mock_supervisor(ProviderState.RUNNING, connection))

        t1 = asyncio.create_task(router.call("echo", {}))
        t2 = asyncio.create_task(router.call("echo", {}))
        await asyncio.sleep(0.01)

        assert connection.send.await_count == 2
        assert len(router.pending) == 2
        second.set_result("b")
        first.set_result("a")
        assert await asyncio.gather(t1, t2) == ["a", "b"]


# ---------------------------------------------------------------------------
# TestLiveProvider
# ---------------------------------------------------------------------------

class TestLiveProvider:
    """End-to-end calls against the echo fixture provider."""

    @pytest.mark.asyncio
    async def test_echo_round_trip(self, echo_spec):
        registry = ToolRegistry()
        supervisor = ProviderSupervisor(registry, heartbeat_interval=60)
        router = RequestRouter(registry, supervisor)
        try:
            await supervisor.start(echo_spec())

            result = await asyncio.wait_for(router.call("echo", {"msg": "hi"}), timeout=10)

            assert "hi" in result["content"][0]["text"]
            assert router.pending == {}
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_never_responding_tool_times_out(self, echo_spec):
        registry = ToolRegistry()
        supervisor = ProviderSupervisor(registry, heartbeat_interval=60)
        router = RequestRouter(registry, supervisor)
        try:
            await supervisor.start(echo_spec())
            loop = asyncio.get_running_loop()
            started = loop.time()

            with pytest.raises(CallTimeoutError) as exc:
                await router.call("hang", {}, timeout=1.0)

            elapsed = loop.time() - started
            assert 0.9 <= elapsed < 1.5
            assert exc.value.tool_name == "hang"
            assert exc.value.provider_id == "echo"
            assert router.pending == {}
            assert supervisor.get("echo").pending_requests == frozenset()

            # The provider is still usable afterwards
            result = await router.call("echo", {"msg": "after"})
            assert "after" in result["content"][0]["text"]
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_crash_mid_call_fails_fast(self, echo_spec):
        registry = ToolRegistry()
        supervisor = ProviderSupervisor(registry, heartbeat_interval=60, backoff_base=0.01)
        router = RequestRouter(registry, supervisor, default_timeout=10)
        try:
            await supervisor.start(echo_spec())
            loop = asyncio.get_running_loop()
            started = loop.time()

            with pytest.raises(ProviderCrashedError) as exc:
                await router.call("crash", {})

            assert loop.time() - started < 5
            assert exc.value.tool_name == "crash"
            assert exc.value.provider_id == "echo"
            assert router.pending == {}
        finally:
            await supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_provider_error_is_surfaced(self, echo_spec):
        registry = ToolRegistry()
        supervisor = ProviderSupervisor(registry, heartbeat_interval=60)
        router = RequestRouter(registry, supervisor)
        try:
            await supervisor.start(echo_spec())

            with pytest.raises(ProviderError) as exc:
                await router.call("fail", {})

            assert exc.value.code == -32000
            assert exc.value.tool_name == "fail"
            assert exc.value.to_error()["data"] == {
                "kind": "ProviderError",
                "tool": "fail",
                "provider": "echo",
            }
        finally:
            await supervisor.shutdown()


class TestPendingRequest:

    def test_to_dict(self):
        pending = PendingRequest(tool_name="echo", provider_id="p1", deadline=0.0)

        data = pending.to_dict()

        assert data["tool"] == "echo"
        assert data["provider"] == "p1"
        assert data["remaining_seconds"] == 0.0
        assert len(data["id"]) == 32
