"""SSE session management.

Sessions are acquired with ``async with manager.session()`` so that teardown
runs on every exit path, including a client disconnect mid-write. One
heartbeat loop drives every open session, and one pump task forwards gateway
events from the event bus to them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from tool_gateway import __version__
from tool_gateway.api.events import EVENT_PROVIDER_STATE, EVENT_TOOLS_CHANGED
from tool_gateway.models.jsonrpc import PROTOCOL_VERSION, notification
from tool_gateway.models.session import SessionState

if TYPE_CHECKING:
    from tool_gateway.api.events import EventBus
    from tool_gateway.manager.provider_supervisor import ProviderSupervisor
    from tool_gateway.manager.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)

# Sentinel pushed into a session queue to end its stream
_CLOSE = object()

SERVER_INFO = {"name": "Tool Gateway", "version": __version__}


@dataclass
class Session:
    """One streaming client connection."""

    queue: asyncio.Queue
    id: str = field(default_factory=lambda: uuid4().hex)
    state: SessionState = SessionState.CONNECTING
    opened_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_ping_at: datetime | None = None
    dropped: int = 0

    def push(self, frame: dict[str, Any]) -> bool:
        """Queue a frame without blocking. Returns False if it was dropped."""
        if self.state != SessionState.OPEN:
            return False
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True


class SessionManager:
    """Owns every SSE session."""

    def __init__(
        self,
        registry: ToolRegistry,
        supervisor: ProviderSupervisor,
        *,
        heartbeat_interval: float = 30.0,
        queue_size: int = 100,
    ) -> None:
        self._registry = registry
        self._supervisor = supervisor
        self._heartbeat_interval = heartbeat_interval
        self._queue_size = queue_size
        self._sessions: dict[str, Session] = {}

    @property
    def open_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.state == SessionState.OPEN)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    # -- Session scope -------------------------------------------------------

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Session]:
        """Open a session for the duration of the block."""
        session = Session(queue=asyncio.Queue(maxsize=self._queue_size))
        self._sessions[session.id] = session
        try:
            session.state = SessionState.OPEN
            session.push(self.capability_snapshot())
            logger.info(f"SSE session {session.id} opened ({self.open_count} open)")
            yield session
        finally:
            session.state = SessionState.CLOSING
            self._sessions.pop(session.id, None)
            _drain(session.queue)
            session.state = SessionState.CLOSED
            logger.info(f"SSE session {session.id} closed")

    async def frames(self, session: Session) -> AsyncIterator[str]:
        """Yield SSE-encoded frames until the session is closed."""
        while session.state == SessionState.OPEN:
            item = await session.queue.get()
            if item is _CLOSE:
                break
            yield f"data: {json.dumps(item)}\n\n"

    def close(self, session_id: str) -> bool:
        """Ask a session's stream to end."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        _force_put(session.queue, _CLOSE)
        return True

    def close_all(self) -> int:
        sessions = list(self._sessions)
        for session_id in sessions:
            self.close(session_id)
        return len(sessions)

    # -- Frames --------------------------------------------------------------

    def capability_snapshot(self) -> dict[str, Any]:
        """Current tools and provider states, as sent on session open."""
        return notification(
            "notifications/initialized",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {"listChanged": True}},
                "serverInfo": SERVER_INFO,
                "tools": [t.to_wire() for t in self._registry.list_all()],
                "providers": [p.to_wire() for p in self._supervisor.statuses()],
            },
        )

    def broadcast(self, frame: dict[str, Any]) -> int:
        """Push a frame to every open session. Returns how many got it."""
        delivered = 0
        for session in list(self._sessions.values()):
            if session.push(frame):
                delivered += 1
        return delivered

    def heartbeat(self) -> int:
        now = datetime.now(UTC)
        frame = notification("notifications/ping", {"timestamp": now.isoformat()})
        delivered = 0
        for session in list(self._sessions.values()):
            if session.push(frame):
                session.last_ping_at = now
                delivered += 1
        return delivered

    # -- Background loops ----------------------------------------------------

    async def run_heartbeats(self) -> None:
        """Single timer driving every open session's heartbeat."""
        logger.info(f"Session heartbeat every {self._heartbeat_interval}s")
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            self.heartbeat()

    async def run_event_pump(self, events: EventBus) -> None:
        """Forward gateway events to every open session."""
        queue = events.subscribe()
        try:
            while True:
                event = await queue.get()
                frame = _event_frame(event)
                if frame is not None:
                    self.broadcast(frame)
        finally:
            events.unsubscribe(queue)


def _event_frame(event: dict[str, Any]) -> dict[str, Any] | None:
    kind = event.get("event")
    params = {k: v for k, v in event.items() if k != "event"}
    if kind == EVENT_PROVIDER_STATE:
        return notification("notifications/provider_state", params)
    if kind == EVENT_TOOLS_CHANGED:
        return notification("notifications/tools/list_changed", params)
    logger.debug(f"Ignoring unknown gateway event {kind!r}")
    return None


def _force_put(queue: asyncio.Queue, item: object) -> None:
    """Enqueue, evicting the oldest frame if the queue is full."""
    try:
        queue.put_nowait(item)
    except asyncio.QueueFull:
        queue.get_nowait()
        queue.put_nowait(item)


def _drain(queue: asyncio.Queue) -> None:
    while not queue.empty():
        queue.get_nowait()
