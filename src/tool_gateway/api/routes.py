"""FastAPI routes for the Tool Gateway."""

import logging
from typing import Annotated, AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from starlette.responses import StreamingResponse

from tool_gateway import __version__
from tool_gateway.api.events import EventBus
from tool_gateway.api.mcp import McpHandler
from tool_gateway.config import get_settings
from tool_gateway.manager.provider_supervisor import ProviderSupervisor
from tool_gateway.manager.request_router import RequestRouter
from tool_gateway.manager.session_manager import SessionManager
from tool_gateway.manager.tool_registry import ToolRegistry
from tool_gateway.models.health import GatewayHealth

logger = logging.getLogger(__name__)

router = APIRouter()

# Dependency injection
_registry: ToolRegistry | None = None
_event_bus: EventBus | None = None
_supervisor: ProviderSupervisor | None = None
_request_router: RequestRouter | None = None
_session_manager: SessionManager | None = None
_mcp_handler: McpHandler | None = None


def get_registry() -> ToolRegistry:
    """Get or create the tool registry."""
    global _registry
    if _registry is None:
        _registry = ToolRegistry()
    return _registry


def get_event_bus() -> EventBus:
    """Get or create the gateway event bus."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus(queue_size=get_settings().session_queue_size)
    return _event_bus


def get_supervisor() -> ProviderSupervisor:
    """Get or create the provider supervisor."""
    global _supervisor
    if _supervisor is None:
        _supervisor = ProviderSupervisor.from_settings(
            get_settings(), get_registry(), get_event_bus()
        )
    return _supervisor


def get_request_router() -> RequestRouter:
    """Get or create the request router."""
    global _request_router
    if _request_router is None:
        settings = get_settings()
        _request_router = RequestRouter(
            get_registry(),
            get_supervisor(),
            default_timeout=settings.call_timeout,
            startup_policy=settings.startup_policy,
            startup_wait=settings.startup_wait,
            call_ordering=settings.call_ordering,
        )
    return _request_router


def get_session_manager() -> SessionManager:
    """Get or create the SSE session manager."""
    global _session_manager
    if _session_manager is None:
        settings = get_settings()
        _session_manager = SessionManager(
            get_registry(),
            get_supervisor(),
            heartbeat_interval=settings.session_heartbeat_interval,
            queue_size=settings.session_queue_size,
        )
    return _session_manager


def get_mcp_handler() -> McpHandler:
    """Get or create the JSON-RPC handler."""
    global _mcp_handler
    if _mcp_handler is None:
        _mcp_handler = McpHandler(get_registry(), get_request_router())
    return _mcp_handler


@router.get("/health")
async def health(
    registry: Annotated[ToolRegistry, Depends(get_registry)],
    supervisor: Annotated[ProviderSupervisor, Depends(get_supervisor)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
) -> dict:
    """Health check endpoint."""
    report = GatewayHealth.build(
        version=__version__,
        providers=supervisor.statuses(),
        tools=[t.name for t in registry.list_all()],
        sessions=sessions.open_count,
    )
    return report.model_dump(mode="json")


@router.get("/sse")
async def stream_sessions(
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
) -> StreamingResponse:
    """Open a Server-Sent Events session.

    The first frame is a capability snapshot (tools and provider states),
    followed by heartbeats and best-effort provider state changes.
    """

    async def event_generator() -> AsyncIterator[str]:
        async with sessions.session() as session:
            async for frame in sessions.frames(session):
                yield frame

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/mcp")
@router.post("/sse")
async def mcp_request(
    request: Request,
    handler: Annotated[McpHandler, Depends(get_mcp_handler)],
) -> Response:
    """JSON-RPC endpoint for initialize, tools/list and tools/call.

    ``POST /sse`` is accepted too, for clients that post calls to the
    stream URL.
    """
    response = await handler.handle_raw(await request.body())
    if response is None:
        return Response(status_code=status.HTTP_202_ACCEPTED)
    return JSONResponse(response)


@router.get("/providers")
async def list_providers(
    supervisor: Annotated[ProviderSupervisor, Depends(get_supervisor)],
) -> list[dict]:
    """Status of every supervised provider."""
    return [s.model_dump(mode="json", by_alias=True) for s in supervisor.statuses()]


@router.post("/providers/{provider_id}/restart")
async def restart_provider(
    provider_id: str,
    supervisor: Annotated[ProviderSupervisor, Depends(get_supervisor)],
) -> dict:
    """Operator-level restart; also revives a provider stopped by its restart budget."""
    try:
        restarted = await supervisor.restart(provider_id)
    except KeyError:
        logger.warning(f"Restart requested for unknown provider {provider_id}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Provider {provider_id} not found",
        )
    return restarted.model_dump(mode="json", by_alias=True)
