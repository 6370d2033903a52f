"""FastAPI routes: the live session WebSocket and health check."""

import asyncio
import logging

from fastapi import APIRouter, HTTPException, WebSocket
from starlette.websockets import WebSocketDisconnect

from contextual_clarity import __version__
from contextual_clarity.analysis import TangentDetectorConfig
from contextual_clarity.api.connections import ConnectionRegistry, WebSocketConnection
from contextual_clarity.api.protocol import (
    CloseCode,
    WebSocketErrorCode,
    create_error_payload,
    serialize_server_message,
)
from contextual_clarity.api.session_handler import (
    ConnectionState,
    HandlerDependencies,
    SessionConnectionHandler,
    SessionHandlerConfig,
    extract_session_id,
)
from contextual_clarity.config import get_settings
from contextual_clarity.db.client import (
    DatabaseClient,
    SupabaseMessageRepository,
    SupabaseRecallSetRepository,
    SupabaseSessionRepository,
)
from contextual_clarity.scheduling import FSRSScheduler, SchedulerConfig
from contextual_clarity.session.contracts import OrchestratorFactory
from contextual_clarity.tools.claude import ClaudeClient

logger = logging.getLogger(__name__)

router = APIRouter()

# Dependency injection
_session_handler: SessionConnectionHandler | None = None
_orchestrator_factory: OrchestratorFactory | None = None
_connection_registry: ConnectionRegistry | None = None
_scheduler: FSRSScheduler | None = None


def set_orchestrator_factory(factory: OrchestratorFactory | None) -> None:
    """Install the factory that builds a session orchestrator per connection."""
    global _orchestrator_factory, _session_handler
    _orchestrator_factory = factory
    if _session_handler is not None:
        _session_handler.deps.orchestrator_factory = factory


def set_session_handler(handler: SessionConnectionHandler | None) -> None:
    global _session_handler
    _session_handler = handler


def _build_session_handler() -> SessionConnectionHandler:
    """Create a handler wired to Supabase and Claude."""
    settings = get_settings()
    db = DatabaseClient()
    deps = HandlerDependencies(
        session_repo=SupabaseSessionRepository(db),
        recall_set_repo=SupabaseRecallSetRepository(db),
        message_repo=SupabaseMessageRepository(db),
        orchestrator_factory=_orchestrator_factory,
        llm_client=ClaudeClient(),
        detector_config=TangentDetectorConfig(
            confidence_threshold=settings.tangent_confidence_threshold,
            return_confidence_threshold=settings.tangent_return_confidence_threshold,
            message_window_size=settings.tangent_message_window_size,
        ),
    )
    return SessionConnectionHandler(deps, SessionHandlerConfig.from_settings(settings))


def get_session_handler() -> SessionConnectionHandler:
    """Get or create the session handler instance."""
    global _session_handler
    if _session_handler is None:
        _session_handler = _build_session_handler()
    return _session_handler


def get_connection_registry() -> ConnectionRegistry:
    """Get or create the connection registry instance."""
    global _connection_registry
    if _connection_registry is None:
        _connection_registry = ConnectionRegistry()
    return _connection_registry


def get_scheduler() -> FSRSScheduler:
    """Get or create the shared FSRS scheduler.

    Orchestrator factories use this so every session schedules with the
    configured retention and interval cap.
    """
    global _scheduler
    if _scheduler is None:
        _scheduler = FSRSScheduler(SchedulerConfig.from_settings(get_settings()))
    return _scheduler


async def abandon_live_session(session_id: str) -> int:
    """Abandon a session on every live connection bound to it.

    Returns:
        Number of connections abandoned
    """
    connections = get_connection_registry().for_session(session_id)
    if not connections:
        return 0
    handler = get_session_handler()
    for conn in connections:
        await handler.abandon(conn)
    return len(connections)


@router.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": __version__,
        "connections": get_connection_registry().count(),
        "scheduler": get_scheduler().get_config(),
    }


@router.post("/api/session/{session_id}/abandon")
async def abandon_session(session_id: str) -> dict:
    """Abandon a live session, discarding its in-progress credit."""
    abandoned = await abandon_live_session(session_id)
    if abandoned == 0:
        raise HTTPException(status_code=404, detail="No live connection for session")
    return {"session_id": session_id, "abandoned": abandoned}


@router.websocket("/api/session/ws")
async def session_websocket(websocket: WebSocket) -> None:
    """Live recall session over a WebSocket.

    The session is identified by the ``sessionId`` query parameter, which
    must start with ``sess_``. Malformed ids are refused before the
    handshake completes.
    """
    session_id = extract_session_id(str(websocket.url))
    if session_id is None:
        logger.warning("Rejected WebSocket upgrade with missing or invalid sessionId")
        await websocket.close(code=CloseCode.INVALID_SESSION)
        return

    await websocket.accept()

    try:
        handler = get_session_handler()
    except Exception as e:
        logger.error(f"Session handler unavailable: {e}")
        error = create_error_payload(
            WebSocketErrorCode.INTERNAL_ERROR, "Session service unavailable", recoverable=False
        )
        await websocket.send_text(serialize_server_message(error))
        await websocket.close(code=CloseCode.INVALID_SESSION)
        return

    registry = get_connection_registry()
    conn = WebSocketConnection(websocket, ConnectionState(session_id=session_id))
    registry.register(conn)

    close_code: int = CloseCode.NORMAL
    close_reason = ""
    try:
        await handler.handle_open(conn)

        while not conn.closed:
            try:
                message = await asyncio.wait_for(
                    websocket.receive(), timeout=handler.config.idle_timeout_seconds
                )
            except TimeoutError:
                await handler.handle_idle_timeout(conn)
                break

            if message["type"] == "websocket.disconnect":
                close_code = message.get("code", CloseCode.NORMAL)
                close_reason = message.get("reason") or ""
                break

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await handler.handle_message(conn, raw)

    except WebSocketDisconnect as e:
        close_code, close_reason = e.code, e.reason or ""
    except Exception as e:
        await handler.handle_error(conn, e)
        await conn.close(CloseCode.INVALID_SESSION, "Internal error")
    finally:
        registry.unregister(conn)
        if conn.close_code is not None:
            close_code = conn.close_code
        await handler.handle_close(conn, close_code, close_reason)
