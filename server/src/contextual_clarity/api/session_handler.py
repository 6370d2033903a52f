"""Lifecycle handling for one live recall-session connection.

The handler is transport-agnostic: it talks to a ``Connection`` (see
``api/connections.py``) and keeps everything it knows about that connection
in the connection's ``ConnectionState``. Frames for one connection are
handled one at a time; the only concurrent work is background tangent
detection, which runs as asyncio tasks owned by the connection.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import assert_never
from urllib.parse import parse_qs, urlparse

import anthropic

from contextual_clarity.analysis import TangentDetector, TangentDetectorConfig
from contextual_clarity.api.connections import Connection
from contextual_clarity.api.protocol import (
    AssistantChunkPayload,
    AssistantCompletePayload,
    CloseCode,
    DeclineRabbitholeMessage,
    DismissOverlayMessage,
    EnterRabbitholeMessage,
    ErrorPayload,
    ExitRabbitholeMessage,
    LeaveSessionMessage,
    PingMessage,
    PointRecalledPayload,
    PongPayload,
    RabbitholeDetectedPayload,
    RabbitholeEnteredPayload,
    RabbitholeExitedPayload,
    SessionCompleteOverlayPayload,
    SessionCompletePayload,
    SessionCompletionSummary,
    SessionPausedPayload,
    SessionStartedPayload,
    UserMessage,
    WebSocketErrorCode,
    WireModel,
    create_error_payload,
    parse_client_message,
    serialize_server_message,
)
from contextual_clarity.config import Settings
from contextual_clarity.exceptions import LLMError, SessionSetupError
from contextual_clarity.models import RecallSet, Session, SessionStatus, Tangent
from contextual_clarity.session.contracts import (
    MessageRepository,
    OrchestratorFactory,
    RecallSetRepository,
    SessionOrchestrator,
    SessionRepository,
    SessionState,
)
from contextual_clarity.session.tangent_agent import TangentExplorer
from contextual_clarity.tools.base import CompletionClient

logger = logging.getLogger(__name__)

SESSION_ID_PREFIX = "sess_"


def is_valid_session_id(session_id: str | None) -> bool:
    if not session_id or not session_id.startswith(SESSION_ID_PREFIX):
        return False
    return len(session_id) > len(SESSION_ID_PREFIX)


def extract_session_id(url: str) -> str | None:
    """Pull a well-formed ``sessionId`` query parameter out of a URL."""
    values = parse_qs(urlparse(url).query).get("sessionId")
    if not values:
        return None
    session_id = values[0]
    return session_id if is_valid_session_id(session_id) else None


def _preview(text: str) -> str:
    return text[:50] + ("..." if len(text) > 50 else "")


class ConnectionPhase(str, Enum):
    """Where a connection is in its lifecycle."""

    CONNECTING = "connecting"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class SessionHandlerConfig:
    """Tuning knobs for connection handling."""

    chunk_size: int = 20
    chunk_delay_ms: int = 15
    max_consecutive_errors: int = 5
    idle_timeout_seconds: float = 300.0
    # User turns during which no new tangent is offered after a decline
    decline_cooldown_messages: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionHandlerConfig:
        return cls(
            chunk_size=settings.ws_chunk_size,
            chunk_delay_ms=settings.ws_chunk_delay_ms,
            max_consecutive_errors=settings.ws_max_consecutive_errors,
            idle_timeout_seconds=settings.ws_idle_timeout_seconds,
        )


@dataclass
class ConnectionState:
    """Everything the handler knows about one live connection."""

    session_id: str
    session: Session | None = None
    recall_set: RecallSet | None = None
    orchestrator: SessionOrchestrator | None = None
    initialized: bool = False
    phase: ConnectionPhase = ConnectionPhase.CONNECTING
    connected_at: float = field(default_factory=time.monotonic)
    last_message_time: float = field(default_factory=time.monotonic)
    consecutive_errors: int = 0

    # Streaming bookkeeping
    is_streaming: bool = False
    current_response_chunks: list[str] = field(default_factory=list)
    current_chunk_index: int = 0

    # Tangent sub-protocol
    detector: TangentDetector | None = None
    offered_tangent: Tangent | None = None
    explorer: TangentExplorer | None = None
    recalled_at_tangent_entry: int = 0
    decline_cooldown: int = 0
    tangents_detected: int = 0
    background_tasks: set[asyncio.Task] = field(default_factory=set)

    # Completion overlay
    overlay_shown: bool = False
    overlay_dismissed: bool = False

    message_count: int = 0
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def in_tangent(self) -> bool:
        return self.explorer is not None


@dataclass
class HandlerDependencies:
    """Collaborators injected into the connection handler."""

    session_repo: SessionRepository
    recall_set_repo: RecallSetRepository
    message_repo: MessageRepository
    orchestrator_factory: OrchestratorFactory | None = None
    llm_client: CompletionClient | None = None
    detector_config: TangentDetectorConfig | None = None
    explorer_factory: Callable[[str, RecallSet], TangentExplorer] | None = None

    def create_detector(self) -> TangentDetector | None:
        if self.llm_client is None:
            return None
        return TangentDetector(self.llm_client, self.detector_config)

    def create_explorer(self, topic: str, recall_set: RecallSet) -> TangentExplorer | None:
        if self.explorer_factory is not None:
            return self.explorer_factory(topic, recall_set)
        if self.llm_client is None:
            return None
        return TangentExplorer(
            self.llm_client,
            topic=topic,
            recall_set_name=recall_set.name,
            recall_set_description=recall_set.description,
        )


class SessionConnectionHandler:
    """Drives a recall session over a bidirectional connection.

    Usage from a transport:
        await handler.handle_open(conn)
        for each inbound frame: await handler.handle_message(conn, raw)
        await handler.handle_close(conn, code, reason)
    """

    def __init__(
        self,
        deps: HandlerDependencies,
        config: SessionHandlerConfig | None = None,
    ) -> None:
        self.deps = deps
        self.config = config or SessionHandlerConfig()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def handle_open(self, conn: Connection) -> None:
        """Bind the connection to its session and send the opening message."""
        state = conn.state
        state.phase = ConnectionPhase.INITIALIZING
        logger.info(f"Connection opened for session {state.session_id}")

        try:
            session = await self.deps.session_repo.find_by_id(state.session_id)
            if session is None:
                await self._reject(conn, WebSocketErrorCode.SESSION_NOT_FOUND, "Session not found")
                return

            if session.is_terminal:
                await self._reject(
                    conn,
                    WebSocketErrorCode.SESSION_NOT_ACTIVE,
                    f"Session has already ended ({session.status.value})",
                )
                return
            if session.status != SessionStatus.IN_PROGRESS:
                await self._reject(
                    conn,
                    WebSocketErrorCode.SESSION_NOT_ACTIVE,
                    f"Session status is '{session.status.value}'",
                )
                return

            recall_set = await self.deps.recall_set_repo.find_by_id(session.recall_set_id)
            if recall_set is None:
                raise SessionSetupError(state.session_id, "recall set not found")
            if self.deps.orchestrator_factory is None:
                raise SessionSetupError(state.session_id, "no session orchestrator configured")

            state.session = session
            state.recall_set = recall_set

            orchestrator = self.deps.orchestrator_factory(session)
            await orchestrator.start_session(recall_set)
            state.orchestrator = orchestrator

            opening_message = await orchestrator.get_opening_message()
            session_state = await self._session_state(state)

            state.detector = self.deps.create_detector()
            if state.detector is not None:
                state.detector.reset()

            await self._send(
                conn,
                SessionStartedPayload(
                    session_id=session.id,
                    opening_message=opening_message,
                    total_points=session_state.total_points,
                    recalled_count=session_state.recalled_count,
                ),
            )

            state.initialized = True
            state.phase = ConnectionPhase.ACTIVE
            logger.info(
                f"Session {state.session_id} initialized with "
                f"{session_state.total_points} recall points"
            )

        except SessionSetupError as e:
            logger.error(str(e))
            await self._reject(
                conn,
                WebSocketErrorCode.INTERNAL_ERROR,
                f"Failed to initialize session: {e.reason}",
            )
        except Exception as e:
            logger.exception(f"Error during connection setup for {state.session_id}: {e}")
            await self._reject(conn, WebSocketErrorCode.INTERNAL_ERROR, "Failed to initialize session")

    async def handle_message(self, conn: Connection, raw: str | bytes) -> None:
        """Parse one inbound frame and route it."""
        state = conn.state
        state.last_message_time = time.monotonic()

        if state.phase in (ConnectionPhase.CLOSING, ConnectionPhase.CLOSED):
            return

        message = parse_client_message(raw)

        if isinstance(message, ErrorPayload):
            state.consecutive_errors += 1
            await self._send(conn, message)
            if state.consecutive_errors >= self.config.max_consecutive_errors:
                logger.warning(f"Too many errors for session {state.session_id}, closing")
                await self._close(conn, CloseCode.TOO_MANY_ERRORS, "Too many errors")
            return

        state.consecutive_errors = 0

        if not state.initialized:
            await self._send_error(
                conn, WebSocketErrorCode.SESSION_NOT_ACTIVE, "Session is not initialized"
            )
            return

        try:
            match message:
                case UserMessage():
                    await self._handle_user_message(conn, message.content)
                case LeaveSessionMessage():
                    await self._handle_leave_session(conn)
                case PingMessage():
                    await self._handle_ping(conn)
                case EnterRabbitholeMessage():
                    await self._handle_enter_rabbithole(conn, message)
                case ExitRabbitholeMessage():
                    await self._handle_exit_rabbithole(conn)
                case DeclineRabbitholeMessage():
                    self._handle_decline_rabbithole(conn)
                case DismissOverlayMessage():
                    self._handle_dismiss_overlay(conn)
                case _:
                    assert_never(message)

        except (LLMError, anthropic.APIError) as e:
            logger.error(f"LLM error for session {state.session_id}: {e}")
            await self._send_error(conn, WebSocketErrorCode.LLM_ERROR, str(e))
        except Exception as e:
            logger.exception(f"Error handling message for session {state.session_id}: {e}")
            await self._send_error(conn, WebSocketErrorCode.SESSION_ENGINE_ERROR, str(e) or None)

    async def handle_close(self, conn: Connection, code: int, reason: str = "") -> None:
        """Release connection-local state. Persists nothing."""
        state = conn.state
        state.phase = ConnectionPhase.CLOSED
        logger.info(f"Connection closed for session {state.session_id}: {code} {reason}".rstrip())

        tasks = list(state.background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        state.background_tasks.clear()

        if state.detector is not None:
            closed = state.detector.close_all_active(max(state.message_count - 1, 0))
            for tangent in closed:
                logger.info(f"Tangent '{_preview(tangent.topic)}' abandoned at close")

        state.explorer = None
        state.offered_tangent = None

    async def handle_error(self, conn: Connection, error: BaseException) -> None:
        """Report a transport-level failure to the client if it can still hear us."""
        logger.error(f"Error for session {conn.state.session_id}: {error}")
        await self._send_error(conn, WebSocketErrorCode.INTERNAL_ERROR, str(error) or None, recoverable=False)

    async def handle_idle_timeout(self, conn: Connection) -> None:
        logger.info(
            f"Session {conn.state.session_id} idle for "
            f"{self.config.idle_timeout_seconds:.0f}s, closing"
        )
        await self._close(conn, CloseCode.IDLE_TIMEOUT, "Idle timeout")

    async def abandon(self, conn: Connection) -> None:
        """Abandon the session, discarding in-progress credit, and close."""
        state = conn.state
        logger.info(f"Abandoning session {state.session_id}")

        recalled_count = 0
        if state.orchestrator is not None:
            try:
                await state.orchestrator.abandon_session()
                recalled_count = (await self._session_state(state)).recalled_count
            except Exception as e:
                logger.error(f"Error abandoning session {state.session_id}: {e}")

        summary = SessionCompletionSummary(
            session_id=state.session_id,
            total_points_reviewed=recalled_count,
            successful_recalls=0,
            recall_rate=0.0,
            duration_ms=self._duration_ms(state),
            rabbithole_count=state.tangents_detected,
        )
        await self._send(conn, SessionCompletePayload(summary=summary))
        await self._close(conn, CloseCode.SESSION_ABANDONED, "Session abandoned")

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    async def _handle_user_message(self, conn: Connection, content: str) -> None:
        state = conn.state
        logger.info(f"User message for {state.session_id}: {_preview(content)}")

        if state.explorer is not None:
            reply = await state.explorer.generate_response(content)
            await self._stream_response(conn, reply)
            return

        result = await state.orchestrator.process_user_message(content)
        await self._stream_response(conn, result.response)

        recalled_before = max(result.recalled_count - len(result.points_recalled_this_turn), 0)
        for offset, point_id in enumerate(result.points_recalled_this_turn, start=1):
            await self._send(
                conn,
                PointRecalledPayload(
                    point_id=point_id,
                    recalled_count=recalled_before + offset,
                    total_points=result.total_points,
                ),
            )

        if state.decline_cooldown > 0:
            state.decline_cooldown -= 1

        all_recalled = result.completed or (
            result.total_points > 0 and result.recalled_count >= result.total_points
        )
        if all_recalled and not state.overlay_shown:
            await self._send_overlay(conn, result.recalled_count, result.total_points)

        self._schedule_tangent_detection(conn)

    async def _handle_leave_session(self, conn: Connection) -> None:
        state = conn.state
        session_state = await self._session_state(state)
        state.explorer = None

        if session_state.is_complete:
            await state.orchestrator.complete_session()
            summary = self._build_summary(state, session_state)
            await self._send(conn, SessionCompletePayload(summary=summary))
            logger.info(f"Session {state.session_id} completed")
            await self._close(conn, CloseCode.NORMAL, "Session completed")
            return

        await state.orchestrator.pause_session()
        await self._send(
            conn,
            SessionPausedPayload(
                session_id=state.session_id,
                recalled_count=session_state.recalled_count,
                total_points=session_state.total_points,
            ),
        )
        logger.info(
            f"Session {state.session_id} paused at "
            f"{session_state.recalled_count}/{session_state.total_points}"
        )
        await self._close(conn, CloseCode.SESSION_ENDED, "Session paused")

    async def _handle_ping(self, conn: Connection) -> None:
        await self._send(conn, PongPayload(timestamp=int(time.time() * 1000)))

    async def _handle_enter_rabbithole(self, conn: Connection, message: EnterRabbitholeMessage) -> None:
        state = conn.state
        if state.explorer is not None:
            await self._send_error(
                conn, WebSocketErrorCode.SESSION_NOT_ACTIVE, "Already exploring a tangent"
            )
            return

        offered = state.offered_tangent
        if offered is not None and offered.id != message.rabbithole_event_id:
            logger.warning(
                f"Entering tangent {message.rabbithole_event_id} but {offered.id} was offered"
            )
        state.offered_tangent = None

        explorer = self.deps.create_explorer(message.topic, state.recall_set)
        if explorer is None:
            await self._send_error(
                conn, WebSocketErrorCode.INTERNAL_ERROR, "Tangent exploration is not available"
            )
            return

        session_state = await self._session_state(state)
        opening = await explorer.generate_opening_message()

        state.explorer = explorer
        state.recalled_at_tangent_entry = session_state.recalled_count
        logger.info(f"Session {state.session_id} entered tangent '{_preview(message.topic)}'")

        await self._send(conn, RabbitholeEnteredPayload(topic=message.topic))
        await self._stream_response(conn, opening)

    async def _handle_exit_rabbithole(self, conn: Connection) -> None:
        state = conn.state
        if state.explorer is None:
            await self._send_error(
                conn, WebSocketErrorCode.SESSION_NOT_ACTIVE, "Not currently exploring a tangent"
            )
            return

        topic = state.explorer.topic
        state.explorer = None

        session_state = await self._session_state(state)
        completion_pending = session_state.is_complete and not state.overlay_shown
        await self._send(
            conn,
            RabbitholeExitedPayload(
                label=topic,
                points_recalled_during=max(
                    session_state.recalled_count - state.recalled_at_tangent_entry, 0
                ),
                completion_pending=completion_pending,
            ),
        )
        logger.info(f"Session {state.session_id} left tangent '{_preview(topic)}'")

        if completion_pending:
            await self._send_overlay(conn, session_state.recalled_count, session_state.total_points)

    def _handle_decline_rabbithole(self, conn: Connection) -> None:
        state = conn.state
        state.offered_tangent = None
        state.decline_cooldown = self.config.decline_cooldown_messages

    def _handle_dismiss_overlay(self, conn: Connection) -> None:
        conn.state.overlay_dismissed = True
        logger.info(f"Session {conn.state.session_id} continuing after completion")

    # ------------------------------------------------------------------
    # Tangent detection
    # ------------------------------------------------------------------

    def _schedule_tangent_detection(self, conn: Connection) -> None:
        state = conn.state
        if state.detector is None or state.in_tangent:
            return
        task = asyncio.create_task(self._run_tangent_detection(conn))
        state.background_tasks.add(task)
        task.add_done_callback(state.background_tasks.discard)

    async def _run_tangent_detection(self, conn: Connection) -> None:
        state = conn.state
        detector = state.detector
        try:
            session_state = await self._session_state(state)
            point = session_state.current_probe_point
            if point is None:
                return

            messages = await self.deps.message_repo.find_by_session_id(state.session_id)
            message_index = len(messages) - 1

            returned = await detector.detect_returns(messages, point, message_index)
            offered = state.offered_tangent
            if offered is not None and any(t.id == offered.id for t in returned):
                state.offered_tangent = None
            tangent = await detector.detect_rabbithole(
                state.session_id,
                messages,
                point,
                session_state.target_points,
                message_index,
            )
            if tangent is None:
                return

            state.tangents_detected += 1
            if (
                state.decline_cooldown > 0
                or state.explorer is not None
                or state.offered_tangent is not None
                or state.phase not in (ConnectionPhase.ACTIVE, ConnectionPhase.STREAMING)
            ):
                return

            state.offered_tangent = tangent
            await self._send(
                conn,
                RabbitholeDetectedPayload(topic=tangent.topic, rabbithole_event_id=tangent.id),
            )

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Tangent detection failed for session {state.session_id}: {e}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _session_state(self, state: ConnectionState) -> SessionState:
        session_state = await state.orchestrator.get_session_state()
        state.message_count = session_state.message_count
        return session_state

    async def _stream_response(self, conn: Connection, text: str) -> None:
        """Send a reply as fixed-size chunks followed by the full text."""
        state = conn.state
        size = self.config.chunk_size
        chunks = [text[i : i + size] for i in range(0, len(text), size)]

        state.current_response_chunks = chunks
        state.is_streaming = True
        state.phase = ConnectionPhase.STREAMING
        try:
            for index, chunk in enumerate(chunks):
                state.current_chunk_index = index
                await self._send(conn, AssistantChunkPayload(content=chunk, chunk_index=index))
                if self.config.chunk_delay_ms > 0:
                    await asyncio.sleep(self.config.chunk_delay_ms / 1000)

            await self._send(
                conn,
                AssistantCompletePayload(full_content=text, total_chunks=len(chunks)),
            )
        finally:
            state.is_streaming = False
            state.current_response_chunks = []
            if state.phase == ConnectionPhase.STREAMING:
                state.phase = ConnectionPhase.ACTIVE

    async def _send_overlay(self, conn: Connection, recalled_count: int, total_points: int) -> None:
        state = conn.state
        state.overlay_shown = True
        await self._send(
            conn,
            SessionCompleteOverlayPayload(
                recalled_count=recalled_count,
                total_points=total_points,
                session_id=state.session_id,
                message=(
                    f"You've recalled all {total_points} points! "
                    "Keep discussing or leave to finish the session."
                ),
                can_continue=True,
            ),
        )

    def _build_summary(self, state: ConnectionState, session_state: SessionState) -> SessionCompletionSummary:
        total = session_state.total_points
        recalled = session_state.recalled_count
        return SessionCompletionSummary(
            session_id=state.session_id,
            total_points_reviewed=total,
            successful_recalls=recalled,
            recall_rate=recalled / total if total else 0.0,
            duration_ms=self._duration_ms(state),
            engagement_score=session_state.engagement_score,
            estimated_cost_usd=session_state.estimated_cost_usd,
            rabbithole_count=state.tangents_detected,
            recalled_point_ids=session_state.recalled_point_ids,
        )

    @staticmethod
    def _duration_ms(state: ConnectionState) -> int:
        if state.session is not None:
            started_at = state.session.started_at
            if started_at.tzinfo is None:
                started_at = started_at.replace(tzinfo=UTC)
            return max(int((datetime.now(UTC) - started_at).total_seconds() * 1000), 0)
        return int((time.monotonic() - state.connected_at) * 1000)

    async def _send(self, conn: Connection, message: WireModel) -> None:
        state = conn.state
        if state.phase == ConnectionPhase.CLOSED:
            return
        async with state.send_lock:
            try:
                await conn.send_text(serialize_server_message(message))
            except Exception as e:
                logger.warning(f"Failed to send to session {state.session_id}: {e}")

    async def _send_error(
        self,
        conn: Connection,
        code: WebSocketErrorCode,
        message: str | None = None,
        recoverable: bool = True,
    ) -> None:
        await self._send(conn, create_error_payload(code, message, recoverable))

    async def _reject(self, conn: Connection, code: WebSocketErrorCode, message: str) -> None:
        """Report a setup failure and close as an invalid session."""
        logger.warning(f"Rejecting session {conn.state.session_id}: {message}")
        await self._send_error(conn, code, message, recoverable=False)
        await self._close(conn, CloseCode.INVALID_SESSION, message)

    async def _close(self, conn: Connection, code: int, reason: str) -> None:
        state = conn.state
        if state.phase in (ConnectionPhase.CLOSING, ConnectionPhase.CLOSED):
            return
        state.phase = ConnectionPhase.CLOSING
        try:
            await conn.close(code, reason)
        except Exception as e:
            logger.warning(f"Failed to close connection for {state.session_id}: {e}")
