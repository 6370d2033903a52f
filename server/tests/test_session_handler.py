"""Tests for the live session connection handler."""

import asyncio
import json
import time

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock

from contextual_clarity.api.protocol import CloseCode
from contextual_clarity.api.session_handler import (
    ConnectionPhase,
    ConnectionState,
    HandlerDependencies,
    SessionConnectionHandler,
    SessionHandlerConfig,
    extract_session_id,
    is_valid_session_id,
)
from contextual_clarity.exceptions import LLMError, SessionOrchestratorError
from contextual_clarity.models import (
    MessageRole,
    RecallPoint,
    RecallSet,
    Session,
    SessionMessage,
    SessionStatus,
)
from contextual_clarity.session.contracts import ProcessMessageResult, SessionState
from contextual_clarity.tools.base import LLMResponse

SESSION_ID = "sess_abc123"
REPLY = "Good thinking! Mitochondria are where most ATP is produced in the cell."


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeConnection:
    """Records frames and close calls instead of talking to a socket."""

    def __init__(self, session_id: str = SESSION_ID) -> None:
        self.state = ConnectionState(session_id=session_id)
        self.sent: list[dict] = []
        self.close_calls: list[tuple[int, str]] = []

    async def send_text(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self, code: int, reason: str = "") -> None:
        self.close_calls.append((code, reason))

    @property
    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def of_type(self, message_type: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == message_type]


class FakeOrchestrator:
    """Minimal in-memory orchestrator."""

    def __init__(self, session: Session, recall_set: RecallSet, points: list[RecallPoint]) -> None:
        self.session = session
        self.recall_set = recall_set
        self.points = points
        self.recalled: list[str] = []
        self.recall_on_next: list[str] = []
        self.reply = REPLY
        self.message_count = 1

        self.start_session = AsyncMock(return_value=session)
        self.get_opening_message = AsyncMock(return_value="What do you remember about ATP?")
        self.process_user_message = AsyncMock(side_effect=self._process)
        self.trigger_evaluation = AsyncMock()
        self.abandon_session = AsyncMock()
        self.pause_session = AsyncMock()
        self.complete_session = AsyncMock()

    async def _process(self, content: str) -> ProcessMessageResult:
        newly = self.recall_on_next
        self.recall_on_next = []
        self.recalled.extend(newly)
        self.message_count += 2
        return ProcessMessageResult(
            response=self.reply,
            completed=len(self.recalled) == len(self.points),
            recalled_count=len(self.recalled),
            total_points=len(self.points),
            points_recalled_this_turn=list(newly),
        )

    async def get_session_state(self) -> SessionState:
        unchecked = [p for p in self.points if p.id not in self.recalled]
        return SessionState(
            session=self.session,
            recall_set=self.recall_set,
            point_checklist={
                p.id: "recalled" if p.id in self.recalled else "pending" for p in self.points
            },
            current_probe_index=len(self.recalled),
            current_probe_point=unchecked[0] if unchecked else None,
            total_points=len(self.points),
            recalled_count=len(self.recalled),
            unchecked_points=unchecked,
            message_count=self.message_count,
            is_complete=not unchecked,
            target_points=list(self.points),
        )


def _detection_json(topic: str = "history of biology") -> str:
    return json.dumps({
        "isRabbithole": True,
        "topic": topic,
        "depth": 1,
        "relatedToCurrentPoint": False,
        "relatedRecallPointIds": [],
        "confidence": 0.9,
        "reasoning": "drifted",
    })


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def recall_set():
    return RecallSet(id="rs_1", name="Cell Biology", description="Energy in cells")


@pytest.fixture
def points():
    return [
        RecallPoint(id="rp_1", recall_set_id="rs_1", content="ATP is made in mitochondria"),
        RecallPoint(id="rp_2", recall_set_id="rs_1", content="Glycolysis happens in the cytoplasm"),
    ]


@pytest.fixture
def session(points):
    return Session(id=SESSION_ID, recall_set_id="rs_1", target_point_ids=[p.id for p in points])


@pytest.fixture
def orchestrator(session, recall_set, points):
    return FakeOrchestrator(session, recall_set, points)


@pytest.fixture
def messages():
    return [
        SessionMessage(id="m0", session_id=SESSION_ID, role=MessageRole.ASSISTANT, content="What is ATP?"),
        SessionMessage(id="m1", session_id=SESSION_ID, role=MessageRole.USER, content="Who named it?"),
    ]


@pytest.fixture
def deps(session, recall_set, orchestrator, messages):
    session_repo = MagicMock()
    session_repo.find_by_id = AsyncMock(return_value=session)
    recall_set_repo = MagicMock()
    recall_set_repo.find_by_id = AsyncMock(return_value=recall_set)
    message_repo = MagicMock()
    message_repo.find_by_session_id = AsyncMock(return_value=messages)
    return HandlerDependencies(
        session_repo=session_repo,
        recall_set_repo=recall_set_repo,
        message_repo=message_repo,
        orchestrator_factory=lambda s: orchestrator,
    )


@pytest.fixture
def llm():
    client = MagicMock()
    client.complete = AsyncMock(return_value=LLMResponse(text="Let's explore that."))
    return client


@pytest.fixture
def handler(deps):
    return SessionConnectionHandler(deps, SessionHandlerConfig(chunk_delay_ms=0))


@pytest_asyncio.fixture
async def opened(handler):
    conn = FakeConnection()
    await handler.handle_open(conn)
    conn.sent.clear()
    return conn


async def _send(handler, conn, payload: dict) -> None:
    await handler.handle_message(conn, json.dumps(payload))


async def _drain(conn: FakeConnection) -> None:
    """Wait for background tangent detection to finish."""
    await asyncio.gather(*list(conn.state.background_tasks))


# ---------------------------------------------------------------------------
# Session id extraction
# ---------------------------------------------------------------------------

class TestExtractSessionId:

    def test_valid(self):
        assert extract_session_id("ws://host/api/session/ws?sessionId=sess_abc") == "sess_abc"

    @pytest.mark.parametrize(
        "url",
        [
            "ws://host/api/session/ws",
            "ws://host/api/session/ws?sessionId=",
            "ws://host/api/session/ws?sessionId=abc",
            "ws://host/api/session/ws?sessionId=sess_",
            "ws://host/api/session/ws?other=sess_abc",
        ],
    )
    def test_invalid(self, url):
        assert extract_session_id(url) is None

    def test_is_valid_session_id(self):
        assert is_valid_session_id("sess_1")
        assert not is_valid_session_id(None)


# ---------------------------------------------------------------------------
# Open
# ---------------------------------------------------------------------------

class TestHandleOpen:

    @pytest.mark.asyncio
    async def test_sends_session_started(self, handler, orchestrator, recall_set):
        conn = FakeConnection()
        await handler.handle_open(conn)

        assert conn.sent == [{
            "type": "session_started",
            "sessionId": SESSION_ID,
            "openingMessage": "What do you remember about ATP?",
            "totalPoints": 2,
            "recalledCount": 0,
        }]
        orchestrator.start_session.assert_awaited_once_with(recall_set)
        assert conn.state.initialized is True
        assert conn.state.phase == ConnectionPhase.ACTIVE
        assert conn.close_calls == []

    @pytest.mark.asyncio
    async def test_session_not_found(self, handler, deps):
        deps.session_repo.find_by_id.return_value = None
        conn = FakeConnection()

        await handler.handle_open(conn)

        assert conn.sent[0]["code"] == "SESSION_NOT_FOUND"
        assert conn.sent[0]["recoverable"] is False
        assert conn.close_calls[0][0] == CloseCode.INVALID_SESSION
        assert conn.state.initialized is False

    @pytest.mark.asyncio
    async def test_ended_session_rejected(self, handler, deps, session, orchestrator):
        deps.session_repo.find_by_id.return_value = session.model_copy(
            update={"status": SessionStatus.COMPLETED}
        )
        conn = FakeConnection()

        await handler.handle_open(conn)

        assert conn.sent[0]["code"] == "SESSION_NOT_ACTIVE"
        assert "already ended" in conn.sent[0]["message"]
        assert conn.close_calls[0][0] == CloseCode.INVALID_SESSION
        orchestrator.start_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_session_not_active(self, handler, deps, session):
        deps.session_repo.find_by_id.return_value = session.model_copy(
            update={"status": SessionStatus.PAUSED}
        )
        conn = FakeConnection()

        await handler.handle_open(conn)

        assert conn.sent[0]["code"] == "SESSION_NOT_ACTIVE"
        assert "paused" in conn.sent[0]["message"]
        assert conn.close_calls[0][0] == CloseCode.INVALID_SESSION

    @pytest.mark.asyncio
    async def test_missing_recall_set(self, handler, deps):
        deps.recall_set_repo.find_by_id.return_value = None
        conn = FakeConnection()

        await handler.handle_open(conn)

        assert conn.types == ["error"]
        assert conn.sent[0]["code"] == "INTERNAL_ERROR"
        assert conn.close_calls[0][0] == CloseCode.INVALID_SESSION

    @pytest.mark.asyncio
    async def test_orchestrator_failure(self, handler, orchestrator):
        orchestrator.start_session.side_effect = RuntimeError("db down")
        conn = FakeConnection()

        await handler.handle_open(conn)

        assert conn.sent[0]["code"] == "INTERNAL_ERROR"
        assert conn.sent[0]["recoverable"] is False
        assert conn.close_calls[0][0] == CloseCode.INVALID_SESSION

    @pytest.mark.asyncio
    async def test_no_orchestrator_configured(self, handler, deps):
        deps.orchestrator_factory = None
        conn = FakeConnection()

        await handler.handle_open(conn)

        assert conn.sent[0]["code"] == "INTERNAL_ERROR"
        assert conn.close_calls[0][0] == CloseCode.INVALID_SESSION

    @pytest.mark.asyncio
    async def test_fresh_detector_per_connection(self, handler, deps, llm):
        deps.llm_client = llm
        first, second = FakeConnection(), FakeConnection()

        await handler.handle_open(first)
        await handler.handle_open(second)

        assert first.state.detector is not None
        assert first.state.detector is not second.state.detector
        assert second.state.detector.get_active_count() == 0


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

class TestDispatch:

    @pytest.mark.asyncio
    async def test_ping_gets_exactly_one_pong(self, handler, opened):
        before = int(time.time() * 1000)
        await _send(handler, opened, {"type": "ping"})
        after = int(time.time() * 1000)

        assert opened.types == ["pong"]
        assert before <= opened.sent[0]["timestamp"] <= after

    @pytest.mark.asyncio
    async def test_deeply_nested_frame_is_a_format_error(self, handler, opened):
        await handler.handle_message(opened, "[" * 100_000 + "]" * 100_000)

        assert opened.sent == [{
            "type": "error",
            "code": "INVALID_MESSAGE_FORMAT",
            "message": "Failed to parse message as JSON",
            "recoverable": True,
        }]
        assert opened.state.consecutive_errors == 1
        assert opened.close_calls == []

    @pytest.mark.asyncio
    async def test_five_malformed_frames_close_connection(self, handler, opened):
        for i in range(5):
            assert opened.close_calls == []
            await handler.handle_message(opened, "not json")

        assert opened.types == ["error"] * 5
        assert opened.close_calls == [(CloseCode.TOO_MANY_ERRORS, "Too many errors")]

    @pytest.mark.asyncio
    async def test_valid_frame_resets_error_counter(self, handler, opened):
        for _ in range(4):
            await handler.handle_message(opened, "{}")
        await _send(handler, opened, {"type": "ping"})
        for _ in range(4):
            await handler.handle_message(opened, '{"type": "nope"}')

        assert opened.close_calls == []
        assert opened.state.consecutive_errors == 4

    @pytest.mark.asyncio
    async def test_frames_after_close_ignored(self, handler, opened):
        await _send(handler, opened, {"type": "leave_session"})
        opened.sent.clear()

        await _send(handler, opened, {"type": "ping"})

        assert opened.sent == []

    @pytest.mark.asyncio
    async def test_dismiss_overlay_sends_nothing(self, handler, opened):
        await _send(handler, opened, {"type": "dismiss_overlay"})

        assert opened.sent == []
        assert opened.state.overlay_dismissed is True

    @pytest.mark.asyncio
    async def test_uninitialized_connection_rejects_messages(self, handler):
        conn = FakeConnection()
        await _send(handler, conn, {"type": "ping"})

        assert conn.sent[0]["code"] == "SESSION_NOT_ACTIVE"


# ---------------------------------------------------------------------------
# User messages and streaming
# ---------------------------------------------------------------------------

class TestUserMessage:

    @pytest.mark.asyncio
    async def test_streams_reply_in_chunks(self, handler, opened, orchestrator):
        await _send(handler, opened, {"type": "user_message", "content": "Mitochondria?"})

        orchestrator.process_user_message.assert_awaited_once_with("Mitochondria?")
        chunks = opened.of_type("assistant_chunk")
        assert [c["chunkIndex"] for c in chunks] == list(range(len(chunks)))
        assert all(len(c["content"]) <= 20 for c in chunks)
        assert "".join(c["content"] for c in chunks) == REPLY
        assert opened.sent[-1] == {
            "type": "assistant_complete",
            "fullContent": REPLY,
            "totalChunks": len(chunks),
        }
        assert opened.state.phase == ConnectionPhase.ACTIVE
        assert opened.state.is_streaming is False

    @pytest.mark.asyncio
    async def test_point_recalled_per_point(self, handler, opened, orchestrator):
        orchestrator.recall_on_next = ["rp_1"]

        await _send(handler, opened, {"type": "user_message", "content": "ATP from mitochondria"})

        assert opened.of_type("point_recalled") == [
            {"type": "point_recalled", "pointId": "rp_1", "recalledCount": 1, "totalPoints": 2}
        ]
        assert "session_complete_overlay" not in opened.types

    @pytest.mark.asyncio
    async def test_completion_overlay_then_summary_on_leave(self, handler, opened, orchestrator):
        orchestrator.recall_on_next = ["rp_1", "rp_2"]
        await _send(handler, opened, {"type": "user_message", "content": "Both!"})

        recalled = opened.of_type("point_recalled")
        assert [r["recalledCount"] for r in recalled] == [1, 2]
        assert opened.types[-1] == "session_complete_overlay"
        overlay = opened.sent[-1]
        assert overlay["canContinue"] is True
        assert overlay["recalledCount"] == overlay["totalPoints"] == 2
        assert "session_complete" not in opened.types
        assert opened.close_calls == []

        # Continue discussing; overlay is not repeated
        await _send(handler, opened, {"type": "dismiss_overlay"})
        await _send(handler, opened, {"type": "user_message", "content": "Tell me more"})
        assert len(opened.of_type("session_complete_overlay")) == 1

        await _send(handler, opened, {"type": "leave_session"})

        orchestrator.complete_session.assert_awaited_once()
        orchestrator.pause_session.assert_not_awaited()
        summary = opened.sent[-1]["summary"]
        assert opened.sent[-1]["type"] == "session_complete"
        assert summary["sessionId"] == SESSION_ID
        assert summary["successfulRecalls"] == 2
        assert summary["recallRate"] == 1.0
        assert summary["recalledPointIds"] == ["rp_1", "rp_2"]
        assert summary["engagementScore"] is None
        assert opened.close_calls == [(CloseCode.NORMAL, "Session completed")]

    @pytest.mark.asyncio
    async def test_leave_incomplete_session_pauses(self, handler, opened, orchestrator):
        orchestrator.recall_on_next = ["rp_1"]
        await _send(handler, opened, {"type": "user_message", "content": "ATP"})
        opened.sent.clear()

        await _send(handler, opened, {"type": "leave_session"})

        orchestrator.pause_session.assert_awaited_once()
        orchestrator.complete_session.assert_not_awaited()
        assert opened.sent == [{
            "type": "session_paused",
            "sessionId": SESSION_ID,
            "recalledCount": 1,
            "totalPoints": 2,
        }]
        assert opened.close_calls == [(CloseCode.SESSION_ENDED, "Session paused")]

    @pytest.mark.asyncio
    async def test_orchestrator_error_is_recoverable(self, handler, opened, orchestrator):
        orchestrator.process_user_message.side_effect = SessionOrchestratorError("evaluator crashed")

        await _send(handler, opened, {"type": "user_message", "content": "hi"})

        assert opened.sent == [{
            "type": "error",
            "code": "SESSION_ENGINE_ERROR",
            "message": "evaluator crashed",
            "recoverable": True,
        }]
        assert opened.close_calls == []
        assert opened.state.consecutive_errors == 0

    @pytest.mark.asyncio
    async def test_llm_error_is_recoverable(self, handler, opened, orchestrator):
        orchestrator.process_user_message.side_effect = LLMError("rate limited")

        await _send(handler, opened, {"type": "user_message", "content": "hi"})

        assert opened.sent[0]["code"] == "LLM_ERROR"
        assert opened.sent[0]["recoverable"] is True
        assert opened.close_calls == []


# ---------------------------------------------------------------------------
# Tangent sub-protocol
# ---------------------------------------------------------------------------

class TestTangents:

    @pytest_asyncio.fixture
    async def tangent_conn(self, handler, deps, llm):
        deps.llm_client = llm
        conn = FakeConnection()
        await handler.handle_open(conn)
        conn.sent.clear()
        return conn

    @pytest.mark.asyncio
    async def test_detected_tangent_is_offered(self, handler, tangent_conn, llm):
        llm.complete.return_value = LLMResponse(text=_detection_json())

        await _send(handler, tangent_conn, {"type": "user_message", "content": "Who named ATP?"})
        await _drain(tangent_conn)

        offers = tangent_conn.of_type("rabbithole_detected")
        assert len(offers) == 1
        assert offers[0]["topic"] == "history of biology"
        assert offers[0]["rabbitholeEventId"].startswith("rh_")
        assert tangent_conn.state.offered_tangent.id == offers[0]["rabbitholeEventId"]

    @pytest.mark.asyncio
    async def test_new_tangent_offered_after_return(self, handler, tangent_conn, llm):
        llm.complete.return_value = LLMResponse(text=_detection_json())
        await _send(handler, tangent_conn, {"type": "user_message", "content": "Who named ATP?"})
        await _drain(tangent_conn)
        first = tangent_conn.state.offered_tangent
        assert first is not None

        async def respond(prompt, **kwargs):
            if "<rabbithole_topic>" in prompt:
                return LLMResponse(text='{"hasReturned": true, "confidence": 0.9}')
            return LLMResponse(text=_detection_json("etymology of enzymes"))

        llm.complete.side_effect = respond
        await _send(
            handler, tangent_conn, {"type": "user_message", "content": "Back to ATP. Enzyme names?"}
        )
        await _drain(tangent_conn)

        offers = tangent_conn.of_type("rabbithole_detected")
        assert [o["topic"] for o in offers] == ["history of biology", "etymology of enzymes"]
        assert tangent_conn.state.offered_tangent.id == offers[1]["rabbitholeEventId"]
        assert not tangent_conn.state.detector.is_active(first.id)
        assert [t.topic for t in tangent_conn.state.detector.get_active_tangents()] == [
            "etymology of enzymes"
        ]

    @pytest.mark.asyncio
    async def test_decline_suppresses_offers(self, handler, tangent_conn, llm):
        await _send(handler, tangent_conn, {"type": "decline_rabbithole"})
        assert tangent_conn.sent == []
        assert tangent_conn.state.decline_cooldown == 3

        llm.complete.return_value = LLMResponse(text=_detection_json())
        await _send(handler, tangent_conn, {"type": "user_message", "content": "Who named ATP?"})
        await _drain(tangent_conn)

        assert "rabbithole_detected" not in tangent_conn.types
        assert tangent_conn.state.decline_cooldown == 2

    @pytest.mark.asyncio
    async def test_detection_failure_is_logged_not_sent(self, handler, tangent_conn, llm):
        llm.complete.side_effect = LLMError("down")

        await _send(handler, tangent_conn, {"type": "user_message", "content": "hi"})
        await _drain(tangent_conn)

        assert "error" not in tangent_conn.types

    @pytest.mark.asyncio
    async def test_enter_and_exit(self, handler, tangent_conn, orchestrator, llm):
        await _send(handler, tangent_conn, {
            "type": "enter_rabbithole", "rabbitholeEventId": "rh_1", "topic": "etymology",
        })

        assert tangent_conn.types[0] == "rabbithole_entered"
        assert tangent_conn.sent[0]["topic"] == "etymology"
        assert tangent_conn.types[-1] == "assistant_complete"
        assert tangent_conn.sent[-1]["fullContent"] == "Let's explore that."
        assert tangent_conn.state.in_tangent

        # While exploring, user messages go to the explorer
        llm.complete.return_value = LLMResponse(text="Greek roots.")
        await _send(handler, tangent_conn, {"type": "user_message", "content": "Origin?"})
        orchestrator.process_user_message.assert_not_awaited()
        assert tangent_conn.sent[-1]["fullContent"] == "Greek roots."

        tangent_conn.sent.clear()
        await _send(handler, tangent_conn, {"type": "exit_rabbithole"})

        assert tangent_conn.sent == [{
            "type": "rabbithole_exited",
            "label": "etymology",
            "pointsRecalledDuring": 0,
            "completionPending": False,
        }]
        assert not tangent_conn.state.in_tangent

    @pytest.mark.asyncio
    async def test_enter_twice_is_an_error(self, handler, tangent_conn):
        enter = {"type": "enter_rabbithole", "rabbitholeEventId": "rh_1", "topic": "etymology"}
        await _send(handler, tangent_conn, enter)
        tangent_conn.sent.clear()

        await _send(handler, tangent_conn, enter)

        assert tangent_conn.sent[0]["code"] == "SESSION_NOT_ACTIVE"
        assert tangent_conn.sent[0]["recoverable"] is True

    @pytest.mark.asyncio
    async def test_exit_outside_tangent_is_an_error(self, handler, opened):
        await _send(handler, opened, {"type": "exit_rabbithole"})

        assert opened.sent[0]["code"] == "SESSION_NOT_ACTIVE"
        assert opened.close_calls == []

    @pytest.mark.asyncio
    async def test_exit_with_pending_completion_shows_overlay(self, handler, tangent_conn, orchestrator):
        await _send(handler, tangent_conn, {
            "type": "enter_rabbithole", "rabbitholeEventId": "rh_1", "topic": "etymology",
        })
        orchestrator.recalled = ["rp_1", "rp_2"]
        tangent_conn.sent.clear()

        await _send(handler, tangent_conn, {"type": "exit_rabbithole"})

        assert tangent_conn.types == ["rabbithole_exited", "session_complete_overlay"]
        assert tangent_conn.sent[0]["pointsRecalledDuring"] == 2
        assert tangent_conn.sent[0]["completionPending"] is True

    @pytest.mark.asyncio
    async def test_enter_without_llm_is_an_error(self, handler, opened):
        await _send(handler, opened, {
            "type": "enter_rabbithole", "rabbitholeEventId": "rh_1", "topic": "etymology",
        })

        assert opened.sent[0]["code"] == "INTERNAL_ERROR"
        assert not opened.state.in_tangent


# ---------------------------------------------------------------------------
# Close, abandon, errors
# ---------------------------------------------------------------------------

class TestLifecycleEnd:

    @pytest.mark.asyncio
    async def test_close_cancels_detection_and_abandons_tangents(self, handler, deps, llm):
        deps.llm_client = llm
        conn = FakeConnection()
        await handler.handle_open(conn)
        llm.complete.return_value = LLMResponse(text=_detection_json())
        await _send(handler, conn, {"type": "user_message", "content": "Who named ATP?"})
        await _drain(conn)
        assert conn.state.detector.get_active_count() == 1

        gate = asyncio.Event()

        async def blocked(*args, **kwargs):
            await gate.wait()
            return LLMResponse(text="{}")

        llm.complete.side_effect = blocked
        await _send(handler, conn, {"type": "user_message", "content": "And then?"})
        for _ in range(5):
            await asyncio.sleep(0)
        pending = list(conn.state.background_tasks)

        await handler.handle_close(conn, 1001, "going away")

        assert all(task.done() for task in pending)
        assert conn.state.background_tasks == set()
        assert conn.state.detector.get_active_count() == 0
        assert conn.state.phase == ConnectionPhase.CLOSED

    @pytest.mark.asyncio
    async def test_abandon(self, handler, opened, orchestrator):
        orchestrator.recalled = ["rp_1"]

        await handler.abandon(opened)

        orchestrator.abandon_session.assert_awaited_once()
        assert opened.types == ["session_complete"]
        summary = opened.sent[0]["summary"]
        assert summary["successfulRecalls"] == 0
        assert summary["recallRate"] == 0
        assert summary["recalledPointIds"] == []
        assert opened.close_calls == [(CloseCode.SESSION_ABANDONED, "Session abandoned")]

    @pytest.mark.asyncio
    async def test_abandon_still_closes_when_orchestrator_fails(self, handler, opened, orchestrator):
        orchestrator.abandon_session.side_effect = RuntimeError("db down")

        await handler.abandon(opened)

        assert opened.types == ["session_complete"]
        assert opened.close_calls[0][0] == CloseCode.SESSION_ABANDONED

    @pytest.mark.asyncio
    async def test_handle_error_reports_internal_error(self, handler, opened):
        await handler.handle_error(opened, RuntimeError("socket broke"))

        assert opened.sent == [{
            "type": "error",
            "code": "INTERNAL_ERROR",
            "message": "socket broke",
            "recoverable": False,
        }]

    @pytest.mark.asyncio
    async def test_idle_timeout(self, handler, opened):
        await handler.handle_idle_timeout(opened)

        assert opened.close_calls == [(CloseCode.IDLE_TIMEOUT, "Idle timeout")]

    @pytest.mark.asyncio
    async def test_close_only_once(self, handler, opened):
        await _send(handler, opened, {"type": "leave_session"})
        await handler.handle_idle_timeout(opened)

        assert len(opened.close_calls) == 1
