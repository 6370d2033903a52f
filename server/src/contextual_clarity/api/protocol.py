"""WebSocket wire protocol for live recall sessions.

Frames are JSON text objects discriminated by a ``type`` field. Field names
on the wire are camelCase; the models below use snake_case attributes with
camelCase aliases.
"""

from __future__ import annotations

import json
from enum import Enum, IntEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for every frame: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Close and error codes
# ---------------------------------------------------------------------------


class CloseCode(IntEnum):
    """WebSocket close codes. Values are part of the client contract."""

    NORMAL = 1000  # Session completed
    SESSION_ENDED = 4000  # Client left (session paused)
    SESSION_ABANDONED = 4001
    INVALID_SESSION = 4002
    TOO_MANY_ERRORS = 4003
    SERVER_SHUTDOWN = 4004
    IDLE_TIMEOUT = 4005


class WebSocketErrorCode(str, Enum):
    """Error codes carried by ``error`` frames."""

    INVALID_SESSION_ID = "INVALID_SESSION_ID"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_NOT_ACTIVE = "SESSION_NOT_ACTIVE"
    INVALID_MESSAGE_FORMAT = "INVALID_MESSAGE_FORMAT"
    UNKNOWN_MESSAGE_TYPE = "UNKNOWN_MESSAGE_TYPE"
    MISSING_CONTENT = "MISSING_CONTENT"
    SESSION_ENGINE_ERROR = "SESSION_ENGINE_ERROR"
    LLM_ERROR = "LLM_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_CODE_DESCRIPTIONS: dict[WebSocketErrorCode, str] = {
    WebSocketErrorCode.INVALID_SESSION_ID: "The session ID is missing or invalid",
    WebSocketErrorCode.SESSION_NOT_FOUND: "The specified session does not exist",
    WebSocketErrorCode.SESSION_NOT_ACTIVE: "The session is not in an active state",
    WebSocketErrorCode.INVALID_MESSAGE_FORMAT: "The message could not be parsed as valid JSON",
    WebSocketErrorCode.UNKNOWN_MESSAGE_TYPE: "The message type is not recognized",
    WebSocketErrorCode.MISSING_CONTENT: "The message is missing a required field",
    WebSocketErrorCode.SESSION_ENGINE_ERROR: "An error occurred in the session engine",
    WebSocketErrorCode.LLM_ERROR: "An error occurred while communicating with the LLM API",
    WebSocketErrorCode.INTERNAL_ERROR: "An unexpected internal server error occurred",
}


# ---------------------------------------------------------------------------
# Client -> server
# ---------------------------------------------------------------------------


class UserMessage(WireModel):
    type: Literal["user_message"] = "user_message"
    content: str


class LeaveSessionMessage(WireModel):
    """Pause the session, keeping recall progress."""

    type: Literal["leave_session"] = "leave_session"


class PingMessage(WireModel):
    type: Literal["ping"] = "ping"


class EnterRabbitholeMessage(WireModel):
    type: Literal["enter_rabbithole"] = "enter_rabbithole"
    rabbithole_event_id: str
    topic: str


class ExitRabbitholeMessage(WireModel):
    type: Literal["exit_rabbithole"] = "exit_rabbithole"


class DeclineRabbitholeMessage(WireModel):
    type: Literal["decline_rabbithole"] = "decline_rabbithole"


class DismissOverlayMessage(WireModel):
    """Keep discussing after every point has been recalled."""

    type: Literal["dismiss_overlay"] = "dismiss_overlay"


ClientMessage = (
    UserMessage
    | LeaveSessionMessage
    | PingMessage
    | EnterRabbitholeMessage
    | ExitRabbitholeMessage
    | DeclineRabbitholeMessage
    | DismissOverlayMessage
)

_FIELDLESS_MESSAGES: dict[str, type[WireModel]] = {
    "leave_session": LeaveSessionMessage,
    "ping": PingMessage,
    "exit_rabbithole": ExitRabbitholeMessage,
    "decline_rabbithole": DeclineRabbitholeMessage,
    "dismiss_overlay": DismissOverlayMessage,
}

CLIENT_MESSAGE_TYPES: frozenset[str] = frozenset(
    {"user_message", "enter_rabbithole", *_FIELDLESS_MESSAGES}
)


# ---------------------------------------------------------------------------
# Server -> client
# ---------------------------------------------------------------------------


class SessionCompletionSummary(WireModel):
    """Outcome of a finished session, sent with ``session_complete``."""

    session_id: str
    total_points_reviewed: int
    successful_recalls: int
    recall_rate: float
    duration_ms: int
    engagement_score: float | None = None
    estimated_cost_usd: float | None = None
    rabbithole_count: int = 0
    recalled_point_ids: list[str] = Field(default_factory=list)


class SessionStartedPayload(WireModel):
    type: Literal["session_started"] = "session_started"
    session_id: str
    opening_message: str
    total_points: int
    recalled_count: int


class AssistantChunkPayload(WireModel):
    type: Literal["assistant_chunk"] = "assistant_chunk"
    content: str
    chunk_index: int


class AssistantCompletePayload(WireModel):
    type: Literal["assistant_complete"] = "assistant_complete"
    full_content: str
    total_chunks: int


class PointRecalledPayload(WireModel):
    type: Literal["point_recalled"] = "point_recalled"
    point_id: str
    recalled_count: int
    total_points: int


class SessionCompletePayload(WireModel):
    type: Literal["session_complete"] = "session_complete"
    summary: SessionCompletionSummary


class SessionCompleteOverlayPayload(WireModel):
    type: Literal["session_complete_overlay"] = "session_complete_overlay"
    recalled_count: int
    total_points: int
    session_id: str
    message: str
    can_continue: bool = True


class SessionPausedPayload(WireModel):
    type: Literal["session_paused"] = "session_paused"
    session_id: str
    recalled_count: int
    total_points: int


class RabbitholeDetectedPayload(WireModel):
    type: Literal["rabbithole_detected"] = "rabbithole_detected"
    topic: str
    rabbithole_event_id: str


class RabbitholeEnteredPayload(WireModel):
    type: Literal["rabbithole_entered"] = "rabbithole_entered"
    topic: str


class RabbitholeExitedPayload(WireModel):
    type: Literal["rabbithole_exited"] = "rabbithole_exited"
    label: str
    points_recalled_during: int
    completion_pending: bool


class ErrorPayload(WireModel):
    type: Literal["error"] = "error"
    code: WebSocketErrorCode
    message: str
    recoverable: bool = True


class PongPayload(WireModel):
    type: Literal["pong"] = "pong"
    timestamp: int  # Epoch milliseconds


ServerMessage = Annotated[
    SessionStartedPayload
    | AssistantChunkPayload
    | AssistantCompletePayload
    | PointRecalledPayload
    | SessionCompletePayload
    | SessionCompleteOverlayPayload
    | SessionPausedPayload
    | RabbitholeDetectedPayload
    | RabbitholeEnteredPayload
    | RabbitholeExitedPayload
    | ErrorPayload
    | PongPayload,
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def is_client_message_type(value: Any) -> bool:
    """Whether ``value`` names a known client message type."""
    return isinstance(value, str) and value in CLIENT_MESSAGE_TYPES


def create_error_payload(
    code: WebSocketErrorCode,
    message: str | None = None,
    recoverable: bool = True,
) -> ErrorPayload:
    """Build an error frame, defaulting to the code's standard description."""
    return ErrorPayload(
        code=code,
        message=message or ERROR_CODE_DESCRIPTIONS[code],
        recoverable=recoverable,
    )


def parse_client_message(raw: str | bytes) -> ClientMessage | ErrorPayload:
    """Parse an inbound frame.

    Never raises: every malformed frame is reported as a recoverable
    ErrorPayload.
    """
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError, ValueError, RecursionError):
        return create_error_payload(
            WebSocketErrorCode.INVALID_MESSAGE_FORMAT, "Failed to parse message as JSON"
        )

    if not isinstance(parsed, dict) or "type" not in parsed:
        return create_error_payload(
            WebSocketErrorCode.INVALID_MESSAGE_FORMAT,
            'Message must be an object with a "type" field',
        )

    message_type = parsed["type"]
    if not is_client_message_type(message_type):
        return create_error_payload(
            WebSocketErrorCode.UNKNOWN_MESSAGE_TYPE,
            f"Unknown message type: {message_type}",
        )

    if message_type == "user_message":
        content = parsed.get("content")
        if not isinstance(content, str) or not content.strip():
            return create_error_payload(
                WebSocketErrorCode.MISSING_CONTENT,
                'user_message must include a non-empty "content" field',
            )
        return UserMessage(content=content)

    if message_type == "enter_rabbithole":
        event_id = parsed.get("rabbitholeEventId")
        topic = parsed.get("topic")
        if not isinstance(event_id, str) or not isinstance(topic, str):
            return create_error_payload(
                WebSocketErrorCode.MISSING_CONTENT,
                'enter_rabbithole must include "rabbitholeEventId" and "topic" fields',
            )
        return EnterRabbitholeMessage(rabbithole_event_id=event_id, topic=topic)

    return _FIELDLESS_MESSAGES[message_type]()


def serialize_server_message(message: WireModel) -> str:
    """Encode a server frame as JSON with camelCase keys."""
    return message.model_dump_json(by_alias=True)
