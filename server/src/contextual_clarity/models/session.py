"""Session, recall set and message models."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from contextual_clarity.models.learning import LearningState


class SessionStatus(str, Enum):
    """Lifecycle status of a study session."""

    IN_PROGRESS = "in_progress"
    PAUSED = "paused"  # Left by the user, progress preserved
    COMPLETED = "completed"
    ABANDONED = "abandoned"  # In-progress credit discarded


class MessageRole(str, Enum):
    """Who sent a session message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class RecallSet(BaseModel):
    """A collection of knowledge items studied together."""

    id: str
    name: str
    description: str = ""


class RecallPoint(BaseModel):
    """A single fact the learner is trying to retain."""

    id: str
    recall_set_id: str
    content: str
    context: str = ""
    learning_state: LearningState = Field(default_factory=LearningState)


class Session(BaseModel):
    """One bounded study conversation targeting a set of recall points."""

    id: str
    recall_set_id: str
    status: SessionStatus = SessionStatus.IN_PROGRESS
    target_point_ids: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    ended_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """Completed and abandoned sessions can never be resumed."""
        return self.status in {SessionStatus.COMPLETED, SessionStatus.ABANDONED}


class SessionMessage(BaseModel):
    """A single turn in a session conversation."""

    id: str
    session_id: str
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
