"""Tangent ("rabbithole") tracking models."""

from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

TangentDepth = Literal[1, 2, 3]


class TangentStatus(str, Enum):
    """Status of a tangent record."""

    ACTIVE = "active"
    RETURNED = "returned"  # Conversation came back to the recall point
    ABANDONED = "abandoned"  # Session ended while still on the tangent


class ActiveTangent(BaseModel):
    """Authoritative record of a currently open tangent."""

    id: str
    topic: str
    trigger_message_index: int
    depth: TangentDepth = 1
    related_point_ids: list[str] = Field(default_factory=list)
    user_initiated: bool = True
    detected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Tangent(BaseModel):
    """A tangent event as reported to callers."""

    id: str
    topic: str
    trigger_message_index: int
    return_message_index: int | None = None
    depth: TangentDepth = 1
    related_point_ids: list[str] = Field(default_factory=list)
    user_initiated: bool = True
    status: TangentStatus = TangentStatus.ACTIVE

    @classmethod
    def from_active(
        cls,
        active: ActiveTangent,
        status: TangentStatus = TangentStatus.ACTIVE,
        return_message_index: int | None = None,
    ) -> "Tangent":
        return cls(
            id=active.id,
            topic=active.topic,
            trigger_message_index=active.trigger_message_index,
            return_message_index=return_message_index,
            depth=active.depth,
            related_point_ids=list(active.related_point_ids),
            user_initiated=active.user_initiated,
            status=status,
        )


class TangentDetectionResult(BaseModel):
    """Structured answer to "has the conversation drifted?"."""

    is_rabbithole: bool = False
    topic: str | None = None
    depth: TangentDepth = 1
    related_to_current_point: bool = False
    related_point_ids: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""


class TangentReturnResult(BaseModel):
    """Structured answer to "has the conversation come back?"."""

    has_returned: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""
