"""Pydantic models for Contextual Clarity - the contracts."""

from contextual_clarity.models.learning import LearningPhase, LearningState, RecallRating
from contextual_clarity.models.session import (
    MessageRole,
    RecallPoint,
    RecallSet,
    Session,
    SessionMessage,
    SessionStatus,
)
from contextual_clarity.models.tangent import (
    ActiveTangent,
    Tangent,
    TangentDepth,
    TangentDetectionResult,
    TangentReturnResult,
    TangentStatus,
)

__all__ = [
    "ActiveTangent",
    "LearningPhase",
    "LearningState",
    "MessageRole",
    "RecallPoint",
    "RecallRating",
    "RecallSet",
    "Session",
    "SessionMessage",
    "SessionStatus",
    "Tangent",
    "TangentDepth",
    "TangentDetectionResult",
    "TangentReturnResult",
    "TangentStatus",
]
