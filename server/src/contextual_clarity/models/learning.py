"""Learning state models for FSRS scheduling."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class RecallRating(str, Enum):
    """User-facing rating for a recall attempt, ordered by recall quality.

    FORGOT: Complete failure to recall
    HARD: Recalled with significant difficulty
    GOOD: Recalled successfully with some effort
    EASY: Recalled effortlessly
    """

    FORGOT = "forgot"
    HARD = "hard"
    GOOD = "good"
    EASY = "easy"


class LearningPhase(str, Enum):
    """Where a knowledge item sits in the FSRS lifecycle."""

    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"
    RELEARNING = "relearning"


class LearningState(BaseModel):
    """Per-item memory state, mutated only through the scheduler.

    Invariant: reps == 0 <=> state == NEW <=> last_review is None.
    """

    difficulty: float = 0.0
    stability: float = 0.0  # Days for recall probability to fall from 100% to 90%
    due: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_review: datetime | None = None
    reps: int = Field(default=0, ge=0)
    lapses: int = Field(default=0, ge=0)
    state: LearningPhase = LearningPhase.NEW
    step: int | None = None  # Position in the learning/relearning step ladder
