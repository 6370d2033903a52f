"""FSRS scheduler - spaced repetition scheduling for recall points.

Wraps the ``fsrs`` library behind the application's domain types:

- Converts between LearningState and the library's Card
- Creates initial states for new recall points
- Schedules the next review from a RecallRating
- Reports whether a point is due and how likely it is to be recalled

The scheduler holds no mutable state beyond its configuration, so a single
instance can be shared by every session.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

from fsrs import Card, Rating, Scheduler, State

from contextual_clarity.config import Settings
from contextual_clarity.models.learning import LearningPhase, LearningState, RecallRating

logger = logging.getLogger(__name__)

_TO_FSRS_RATING: dict[RecallRating, Rating] = {
    RecallRating.FORGOT: Rating.Again,
    RecallRating.HARD: Rating.Hard,
    RecallRating.GOOD: Rating.Good,
    RecallRating.EASY: Rating.Easy,
}

_FROM_FSRS_RATING: dict[Rating, RecallRating] = {
    fsrs_rating: rating for rating, fsrs_rating in _TO_FSRS_RATING.items()
}

_TO_FSRS_STATE: dict[LearningPhase, State] = {
    LearningPhase.LEARNING: State.Learning,
    LearningPhase.REVIEW: State.Review,
    LearningPhase.RELEARNING: State.Relearning,
}

_FROM_FSRS_STATE: dict[State, LearningPhase] = {
    fsrs_state: phase for phase, fsrs_state in _TO_FSRS_STATE.items()
}


def to_fsrs_rating(rating: RecallRating) -> Rating:
    """Map an application rating to the library's Rating."""
    return _TO_FSRS_RATING[RecallRating(rating)]


def from_fsrs_rating(rating: Rating) -> RecallRating:
    """Map a library Rating back to an application rating."""
    return _FROM_FSRS_RATING[rating]


def _as_utc(moment: datetime) -> datetime:
    """Normalize to an aware UTC datetime. Naive values are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


@dataclass(frozen=True)
class SchedulerConfig:
    """Tuning for the FSRS algorithm.

    Attributes:
        maximum_interval: Cap on days between reviews.
        request_retention: Target recall probability (0-1) at the due date.
    """

    maximum_interval: int = 365
    request_retention: float = 0.9

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchedulerConfig":
        return cls(
            maximum_interval=settings.fsrs_maximum_interval,
            request_retention=settings.fsrs_request_retention,
        )


class FSRSScheduler:
    """Domain-facing interface to FSRS scheduling.

    Example:
        scheduler = FSRSScheduler()
        state = scheduler.create_initial_state()
        state = scheduler.schedule(state, RecallRating.GOOD)
        if scheduler.is_due(state):
            ...
    """

    def __init__(self, config: SchedulerConfig | None = None) -> None:
        self.config = config or SchedulerConfig()
        self._fsrs = Scheduler(
            desired_retention=self.config.request_retention,
            maximum_interval=self.config.maximum_interval,
            enable_fuzzing=False,
        )

    def get_config(self) -> dict[str, float]:
        """Return a copy of the scheduler configuration."""
        return asdict(self.config)

    @staticmethod
    def _is_fresh(state: LearningState) -> bool:
        return (
            state.state == LearningPhase.NEW
            or state.last_review is None
            or state.stability <= 0
            or state.difficulty <= 0
        )

    def to_card(self, state: LearningState) -> Card:
        """Convert a LearningState into a library Card.

        Never-reviewed states become a learning card on its first step with
        no memory model yet, which is how the library represents new cards.
        """
        if self._is_fresh(state):
            return Card(
                card_id=0,
                state=State.Learning,
                step=0,
                due=_as_utc(state.due),
            )

        fsrs_state = _TO_FSRS_STATE[state.state]
        step = None
        if fsrs_state in (State.Learning, State.Relearning):
            step = state.step if state.step is not None else 0

        return Card(
            card_id=0,
            state=fsrs_state,
            step=step,
            stability=state.stability,
            difficulty=state.difficulty,
            due=_as_utc(state.due),
            last_review=_as_utc(state.last_review),
        )

    @staticmethod
    def from_card(card: Card, reps: int, lapses: int) -> LearningState:
        """Convert a library Card back into a LearningState."""
        return LearningState(
            difficulty=card.difficulty or 0.0,
            stability=card.stability or 0.0,
            due=card.due,
            last_review=card.last_review,
            reps=reps,
            lapses=lapses,
            state=_FROM_FSRS_STATE[card.state],
            step=card.step,
        )

    def create_initial_state(self, now: datetime | None = None) -> LearningState:
        """Create the state of a never-reviewed recall point.

        The due date is the creation time, so new points are immediately
        available for their first review.
        """
        created = _as_utc(now) if now is not None else datetime.now(UTC)
        return LearningState(
            difficulty=0.0,
            stability=0.0,
            due=created,
            last_review=None,
            reps=0,
            lapses=0,
            state=LearningPhase.NEW,
            step=None,
        )

    def schedule(
        self,
        state: LearningState,
        rating: RecallRating,
        review_time: datetime | None = None,
    ) -> LearningState:
        """Compute the state after a review with the given rating.

        Lapses are only counted when a point in the review phase is
        forgotten; forgetting during (re)learning just restarts the steps.

        Args:
            state: Current learning state (not modified)
            rating: How well the learner recalled the point
            review_time: When the review happened (defaults to now)

        Returns:
            A new LearningState with the next due date
        """
        reviewed_at = _as_utc(review_time) if review_time is not None else datetime.now(UTC)
        rating = RecallRating(rating)

        card, _ = self._fsrs.review_card(
            self.to_card(state),
            to_fsrs_rating(rating),
            review_datetime=reviewed_at,
        )

        lapses = state.lapses
        if rating == RecallRating.FORGOT and state.state == LearningPhase.REVIEW:
            lapses += 1

        next_state = self.from_card(card, reps=state.reps + 1, lapses=lapses)
        logger.debug(
            f"Scheduled {state.state.value} -> {next_state.state.value} "
            f"({rating.value}), due {next_state.due.isoformat()}"
        )
        return next_state

    def is_due(self, state: LearningState, as_of: datetime | None = None) -> bool:
        """A point is due once the check time reaches its due date."""
        check_time = _as_utc(as_of) if as_of is not None else datetime.now(UTC)
        return check_time >= _as_utc(state.due)

    def get_retrievability(
        self,
        state: LearningState,
        as_of: datetime | None = None,
    ) -> float:
        """Estimated probability (0-1) that the point can be recalled at as_of.

        Never-reviewed points have no memory model and report 0.
        """
        if self._is_fresh(state):
            return 0.0
        check_time = _as_utc(as_of) if as_of is not None else datetime.now(UTC)
        retrievability = self._fsrs.get_card_retrievability(
            self.to_card(state),
            current_datetime=check_time,
        )
        return min(1.0, max(0.0, float(retrievability)))
