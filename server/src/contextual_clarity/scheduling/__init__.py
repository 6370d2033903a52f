"""FSRS spaced repetition scheduling."""

from contextual_clarity.scheduling.scheduler import (
    FSRSScheduler,
    SchedulerConfig,
    from_fsrs_rating,
    to_fsrs_rating,
)

__all__ = ["FSRSScheduler", "SchedulerConfig", "from_fsrs_rating", "to_fsrs_rating"]
