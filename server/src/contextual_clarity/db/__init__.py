"""Database access layer."""

from contextual_clarity.db.client import (
    DatabaseClient,
    SupabaseMessageRepository,
    SupabaseRecallPointRepository,
    SupabaseRecallSetRepository,
    SupabaseSessionRepository,
)

__all__ = [
    "DatabaseClient",
    "SupabaseMessageRepository",
    "SupabaseRecallPointRepository",
    "SupabaseRecallSetRepository",
    "SupabaseSessionRepository",
]
