"""Supabase-backed repositories for sessions, recall sets, points and messages."""

import logging
from datetime import datetime
from enum import Enum
from typing import Any

from supabase import Client, create_client

from contextual_clarity.config import get_settings
from contextual_clarity.models import (
    LearningState,
    RecallPoint,
    RecallSet,
    Session,
    SessionMessage,
)

logger = logging.getLogger(__name__)

SESSIONS_TABLE = "sessions"
RECALL_SETS_TABLE = "recall_sets"
RECALL_POINTS_TABLE = "recall_points"
MESSAGES_TABLE = "session_messages"


class DatabaseClient:
    """Client for Supabase database operations."""

    def __init__(self, client: Client | None = None) -> None:
        if client is None:
            settings = get_settings()
            client = create_client(settings.supabase_url, settings.supabase_key)
        self.client: Client = client

    def select_one(self, table: str, row_id: str) -> dict[str, Any] | None:
        result = self.client.table(table).select("*").eq("id", row_id).execute()
        if result.data:
            return result.data[0]
        return None

    def select_where(self, table: str, column: str, value: str, order_by: str | None = None) -> list[dict[str, Any]]:
        query = self.client.table(table).select("*").eq(column, value)
        if order_by:
            query = query.order(order_by)
        return list(query.execute().data or [])


def _session_from_row(row: dict[str, Any]) -> Session:
    return Session(
        id=row["id"],
        recall_set_id=row["recall_set_id"],
        status=row["status"],
        target_point_ids=row.get("target_recall_point_ids") or [],
        started_at=row["started_at"],
        ended_at=row.get("ended_at"),
    )


def _point_from_row(row: dict[str, Any]) -> RecallPoint:
    fsrs_state = row.get("fsrs_state")
    return RecallPoint(
        id=row["id"],
        recall_set_id=row["recall_set_id"],
        content=row["content"],
        context=row.get("context") or "",
        learning_state=(
            LearningState.model_validate(fsrs_state) if fsrs_state else LearningState()
        ),
    )


class SupabaseSessionRepository:
    """Session lookups and status updates."""

    def __init__(self, db: DatabaseClient) -> None:
        self.db = db

    async def find_by_id(self, session_id: str) -> Session | None:
        row = self.db.select_one(SESSIONS_TABLE, session_id)
        return _session_from_row(row) if row else None

    async def update(self, session_id: str, changes: dict[str, Any]) -> Session | None:
        """Apply column changes to a session.

        Args:
            session_id: The session ID
            changes: Column values keyed by Session field name

        Returns:
            The updated session, or None if it doesn't exist
        """
        data: dict[str, Any] = {}
        for key, value in changes.items():
            column = "target_recall_point_ids" if key == "target_point_ids" else key
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, Enum):
                value = value.value
            data[column] = value

        result = self.db.client.table(SESSIONS_TABLE).update(data).eq("id", session_id).execute()
        logger.debug(f"Updated session {session_id}: {sorted(data)}")
        if result.data:
            return _session_from_row(result.data[0])
        return None


class SupabaseRecallSetRepository:
    def __init__(self, db: DatabaseClient) -> None:
        self.db = db

    async def find_by_id(self, recall_set_id: str) -> RecallSet | None:
        row = self.db.select_one(RECALL_SETS_TABLE, recall_set_id)
        if row is None:
            return None
        return RecallSet(id=row["id"], name=row["name"], description=row.get("description") or "")


class SupabaseRecallPointRepository:
    def __init__(self, db: DatabaseClient) -> None:
        self.db = db

    async def find_by_id(self, point_id: str) -> RecallPoint | None:
        row = self.db.select_one(RECALL_POINTS_TABLE, point_id)
        return _point_from_row(row) if row else None

    async def find_by_recall_set_id(self, recall_set_id: str) -> list[RecallPoint]:
        rows = self.db.select_where(RECALL_POINTS_TABLE, "recall_set_id", recall_set_id)
        return [_point_from_row(row) for row in rows]


class SupabaseMessageRepository:
    def __init__(self, db: DatabaseClient) -> None:
        self.db = db

    async def find_by_id(self, message_id: str) -> SessionMessage | None:
        row = self.db.select_one(MESSAGES_TABLE, message_id)
        return SessionMessage.model_validate(row) if row else None

    async def find_by_session_id(self, session_id: str) -> list[SessionMessage]:
        """All messages of a session, oldest first."""
        rows = self.db.select_where(MESSAGES_TABLE, "session_id", session_id, order_by="timestamp")
        return [SessionMessage.model_validate(row) for row in rows]
