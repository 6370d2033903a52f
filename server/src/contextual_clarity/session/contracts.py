"""Contracts for the collaborators a live session connection depends on.

Storage and the session orchestrator are owned elsewhere; the connection
handler only talks to them through these protocols.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from contextual_clarity.models import (
    RecallPoint,
    RecallSet,
    Session,
    SessionMessage,
)

PointStatus = Literal["pending", "recalled"]


@dataclass
class ProcessMessageResult:
    """Outcome of one user turn as reported by the orchestrator."""

    response: str
    completed: bool
    recalled_count: int
    total_points: int
    points_recalled_this_turn: list[str] = field(default_factory=list)


@dataclass
class SessionState:
    """Snapshot of orchestrator progress through a session."""

    session: Session
    recall_set: RecallSet
    point_checklist: dict[str, PointStatus]
    current_probe_index: int
    current_probe_point: RecallPoint | None
    total_points: int
    recalled_count: int
    unchecked_points: list[RecallPoint]
    message_count: int
    is_complete: bool
    target_points: list[RecallPoint] = field(default_factory=list)
    # Owned by the orchestrator; None when it doesn't compute them
    engagement_score: float | None = None
    estimated_cost_usd: float | None = None

    @property
    def recalled_point_ids(self) -> list[str]:
        return [pid for pid, status in self.point_checklist.items() if status == "recalled"]


class SessionRepository(Protocol):
    async def find_by_id(self, session_id: str) -> Session | None: ...

    async def update(self, session_id: str, changes: dict[str, Any]) -> Session | None: ...


class RecallSetRepository(Protocol):
    async def find_by_id(self, recall_set_id: str) -> RecallSet | None: ...


class RecallPointRepository(Protocol):
    async def find_by_id(self, point_id: str) -> RecallPoint | None: ...

    async def find_by_recall_set_id(self, recall_set_id: str) -> list[RecallPoint]: ...


class MessageRepository(Protocol):
    async def find_by_id(self, message_id: str) -> SessionMessage | None: ...

    async def find_by_session_id(self, session_id: str) -> list[SessionMessage]: ...


class SessionOrchestrator(Protocol):
    """Drives the tutoring conversation for one session.

    Persistence of messages, recall progress and session status is the
    orchestrator's responsibility.
    """

    async def start_session(self, recall_set: RecallSet) -> Session: ...

    async def get_opening_message(self) -> str: ...

    async def get_session_state(self) -> SessionState: ...

    async def process_user_message(self, content: str) -> ProcessMessageResult: ...

    async def trigger_evaluation(self) -> ProcessMessageResult: ...

    async def abandon_session(self) -> None: ...

    async def pause_session(self) -> None: ...

    async def complete_session(self) -> None: ...


OrchestratorFactory = Callable[[Session], SessionOrchestrator]
