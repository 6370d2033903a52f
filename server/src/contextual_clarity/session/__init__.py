"""Session collaborators: orchestrator contracts and the tangent explorer."""

from contextual_clarity.session.contracts import (
    MessageRepository,
    OrchestratorFactory,
    ProcessMessageResult,
    RecallPointRepository,
    RecallSetRepository,
    SessionOrchestrator,
    SessionRepository,
    SessionState,
)
from contextual_clarity.session.tangent_agent import TangentExplorer

__all__ = [
    "MessageRepository",
    "OrchestratorFactory",
    "ProcessMessageResult",
    "RecallPointRepository",
    "RecallSetRepository",
    "SessionOrchestrator",
    "SessionRepository",
    "SessionState",
    "TangentExplorer",
]
