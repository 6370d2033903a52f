"""Custom exceptions for Contextual Clarity."""

from enum import Enum


class LLMErrorType(str, Enum):
    """Failure modes of an upstream LLM call."""

    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    INVALID_REQUEST = "invalid_request"
    SERVER_ERROR = "server_error"
    NETWORK = "network"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class LLMError(Exception):
    """Raised when a completion request to the LLM provider fails."""

    def __init__(
        self,
        message: str,
        error_type: LLMErrorType = LLMErrorType.UNKNOWN,
    ) -> None:
        self.error_type = error_type
        super().__init__(message)


class SessionOrchestratorError(Exception):
    """Raised by a session orchestrator when it cannot process a turn."""


class SessionSetupError(Exception):
    """Raised when a connection cannot be bound to a resumable session."""

    def __init__(self, session_id: str, reason: str) -> None:
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Cannot set up session {session_id}: {reason}")
