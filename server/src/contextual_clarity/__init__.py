"""Contextual Clarity - real-time Socratic recall session server."""

__version__ = "0.1.0"

from contextual_clarity.exceptions import (
    LLMError,
    SessionOrchestratorError,
    SessionSetupError,
)

__all__ = [
    "__version__",
    "LLMError",
    "SessionOrchestratorError",
    "SessionSetupError",
]
