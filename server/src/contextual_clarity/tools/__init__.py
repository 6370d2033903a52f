"""External integrations and API wrappers."""

from contextual_clarity.tools.base import CompletionClient, LLMResponse
from contextual_clarity.tools.claude import ClaudeClient

__all__ = ["ClaudeClient", "CompletionClient", "LLMResponse"]
