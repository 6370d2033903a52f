"""Anthropic Claude API wrapper with retry logic."""

import asyncio
import logging

from anthropic import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AsyncAnthropic,
    AuthenticationError,
    BadRequestError,
    RateLimitError,
)

from contextual_clarity.config import get_settings
from contextual_clarity.exceptions import LLMError, LLMErrorType
from contextual_clarity.tools.base import LLMResponse

logger = logging.getLogger(__name__)


def _classify(error: Exception) -> LLMErrorType:
    """Map an Anthropic SDK exception onto an LLMErrorType."""
    if isinstance(error, AuthenticationError):
        return LLMErrorType.AUTHENTICATION
    if isinstance(error, RateLimitError):
        return LLMErrorType.RATE_LIMIT
    if isinstance(error, BadRequestError):
        return LLMErrorType.INVALID_REQUEST
    if isinstance(error, APITimeoutError):
        return LLMErrorType.TIMEOUT
    if isinstance(error, APIConnectionError):
        return LLMErrorType.NETWORK
    if isinstance(error, APIStatusError) and error.status_code >= 500:
        return LLMErrorType.SERVER_ERROR
    return LLMErrorType.UNKNOWN


class ClaudeClient:
    """Wrapper for Anthropic Claude API with retry logic."""

    name: str = "claude"

    def __init__(self, *, system: str | None = None) -> None:
        settings = get_settings()
        self.client = AsyncAnthropic(api_key=settings.anthropic_api_key)
        self.model = settings.claude_model
        self.max_tokens = settings.claude_max_tokens
        self.default_temperature = 0.7
        self.system = system
        self.max_retries = 3
        self.base_delay = 1.0

    def set_system_prompt(self, system: str | None) -> None:
        """Set the system prompt used when a call doesn't pass its own."""
        self.system = system

    async def health_check(self) -> bool:
        """Check connectivity to the Claude API with a minimal request."""
        try:
            await self.client.messages.create(
                model=self.model,
                max_tokens=10,
                messages=[{"role": "user", "content": "ping"}],
            )
            return True
        except Exception:
            return False

    async def complete(
        self,
        prompt: str | list[dict[str, str]],
        *,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion from Claude.

        Args:
            prompt: A user prompt, or a conversation history
            system: Optional system prompt (falls back to the client's own)
            temperature: Override default temperature
            max_tokens: Override default max tokens

        Returns:
            The generated response

        Raises:
            LLMError: If the API request fails after retries
        """
        if isinstance(prompt, str):
            messages = [{"role": "user", "content": prompt}]
        else:
            messages = [{"role": m["role"], "content": m["content"]} for m in prompt]

        for attempt in range(self.max_retries):
            try:
                response = await self.client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens or self.max_tokens,
                    temperature=(
                        temperature if temperature is not None else self.default_temperature
                    ),
                    system=system or self.system or "",
                    messages=messages,
                )
                text = "".join(
                    block.text for block in response.content if block.type == "text"
                )
                return LLMResponse(
                    text=text,
                    input_tokens=response.usage.input_tokens,
                    output_tokens=response.usage.output_tokens,
                    stop_reason=response.stop_reason,
                )

            except RateLimitError as e:
                if attempt == self.max_retries - 1:
                    raise LLMError(str(e), LLMErrorType.RATE_LIMIT) from e
                delay = self.base_delay * (2**attempt)
                logger.warning(f"Rate limited, retrying in {delay}s: {e}")
                await asyncio.sleep(delay)

            except APIError as e:
                error_type = _classify(e)
                retryable = error_type in {
                    LLMErrorType.SERVER_ERROR,
                    LLMErrorType.NETWORK,
                    LLMErrorType.TIMEOUT,
                }
                if not retryable or attempt == self.max_retries - 1:
                    raise LLMError(str(e), error_type) from e
                delay = self.base_delay * (2**attempt)
                logger.warning(f"Server error, retrying in {delay}s: {e}")
                await asyncio.sleep(delay)

        raise LLMError("Max retries exceeded", LLMErrorType.UNKNOWN)
