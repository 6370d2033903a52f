"""Completion client protocol shared by everything that talks to an LLM."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class LLMResponse:
    """Result of a single completion request.

    Attributes:
        text: The generated text.
        input_tokens: Prompt tokens billed, when the provider reports them.
        output_tokens: Completion tokens billed, when the provider reports them.
        stop_reason: Why generation stopped (e.g. "end_turn", "max_tokens").
    """

    text: str
    input_tokens: int | None = None
    output_tokens: int | None = None
    stop_reason: str | None = None


@runtime_checkable
class CompletionClient(Protocol):
    """Protocol every LLM completion capability must satisfy.

    ``prompt`` is either a single user prompt or a full conversation as a
    list of ``{"role": ..., "content": ...}`` dicts starting with a user turn.
    """

    async def complete(
        self,
        prompt: str | list[dict[str, str]],
        *,
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse: ...
