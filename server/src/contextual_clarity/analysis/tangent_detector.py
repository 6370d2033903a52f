"""Tangent ("rabbithole") detection and tracking.

A TangentDetector watches the trailing window of a session conversation and
asks the LLM whether it has drifted away from the recall point under
discussion. Open tangents are tracked until the conversation returns or the
session ends.

Detection and return checks mutate the shared active-tangent map across an
LLM call, so both run under one asyncio.Lock per detector. asyncio.Lock
wakes waiters in arrival order, which gives strict FIFO execution.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, replace
from datetime import UTC, datetime
from typing import Any

from contextual_clarity.analysis.prompts import (
    build_detection_prompt,
    build_return_prompt,
    parse_detection_response,
    parse_return_response,
)
from contextual_clarity.models import (
    ActiveTangent,
    MessageRole,
    RecallPoint,
    SessionMessage,
    Tangent,
    TangentStatus,
)
from contextual_clarity.tools.base import CompletionClient

logger = logging.getLogger(__name__)

DETECTION_TEMPERATURE = 0.3
DETECTION_MAX_TOKENS = 512
RETURN_MAX_TOKENS = 256


@dataclass(frozen=True)
class TangentDetectorConfig:
    """Tuning knobs for tangent detection."""

    confidence_threshold: float = 0.6
    return_confidence_threshold: float = 0.6
    message_window_size: int = 10
    track_related_points: bool = True


def generate_tangent_id() -> str:
    """Generate a unique tangent id."""
    return f"rh_{uuid.uuid4()}"


def normalize_topic(topic: str) -> str:
    return topic.strip().lower()


def was_user_initiated(messages: list[SessionMessage], message_index: int) -> bool:
    """Whether the message that triggered a tangent came from the learner.

    Out-of-range indexes count as user-initiated.
    """
    if 0 <= message_index < len(messages):
        return messages[message_index].role == MessageRole.USER
    return True


class TangentDetector:
    """Detects and tracks conversational tangents for one session."""

    def __init__(
        self,
        llm_client: CompletionClient,
        config: TangentDetectorConfig | None = None,
    ) -> None:
        self.llm_client = llm_client
        self.config = config or TangentDetectorConfig()
        self._active: dict[str, ActiveTangent] = {}
        self._lock = asyncio.Lock()
        # Bumped by reset(); results of calls started before a reset are dropped
        self._generation = 0

    def _recent(self, messages: list[SessionMessage]) -> list[SessionMessage]:
        size = self.config.message_window_size
        return list(messages[-size:]) if size > 0 else []

    async def detect_rabbithole(
        self,
        session_id: str,
        messages: list[SessionMessage],
        current_point: RecallPoint,
        all_points: list[RecallPoint],
        message_index: int,
    ) -> Tangent | None:
        """Check whether the conversation has drifted into a new tangent.

        Args:
            session_id: Session being analysed (used for logging)
            messages: All messages in the session so far
            current_point: The recall point under discussion
            all_points: All points in the session
            message_index: Index of the message that triggered the check

        Returns:
            The newly registered tangent, or None

        Raises:
            LLMError: If the completion request fails
        """
        async with self._lock:
            recent = self._recent(messages)
            if len(recent) < 2:
                return None

            generation = self._generation
            existing_topics = [t.topic for t in self._active.values()]
            prompt = build_detection_prompt(
                recent_messages=recent,
                current_point=current_point,
                all_points=all_points if self.config.track_related_points else [],
                existing_topics=existing_topics,
            )

            response = await self.llm_client.complete(
                prompt,
                temperature=DETECTION_TEMPERATURE,
                max_tokens=DETECTION_MAX_TOKENS,
            )
            result = parse_detection_response(response.text)
            if generation != self._generation:
                return None

            if not result.is_rabbithole or result.confidence < self.config.confidence_threshold:
                return None

            topic = result.topic or "Unknown tangent"
            normalized = normalize_topic(topic)
            if any(normalize_topic(t) == normalized for t in existing_topics):
                logger.debug(f"Session {session_id}: tangent '{topic}' already open")
                return None

            active = ActiveTangent(
                id=generate_tangent_id(),
                topic=topic,
                trigger_message_index=message_index,
                depth=result.depth,
                related_point_ids=result.related_point_ids,
                user_initiated=was_user_initiated(messages, message_index),
                detected_at=datetime.now(UTC),
            )
            self._active[active.id] = active

            logger.info(
                f"Session {session_id}: tangent detected '{topic[:50]}' "
                f"(depth={active.depth}, confidence={result.confidence:.2f})"
            )
            return Tangent.from_active(active)

    async def detect_returns(
        self,
        messages: list[SessionMessage],
        current_point: RecallPoint,
        message_index: int,
    ) -> list[Tangent]:
        """Close every open tangent the conversation has come back from.

        Issues one LLM call per open tangent, sequentially.

        Raises:
            LLMError: If a completion request fails
        """
        async with self._lock:
            if not self._active:
                return []

            recent = self._recent(messages)
            if len(recent) < 2:
                return []

            generation = self._generation
            returned: list[Tangent] = []
            for tangent_id, active in list(self._active.items()):
                prompt = build_return_prompt(active.topic, current_point, recent)
                response = await self.llm_client.complete(
                    prompt,
                    temperature=DETECTION_TEMPERATURE,
                    max_tokens=RETURN_MAX_TOKENS,
                )
                result = parse_return_response(response.text)
                if generation != self._generation:
                    return []

                if (
                    result.has_returned
                    and result.confidence >= self.config.return_confidence_threshold
                ):
                    del self._active[tangent_id]
                    returned.append(
                        Tangent.from_active(
                            active,
                            status=TangentStatus.RETURNED,
                            return_message_index=message_index,
                        )
                    )
                    logger.info(f"Returned from tangent '{active.topic[:50]}'")

            return returned

    def close_all_active(self, final_message_index: int) -> list[Tangent]:
        """Force-close every open tangent as abandoned."""
        closed = [
            Tangent.from_active(
                active,
                status=TangentStatus.ABANDONED,
                return_message_index=final_message_index,
            )
            for active in self._active.values()
        ]
        self._active.clear()
        if closed:
            logger.info(f"Closed {len(closed)} open tangent(s) at message {final_message_index}")
        return closed

    def reset(self) -> None:
        """Forget all tangents, ready for a new session."""
        self._active.clear()
        self._generation += 1

    def get_active_tangents(self) -> list[Tangent]:
        return [Tangent.from_active(active) for active in self._active.values()]

    def get_active_count(self) -> int:
        return len(self._active)

    def is_active(self, tangent_id: str) -> bool:
        return tangent_id in self._active

    def get_config(self) -> dict[str, Any]:
        return asdict(self.config)

    def update_config(self, **changes: Any) -> None:
        """Replace selected configuration values.

        Raises:
            TypeError: If an unknown option is passed
        """
        self.config = replace(self.config, **changes)
