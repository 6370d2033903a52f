"""Prompt builders and response parsers for tangent detection.

The LLM is asked to answer with a single JSON object. Responses are parsed
leniently: JSON may arrive wrapped in a markdown code block or surrounded by
prose, and fields are normalised rather than validated strictly. Anything
that cannot be parsed degrades to a negative result ("no tangent",
"not returned") so that a confused model never opens or closes a tangent.
"""

import json
import re
from typing import Any

from contextual_clarity.models import (
    MessageRole,
    RecallPoint,
    SessionMessage,
    TangentDetectionResult,
    TangentReturnResult,
)

_CLOSING_TAG = re.compile(
    r"</(current_recall_point|recent_messages|rabbithole_topic)>", re.IGNORECASE
)
_CODE_FENCE_JSON = re.compile(r"```json", re.IGNORECASE)
_CODE_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

_ROLE_LABELS = {
    MessageRole.USER: "Learner",
    MessageRole.ASSISTANT: "Tutor",
    MessageRole.SYSTEM: "System",
}

_POINT_PREVIEW_CHARS = 100


def sanitize_input(text: str | None) -> str:
    """Neutralise sequences that could break the prompt's delimiters."""
    if not text:
        return ""
    text = text.strip()
    text = _CLOSING_TAG.sub(r"&lt;/\1&gt;", text)
    text = _CODE_FENCE_JSON.sub("` ` `json", text)
    return text.replace("```", "` ` `")


def _format_messages(messages: list[SessionMessage]) -> str:
    return "\n\n".join(
        f"[{_ROLE_LABELS.get(m.role, 'System')}]: {sanitize_input(m.content)}"
        for m in messages
    )


def _format_points(points: list[RecallPoint], current_point_id: str) -> str:
    if not points:
        return "[No recall points provided]"

    lines = []
    for idx, point in enumerate(points, start=1):
        marker = " (CURRENT)" if point.id == current_point_id else ""
        content = point.content
        if len(content) > _POINT_PREVIEW_CHARS:
            content = content[:_POINT_PREVIEW_CHARS] + "..."
        lines.append(f"{idx}. [ID: {point.id}]{marker}: {sanitize_input(content)}")
    return "\n".join(lines)


def build_detection_prompt(
    recent_messages: list[SessionMessage],
    current_point: RecallPoint,
    all_points: list[RecallPoint],
    existing_topics: list[str],
) -> str:
    """Build the prompt asking whether the conversation has drifted.

    Args:
        recent_messages: Trailing window of the conversation
        current_point: The recall point the conversation should stay on
        all_points: Every point in the session, for cross-referencing
        existing_topics: Topics of tangents that are already open

    Returns:
        The complete prompt text
    """
    existing_section = ""
    if existing_topics:
        numbered = "\n".join(
            f"{idx}. {sanitize_input(topic)}"
            for idx, topic in enumerate(existing_topics, start=1)
        )
        existing_section = f"""## Previously Identified Rabbitholes

The following tangent topics have already been identified in this session:
{numbered}

Do not re-flag these unless the conversation has returned to them after leaving."""

    formatted_messages = _format_messages(recent_messages) or "[No messages provided]"

    return f"""You are an expert conversation analyst specializing in detecting topic drift during educational dialogues.

## Your Task

Analyze the recent conversation and determine if it has drifted into a "rabbithole" - a tangent away from the current recall point being discussed.

## Current Recall Point

The conversation should be focused on helping the learner recall this information:

<current_recall_point>
**Content:** {sanitize_input(current_point.content)}
**Context:** {sanitize_input(current_point.context)}
</current_recall_point>

## Recent Conversation

Analyze these recent messages for topic drift:

<recent_messages>
{formatted_messages}
</recent_messages>

## All Session Recall Points

These are all the recall points in this session. If the tangent relates to any of these, note their IDs:

{_format_points(all_points, current_point.id)}

{existing_section}

## Rabbithole Detection Criteria

**IS a rabbithole if the conversation:**
- Has shifted to discussing a topic not directly related to recalling the current point
- Is exploring interesting but tangential details that don't help recall the core content
- Has the learner asking about related but off-topic information
- Shows multiple exchanges (2+) on a subject other than the recall target

**Is NOT a rabbithole if:**
- The discussion directly supports recalling the current point's content
- The learner is working through the recall process, even if struggling
- The tangent is a brief clarification (single exchange) that helps understanding
- The conversation naturally uses the recall point's context to aid recall

## Depth Classification

- **Depth 1 (Shallow)**: 1-2 message exchanges on tangent; brief detour that's easily recoverable
- **Depth 2 (Moderate)**: 3-5 message exchanges on tangent; extended exploration requiring gentle redirection
- **Depth 3 (Deep)**: 5+ message exchanges on tangent; significant departure from recall topic

## Response Format

Respond with ONLY a valid JSON object in this exact format:

{{
  "isRabbithole": boolean,
  "topic": string | null,
  "depth": 1 | 2 | 3,
  "relatedToCurrentPoint": boolean,
  "relatedRecallPointIds": string[],
  "confidence": number,
  "reasoning": string
}}

Where "confidence" is a number from 0.0 to 1.0 and "reasoning" is a 1-3 sentence explanation.
Return ONLY the JSON object."""


def build_return_prompt(
    topic: str,
    current_point: RecallPoint,
    recent_messages: list[SessionMessage],
) -> str:
    """Build the prompt asking whether an open tangent has concluded."""
    formatted_messages = _format_messages(recent_messages) or "[No messages provided]"

    return f"""You are an expert conversation analyst evaluating whether a conversational tangent has concluded.

## Your Task

Determine if the conversation has returned from a tangent ("rabbithole") back to the main recall topic or transitioned to productive discussion.

## Rabbithole Being Tracked

<rabbithole_topic>
{sanitize_input(topic)}
</rabbithole_topic>

## Target Recall Point

<current_recall_point>
**Content:** {sanitize_input(current_point.content)}
**Context:** {sanitize_input(current_point.context)}
</current_recall_point>

## Recent Conversation

<recent_messages>
{formatted_messages}
</recent_messages>

## Return Detection Criteria

**HAS returned if:**
- The conversation is now discussing the original recall point content
- The tutor has successfully redirected back to the main topic
- The tangent topic is no longer being actively discussed

**Has NOT returned if:**
- The conversation is still exploring the tangent topic
- New sub-tangents have emerged from the original rabbithole
- The learner is still asking about the tangential subject

## Response Format

Respond with ONLY a valid JSON object in this exact format:

{{
  "hasReturned": boolean,
  "confidence": number,
  "reasoning": string
}}

Return ONLY the JSON object."""


def extract_json(text: str) -> dict[str, Any] | None:
    """Extract and parse a JSON object from an LLM response.

    Handles JSON wrapped in markdown code blocks or surrounded by prose.
    Returns None if no JSON object can be extracted.
    """
    if not text:
        return None

    candidate = text.strip()
    code_block_match = _CODE_BLOCK.search(candidate)
    if code_block_match:
        candidate = code_block_match.group(1).strip()

    if not candidate.startswith("{"):
        start = candidate.find("{")
        end = candidate.rfind("}")
        if start != -1 and end > start:
            candidate = candidate[start : end + 1]

    try:
        parsed = json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def normalize_depth(value: Any) -> int:
    """Clamp a depth value onto 1, 2 or 3."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 1
    if value <= 1:
        return 1
    if value >= 3:
        return 3
    return 2


def normalize_confidence(value: Any) -> float:
    """Bring a confidence value into [0, 1].

    Percent-style values (1 < v <= 100) are divided by 100; anything that
    isn't a number counts as moderate confidence.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value != value:
        return 0.5
    if 1 < value <= 100:
        value = value / 100
    return float(min(1.0, max(0.0, value)))


def parse_detection_response(text: str) -> TangentDetectionResult:
    """Parse a detection response, defaulting to "not a rabbithole"."""
    parsed = extract_json(text)
    if parsed is None:
        return TangentDetectionResult(
            reasoning=f"Failed to parse detection response: {(text or '')[:100]}"
        )

    topic = parsed.get("topic")
    related_ids = parsed.get("relatedRecallPointIds")
    reasoning = parsed.get("reasoning")

    return TangentDetectionResult(
        is_rabbithole=parsed.get("isRabbithole") is True,
        topic=topic if isinstance(topic, str) else None,
        depth=normalize_depth(parsed.get("depth")),
        related_to_current_point=parsed.get("relatedToCurrentPoint") is True,
        related_point_ids=(
            [pid for pid in related_ids if isinstance(pid, str)]
            if isinstance(related_ids, list)
            else []
        ),
        confidence=normalize_confidence(parsed.get("confidence")),
        reasoning=reasoning if isinstance(reasoning, str) else "No reasoning provided",
    )


def parse_return_response(text: str) -> TangentReturnResult:
    """Parse a return-detection response, defaulting to "still on the tangent"."""
    parsed = extract_json(text)
    if parsed is None:
        return TangentReturnResult(
            reasoning=f"Failed to parse return detection response: {(text or '')[:100]}"
        )

    reasoning = parsed.get("reasoning")
    return TangentReturnResult(
        has_returned=parsed.get("hasReturned") is True,
        confidence=normalize_confidence(parsed.get("confidence")),
        reasoning=reasoning if isinstance(reasoning, str) else "No reasoning provided",
    )
