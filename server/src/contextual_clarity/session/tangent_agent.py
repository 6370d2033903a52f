"""Exploratory conversation partner for tangents the learner chose to follow."""

import logging

from contextual_clarity.tools.base import CompletionClient

logger = logging.getLogger(__name__)

OPENING_MAX_TOKENS = 256
REPLY_MAX_TOKENS = 512
TEMPERATURE = 0.7


def build_explorer_system_prompt(topic: str, recall_set_name: str, recall_set_description: str) -> str:
    return f"""The user is exploring a tangent about "{topic}" that came up during a recall session on "{recall_set_name}".

{recall_set_description}

You are a curious conversation partner helping the user explore this topic deeply. You are NOT a Socratic tutor, so do not ask probing questions to test recall. Be genuinely exploratory: share what's interesting, make connections, go deep when asked.

Guidelines:
- Be conversational and information-dense. No bullet lists, flowing prose only.
- Follow the user's curiosity wherever it leads within this topic area.
- Keep responses concise but substantive. Aim for 2-4 sentences per response unless they ask for more.
- Connect ideas to the broader context of {recall_set_name} when relevant and natural.
- Do not redirect the user back to their recall session. The system handles that."""


class TangentExplorer:
    """Holds its own conversation history, separate from the recall session."""

    def __init__(
        self,
        llm_client: CompletionClient,
        topic: str,
        recall_set_name: str,
        recall_set_description: str = "",
    ) -> None:
        self.llm_client = llm_client
        self.topic = topic
        self.system_prompt = build_explorer_system_prompt(
            topic, recall_set_name, recall_set_description
        )
        self._messages: list[dict[str, str]] = []

    async def generate_opening_message(self) -> str:
        """Open the tangent conversation.

        Raises:
            LLMError: If the completion request fails
        """
        opening_prompt = (
            f'I\'m curious about "{self.topic}". '
            "Tell me what you'd like to explore and I'll follow your lead."
        )
        response = await self.llm_client.complete(
            opening_prompt,
            system=self.system_prompt,
            temperature=TEMPERATURE,
            max_tokens=OPENING_MAX_TOKENS,
        )
        self._messages.append({"role": "user", "content": opening_prompt})
        self._messages.append({"role": "assistant", "content": response.text})
        return response.text

    async def generate_response(self, user_message: str) -> str:
        """Reply to the learner within the tangent.

        The user turn is only kept in history if the reply succeeds.

        Raises:
            LLMError: If the completion request fails
        """
        history = [*self._messages, {"role": "user", "content": user_message}]
        response = await self.llm_client.complete(
            history,
            system=self.system_prompt,
            temperature=TEMPERATURE,
            max_tokens=REPLY_MAX_TOKENS,
        )
        self._messages = [*history, {"role": "assistant", "content": response.text}]
        logger.debug(f"Tangent '{self.topic[:50]}' now has {len(self._messages)} messages")
        return response.text

    def get_conversation_history(self) -> list[dict[str, str]]:
        return [dict(m) for m in self._messages]
