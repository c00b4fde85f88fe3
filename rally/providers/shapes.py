"""The two response shapes spoken by the supported backends.

``message``: OpenAI chat-completions (``choices[0].message`` or, streamed,
``choices[0].delta``). ``flat``: a single top-level ``response`` field with
a ``done`` flag, as served by local inference backends.
"""

from collections.abc import Sequence
from typing import Any

from config.config_loader import ModelConfig
from rally.models import ConversationTurn


def context_messages(prompt: str, context: Sequence[ConversationTurn]) -> list[dict[str, str]]:
    """Prior turns as alternating user/assistant messages, then the new prompt."""
    messages: list[dict[str, str]] = []
    for turn in context:
        messages.append({"role": "user", "content": turn.user_prompt})
        if turn.selected_response is not None and turn.selected_response.response_text:
            messages.append({"role": "assistant", "content": turn.selected_response.response_text})
    messages.append({"role": "user", "content": prompt})
    return messages


def context_transcript(prompt: str, context: Sequence[ConversationTurn]) -> str:
    """Prior turns flattened into a plain-text transcript ending with the new prompt."""
    if not context:
        return prompt
    lines: list[str] = []
    for turn in context:
        lines.append(f"User: {turn.user_prompt}")
        if turn.selected_response is not None and turn.selected_response.response_text:
            lines.append(f"Assistant: {turn.selected_response.response_text}")
    lines.append(f"User: {prompt}")
    lines.append("Assistant:")
    return "\n\n".join(lines)


class MessageShape:
    name = "message"

    def body(self, config: ModelConfig, prompt: str, context: Sequence[ConversationTurn]) -> dict[str, Any]:
        return {
            "model": config.model,
            "messages": context_messages(prompt, context),
            "stream": config.stream,
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
        }

    def extract_delta(self, payload: dict) -> tuple[str | None, bool]:
        choices = payload.get("choices") or []
        if not choices:
            return None, False
        choice = choices[0]
        delta = choice.get("delta") or choice.get("message") or {}
        return delta.get("content"), choice.get("finish_reason") is not None

    def extract_text(self, payload: dict) -> str | None:
        choices = payload.get("choices") or []
        if not choices:
            return None
        message = choices[0].get("message") or {}
        return message.get("content")


class FlatShape:
    name = "flat"

    def body(self, config: ModelConfig, prompt: str, context: Sequence[ConversationTurn]) -> dict[str, Any]:
        return {
            "model": config.model,
            "prompt": context_transcript(prompt, context),
            "stream": config.stream,
            "options": {"temperature": config.temperature, "num_predict": config.max_tokens},
        }

    def extract_delta(self, payload: dict) -> tuple[str | None, bool]:
        return payload.get("response"), bool(payload.get("done"))

    def extract_text(self, payload: dict) -> str | None:
        return payload.get("response")


SHAPES: dict[str, MessageShape | FlatShape] = {
    MessageShape.name: MessageShape(),
    FlatShape.name: FlatShape(),
}
