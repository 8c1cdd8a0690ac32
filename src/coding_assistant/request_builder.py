"""Map a conversation to an OpenAI chat-completion request."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .errors import MessageBuildError
from .structs import Conversation, Message, Role


# -----------------------------
# Types & defaults
# -----------------------------
ECONOMY_MODEL = "gpt-3.5-turbo-1106"
STANDARD_MODEL = "gpt-4-1106-preview"
COMPLETION_TOKENS = 1024


@dataclass(frozen=True)
class CompletionRequest:
    model: str
    messages: List[Dict[str, str]] = field(default_factory=list)
    max_tokens: int = COMPLETION_TOKENS

    def to_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``client.chat.completions.create``."""
        return {
            "model": self.model,
            "messages": [dict(m) for m in self.messages],
            "max_tokens": self.max_tokens,
            "stream": True,
        }


def select_model(low_cost: bool, *, economy_model: str = ECONOMY_MODEL, standard_model: str = STANDARD_MODEL) -> str:
    return economy_model if low_cost else standard_model


# -----------------------------
# Per-role encoders
# -----------------------------
def _require_text(msg: Message, index: int) -> str:
    if not isinstance(msg.content, str):
        raise MessageBuildError(
            f"Failed to build chat completion {msg.role.value} message #{index}: content is not text",
            role=msg.role.value,
            index=index,
        )
    return msg.content


def _system_message(msg: Message, index: int) -> Dict[str, str]:
    content = _require_text(msg, index)
    if not content.strip():
        raise MessageBuildError(
            f"Failed to build chat completion system message #{index}: empty content",
            role="system",
            index=index,
        )
    return {"role": "system", "content": content}


def _user_message(msg: Message, index: int) -> Dict[str, str]:
    content = _require_text(msg, index)
    if not content.strip():
        raise MessageBuildError(
            f"Failed to build chat completion user message #{index}: empty content",
            role="user",
            index=index,
        )
    return {"role": "user", "content": content}


def _assistant_message(msg: Message, index: int) -> Dict[str, str]:
    # Cancelled turns store an empty assistant reply; the API accepts it.
    return {"role": "assistant", "content": _require_text(msg, index)}


_ENCODERS = {
    Role.SYSTEM: _system_message,
    Role.USER: _user_message,
    Role.ASSISTANT: _assistant_message,
}


def build_request_message(msg: Message, index: int = 0) -> Dict[str, str]:
    return _ENCODERS[msg.role](msg, index)


def build_request(
    conversation: Conversation,
    low_cost: bool,
    *,
    economy_model: str = ECONOMY_MODEL,
    standard_model: str = STANDARD_MODEL,
    max_tokens: int = COMPLETION_TOKENS,
) -> CompletionRequest:
    """Build the streamed completion request for ``conversation``.

    One provider message per history message, in order. Raises
    :class:`MessageBuildError` naming the first message that cannot be encoded.
    The conversation is not modified.
    """
    messages = [build_request_message(m, i) for i, m in enumerate(conversation.history)]
    return CompletionRequest(
        model=select_model(low_cost, economy_model=economy_model, standard_model=standard_model),
        messages=messages,
        max_tokens=max_tokens,
    )
