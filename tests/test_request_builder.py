from __future__ import annotations

import pytest

from coding_assistant.errors import MessageBuildError
from coding_assistant.request_builder import (
    COMPLETION_TOKENS,
    ECONOMY_MODEL,
    STANDARD_MODEL,
    build_request,
    select_model,
)
from coding_assistant.structs import Conversation, Message, Role


def _conversation() -> Conversation:
    conv = Conversation.new("sys")
    conv.append(Role.USER, "q1")
    conv.append(Role.ASSISTANT, "a1")
    conv.append(Role.USER, "q2")
    return conv


def test_messages_preserve_order_and_roles():
    req = build_request(_conversation(), low_cost=False)
    assert req.messages == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "q1"},
        {"role": "assistant", "content": "a1"},
        {"role": "user", "content": "q2"},
    ]
    assert req.max_tokens == COMPLETION_TOKENS


def test_model_selection_by_cost_tier():
    assert select_model(True) == ECONOMY_MODEL
    assert select_model(False) == STANDARD_MODEL
    assert build_request(_conversation(), True).model == ECONOMY_MODEL
    assert build_request(_conversation(), False, standard_model="custom").model == "custom"


def test_to_kwargs_requests_a_stream():
    kwargs = build_request(_conversation(), True, max_tokens=64).to_kwargs()
    assert kwargs["stream"] is True
    assert kwargs["max_tokens"] == 64
    assert kwargs["model"] == ECONOMY_MODEL
    assert len(kwargs["messages"]) == 4


def test_build_does_not_mutate_conversation():
    conv = _conversation()
    before = conv.model_dump()
    build_request(conv, False)
    assert conv.model_dump() == before


def test_empty_assistant_message_is_allowed():
    conv = _conversation()
    conv.append(Role.ASSISTANT, "")
    req = build_request(conv, False)
    assert req.messages[-1] == {"role": "assistant", "content": ""}


def test_empty_user_message_reports_role_and_index():
    conv = _conversation()
    conv.append(Role.USER, "   ")
    with pytest.raises(MessageBuildError) as exc:
        build_request(conv, False)
    assert exc.value.role == "user"
    assert exc.value.index == 4
    assert "user message" in str(exc.value)


def test_empty_system_message_fails():
    conv = Conversation(history=[Message(role=Role.SYSTEM, content="")])
    with pytest.raises(MessageBuildError) as exc:
        build_request(conv, True)
    assert exc.value.role == "system"
