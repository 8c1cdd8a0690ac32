"""Conversation record types: roles, messages and the bounded history."""
from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def _missing_(cls, value: object) -> Optional["Role"]:
        # Stored files may carry "User" / "ASSISTANT"; match on the lowercase name.
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None


class Message(BaseModel):
    """One role-tagged entry of a conversation. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str

    @field_validator("role", mode="before")
    @classmethod
    def _parse_role(cls, v: Any) -> Any:
        if isinstance(v, str):
            try:
                return Role(v)
            except ValueError:
                raise ValueError(f"Unable to deserialize string {v!r} to Role") from None
        return v


class Conversation(BaseModel):
    """Ordered message log for one chat session.

    Invariants kept by :meth:`ensure_system_first` and :meth:`truncate`:
    a non-empty history starts with a SYSTEM message, and after truncation
    it holds at most ``max_length`` messages.
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    history: List[Message] = Field(default_factory=list)

    @classmethod
    def new(cls, system_prompt: str) -> "Conversation":
        return cls(history=[Message(role=Role.SYSTEM, content=system_prompt)])

    def __len__(self) -> int:
        return len(self.history)

    def append(self, role: Role, content: str) -> Message:
        msg = Message(role=role, content=content)
        self.history.append(msg)
        return msg

    def ensure_system_first(self, system_prompt: str) -> bool:
        """Prepend a SYSTEM message if the first one is missing. Returns True if it did."""
        if self.history and self.history[0].role is Role.SYSTEM:
            return False
        self.history.insert(0, Message(role=Role.SYSTEM, content=system_prompt))
        return True

    def truncate(self, max_length: int, system_prompt: str) -> "Conversation":
        """Drop the oldest messages so at most ``max_length`` remain.

        The leading SYSTEM message always survives: the most recent
        ``max_length - 1`` messages are kept behind it. If the history had no
        leading SYSTEM message, one built from ``system_prompt`` is inserted.
        Mutates in place and returns ``self``.
        """
        if max_length < 1:
            raise ValueError("max_length must be >= 1")

        self.ensure_system_first(system_prompt)
        if len(self.history) > max_length:
            keep = max_length - 1
            tail = self.history[len(self.history) - keep:] if keep else []
            self.history = [self.history[0]] + tail
        return self

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    @classmethod
    def from_json(cls, raw: str) -> "Conversation":
        return cls.model_validate_json(raw)
