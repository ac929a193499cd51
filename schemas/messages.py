"""Conversation message schema."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Message(BaseModel):
    """One turn of a conversation. Conversations are append-only lists of these."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    role: Role
    content: str

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> Message:
        return cls(role=Role.ASSISTANT, content=content)

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=Role.SYSTEM, content=content)

    def to_api(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}
