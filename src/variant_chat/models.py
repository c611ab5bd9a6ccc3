from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class MessageVariant:
    id: int
    parent_message_id: int
    content: str
    version: int
    is_active: bool = False
    is_placeholder: bool = False

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> MessageVariant:
        return cls(
            id=int(data["id"]),
            parent_message_id=int(data.get("messageId", data.get("parentMessageId", 0))),
            content=str(data.get("content") or ""),
            version=int(data.get("version", 0)),
            is_active=bool(data.get("isActive", False)),
        )

    def with_content(self, content: str) -> MessageVariant:
        return replace(self, content=content)


@dataclass(frozen=True)
class Message:
    id: int
    role: str
    content: str
    ordinal: int
    variants: tuple[MessageVariant, ...] = ()

    @classmethod
    def from_api(cls, data: dict[str, Any], *, ordinal: int | None = None) -> Message:
        message_id = int(data["id"])
        versions = data.get("versions") or []
        return cls(
            id=message_id,
            role=str(data["role"]),
            content=str(data.get("content") or ""),
            ordinal=int(data.get("ordinal", ordinal if ordinal is not None else message_id)),
            variants=tuple(MessageVariant.from_api({"messageId": message_id, **v}) for v in versions),
        )

    def with_content(self, content: str) -> Message:
        return replace(self, content=content)

    def for_request(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ConversationSession:
    id: int
    messages: list[Message] = field(default_factory=list)
    summary: str | None = None
    notes: str | None = None
    has_more: bool = False

    def latest_assistant(self) -> Message | None:
        for message in reversed(self.messages):
            if message.role == "assistant":
                return message
        return None

    def oldest_id(self) -> int | None:
        if not self.messages:
            return None
        return min(m.id for m in self.messages)


@dataclass(frozen=True)
class SessionPage:
    messages: list[Message]
    has_more: bool
    summary: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class SelectionRecord:
    index: int
    count: int


class StreamStatus(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    DONE = "done"
    ABORTED = "aborted"
    ERRORED = "errored"


class VariantState(str, Enum):
    NONE = "none"
    PLACEHOLDER = "placeholder"
    STREAMING = "streaming"
    COMMITTED = "committed"
    DISCARDED = "discarded"

    @property
    def in_flight(self) -> bool:
        return self in (VariantState.PLACEHOLDER, VariantState.STREAMING)
