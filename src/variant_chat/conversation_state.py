from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from loguru import logger

from variant_chat.errors import PersistenceError
from variant_chat.models import ConversationSession, Message, MessageVariant, VariantState

T = TypeVar("T")


@dataclass(frozen=True)
class StateSnapshot:
    messages: tuple[Message, ...]
    summary: str | None
    notes: str | None
    variants: dict[int, tuple[MessageVariant, ...]]
    selection: dict[int, int]
    display: dict[int, str]


@dataclass
class ConversationState:
    """Local view of one open conversation. Created on session load, dropped on navigation away."""

    session: ConversationSession
    variants: dict[int, list[MessageVariant]] = field(default_factory=dict)
    selection: dict[int, int] = field(default_factory=dict)
    display: dict[int, str] = field(default_factory=dict)
    variant_states: dict[int, VariantState] = field(default_factory=dict)
    edited_originals: set[int] = field(default_factory=set)
    primary_streaming: bool = False

    @property
    def session_id(self) -> int:
        return self.session.id

    @property
    def messages(self) -> list[Message]:
        return self.session.messages

    def message(self, message_id: int) -> Message | None:
        for message in self.session.messages:
            if message.id == message_id:
                return message
        return None

    def replace_message(self, message: Message) -> None:
        self.session.messages = [message if m.id == message.id else m for m in self.session.messages]

    def latest_assistant_id(self) -> int | None:
        latest = self.session.latest_assistant()
        return latest.id if latest is not None else None

    def variants_for(self, message_id: int) -> list[MessageVariant]:
        return self.variants.get(message_id, [])

    def variant_count(self, message_id: int) -> int:
        return len(self.variants.get(message_id, []))

    def state_of(self, message_id: int) -> VariantState:
        return self.variant_states.get(message_id, VariantState.NONE)

    def displayed_content(self, message_id: int) -> str:
        if message_id in self.display:
            return self.display[message_id]
        message = self.message(message_id)
        return message.content if message is not None else ""

    @property
    def generating(self) -> bool:
        return any(state.in_flight for state in self.variant_states.values())

    @property
    def busy(self) -> bool:
        return self.primary_streaming or self.generating

    def forget_variants(self, message_id: int) -> None:
        self.variants.pop(message_id, None)
        self.selection.pop(message_id, None)
        self.display.pop(message_id, None)

    def undo_snapshot(self) -> StateSnapshot:
        return StateSnapshot(
            messages=tuple(self.session.messages),
            summary=self.session.summary,
            notes=self.session.notes,
            variants={k: tuple(v) for k, v in self.variants.items()},
            selection=dict(self.selection),
            display=dict(self.display),
        )

    def restore(self, snapshot: StateSnapshot) -> None:
        self.session.messages = list(snapshot.messages)
        self.session.summary = snapshot.summary
        self.session.notes = snapshot.notes
        self.variants = {k: list(v) for k, v in snapshot.variants.items()}
        self.selection = dict(snapshot.selection)
        self.display = dict(snapshot.display)

    async def apply_optimistic(self, apply: Callable[[], None], request: Callable[[], Awaitable[T]]) -> T:
        """Apply ``apply`` locally, then confirm with ``request``; a PersistenceError restores the prior state."""
        snapshot = self.undo_snapshot()
        apply()
        try:
            return await request()
        except PersistenceError as ex:
            logger.warning(f"Rolling back local change: {ex}")
            self.restore(snapshot)
            raise
