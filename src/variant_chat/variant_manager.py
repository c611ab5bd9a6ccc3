from __future__ import annotations

import itertools
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from loguru import logger

from variant_chat.api_client import ChatApiClient
from variant_chat.conversation_state import ConversationState
from variant_chat.errors import PersistenceError, PolicyViolation, TransportError, UpstreamError
from variant_chat.events import DisplayChanged, ErrorRaised, EventSink, NullEventEmitter, VariantStateChanged
from variant_chat.models import Message, MessageVariant, VariantState
from variant_chat.persistence import SelectionStore
from variant_chat.stream import StreamOutcome, StreamSession


class Direction(str, Enum):
    PREV = "prev"
    NEXT = "next"


@dataclass(frozen=True)
class GenerationResult:
    message_id: int
    state: VariantState
    content: str
    variant: MessageVariant | None = None
    partial_error: str | None = None


class VariantManager:
    """Alternate responses for the latest assistant message.

    Selection index 0 is the original message content; index k > 0 is the k-th
    variant. Every selection change is written to the selection store together with
    the variant count at that moment so a later reload can tell whether it is stale.
    """

    def __init__(
        self,
        state: ConversationState,
        api: ChatApiClient,
        selections: SelectionStore,
        *,
        events: EventSink | None = None,
        stream: bool = True,
    ):
        self._state = state
        self._api = api
        self._selections = selections
        self._events = events or NullEventEmitter()
        self._stream = stream
        self._sessions: dict[int, StreamSession] = {}
        self._placeholder_ids = itertools.count(-1, -1)

    def state_of(self, message_id: int) -> VariantState:
        return self._state.state_of(message_id)

    def index_of(self, message_id: int) -> int:
        return self._state.selection.get(message_id, 0)

    def is_generating(self, message_id: int) -> bool:
        return self.state_of(message_id).in_flight

    # --- generation ---------------------------------------------------------------------

    async def generate(self, message_id: int, *, temperature: float | None = None) -> GenerationResult | None:
        # Everything up to the first await runs atomically; this is the single-flight guard.
        if self.is_generating(message_id):
            logger.debug(f"Variant generation already in flight for message {message_id}")
            return None

        previous = list(self._state.variants_for(message_id))
        placeholder = MessageVariant(
            id=next(self._placeholder_ids),
            parent_message_id=message_id,
            content="",
            version=len(previous) + 1,
            is_placeholder=True,
        )
        self._state.variants[message_id] = [*previous, placeholder]
        self._select(message_id, len(previous) + 1)
        self._set_state(message_id, VariantState.PLACEHOLDER)

        session = StreamSession(channel=f"variant:{message_id}")
        self._sessions[message_id] = session
        body: dict[str, object] = {"stream": self._stream}
        if temperature is not None:
            body["temperature"] = temperature

        def on_open(_response) -> None:
            self._set_state(message_id, VariantState.STREAMING)

        def on_delta(accumulated: str, _delta: str) -> None:
            self._show(message_id, accumulated)

        logger.info(f"Generating variant {placeholder.version} for message {message_id}")
        try:
            outcome = await self._api.stream_variant(message_id, body, session, on_delta=on_delta, on_open=on_open)
        except UpstreamError as ex:
            self._discard_placeholder(message_id, placeholder)
            self._events.emit(ErrorRaised(source="variant", message=ex.body))
            raise
        except TransportError as ex:
            logger.warning(f"Variant generation for message {message_id} lost its connection: {ex}")
            self._discard_placeholder(message_id, placeholder)
            return GenerationResult(message_id, VariantState.DISCARDED, self._state.displayed_content(message_id))
        finally:
            self._sessions.pop(message_id, None)

        if outcome.aborted:
            logger.info(f"Variant generation for message {message_id} aborted")
            self._discard_placeholder(message_id, placeholder)
            return GenerationResult(message_id, VariantState.DISCARDED, self._state.displayed_content(message_id))

        saved = await self._saved_variant(message_id, previous, outcome)
        if saved is None:
            self._discard_placeholder(message_id, placeholder)
            return GenerationResult(
                message_id,
                VariantState.DISCARDED,
                self._state.displayed_content(message_id),
                partial_error=outcome.partial_error,
            )

        self._replace_placeholder(message_id, placeholder, saved, streamed=outcome.was_streaming)
        self._set_state(message_id, VariantState.COMMITTED)
        return GenerationResult(
            message_id,
            VariantState.COMMITTED,
            self._state.displayed_content(message_id),
            variant=saved,
            partial_error=outcome.partial_error,
        )

    def abort(self, message_id: int) -> bool:
        session = self._sessions.get(message_id)
        if session is None:
            return False
        session.abort()
        return True

    async def _saved_variant(
        self,
        message_id: int,
        previous: Sequence[MessageVariant],
        outcome: StreamOutcome,
    ) -> MessageVariant | None:
        if not outcome.was_streaming:
            data = outcome.data
            if isinstance(data, dict) and "id" in data:
                return MessageVariant.from_api({"messageId": message_id, **data})
            logger.warning(f"Variant response for message {message_id} carried no variant record")
            return None

        try:
            latest = await self._api.latest_variant(message_id)
        except (PersistenceError, TransportError) as ex:
            logger.warning(f"Could not confirm variant for message {message_id}: {ex}")
            return None
        known_ids = {v.id for v in previous}
        if latest is None or latest.id in known_ids:
            return None
        return latest

    def _replace_placeholder(
        self,
        message_id: int,
        placeholder: MessageVariant,
        saved: MessageVariant,
        *,
        streamed: bool,
    ) -> None:
        variants = self._state.variants_for(message_id)
        self._state.variants[message_id] = [saved if v.id == placeholder.id else v for v in variants]
        if not streamed:
            self._show(message_id, saved.content)

    def _discard_placeholder(self, message_id: int, placeholder: MessageVariant) -> None:
        remaining = [v for v in self._state.variants_for(message_id) if v.id != placeholder.id]
        self._state.variants[message_id] = remaining
        self._select(message_id, len(remaining))
        self._set_state(message_id, VariantState.DISCARDED)

    # --- selection ----------------------------------------------------------------------

    def navigate(self, message_id: int, direction: Direction | str) -> int:
        current = self.index_of(message_id)
        if self.is_generating(message_id):
            return current
        total = self._state.variant_count(message_id) + 1
        if total <= 1:
            return current
        step = 1 if Direction(direction) == Direction.NEXT else -1
        index = (current + step) % total
        self._select(message_id, index)
        return index

    def resolve_selection(self, message_id: int, live_variants: Sequence[MessageVariant]) -> int:
        if self.is_generating(message_id):
            return self.index_of(message_id)
        live = sorted(live_variants, key=lambda v: v.version)
        live_count = len(live)
        if live_count == 0:
            self._state.forget_variants(message_id)
            return 0
        self._state.variants[message_id] = live
        record = self._selections.get(self._state.session_id, message_id)
        if record is None or record.count != live_count:
            index = live_count
        else:
            index = min(max(record.index, 0), live_count)
        self._select(message_id, index)
        return index

    async def load_variants(self, message_id: int) -> int:
        live = await self._api.list_variants(message_id)
        return self.resolve_selection(message_id, live)

    # --- commit / discard ---------------------------------------------------------------

    async def commit(self, message_id: int) -> Message | None:
        index = self.index_of(message_id)
        if index == 0 or self.is_generating(message_id):
            return None
        variants = self._state.variants_for(message_id)
        message = self._state.message(message_id)
        if message is None or index > len(variants):
            return None
        variant = variants[index - 1]
        committed = message.with_content(variant.content)

        await self._state.apply_optimistic(
            lambda: self._state.replace_message(committed),
            lambda: self._api.select_variant(message_id, variant.id),
        )
        logger.info(f"Committed variant {variant.version} as content of message {message_id}")
        await self.discard_all(message_id)
        return committed

    async def discard_all(self, message_id: int) -> None:
        self.abort(message_id)

        def forget() -> None:
            self._state.forget_variants(message_id)
            self._state.variant_states.pop(message_id, None)

        deleted = await self._state.apply_optimistic(forget, lambda: self._api.delete_variants(message_id))
        self._selections.clear(self._state.session_id, message_id)
        logger.debug(f"Discarded {deleted} variants for message {message_id}")
        self._events.emit(DisplayChanged(message_id=message_id, index=0, content=None))

    async def edit_variant(self, message_id: int, variant_id: int, content: str) -> MessageVariant:
        text = content.strip()
        if not text:
            raise PolicyViolation("Variant content cannot be empty")
        variants = self._state.variants_for(message_id)
        target = next((v for v in variants if v.id == variant_id), None)
        if target is None or target.is_placeholder:
            raise PolicyViolation(f"Unknown variant {variant_id} for message {message_id}")
        position = variants.index(target) + 1

        def apply() -> None:
            self._state.variants[message_id] = [v.with_content(text) if v.id == variant_id else v for v in variants]
            if self.index_of(message_id) == position:
                self._state.display[message_id] = text

        confirmed = await self._state.apply_optimistic(
            apply, lambda: self._api.edit_variant(message_id, variant_id, text)
        )
        self._state.variants[message_id] = [
            confirmed if v.id == variant_id else v for v in self._state.variants_for(message_id)
        ]
        return confirmed

    # --- internals ----------------------------------------------------------------------

    def _select(self, message_id: int, index: int) -> None:
        variants = self._state.variants_for(message_id)
        index = min(max(index, 0), len(variants))
        self._state.selection[message_id] = index
        if index == 0:
            self._state.display.pop(message_id, None)
        else:
            self._state.display[message_id] = variants[index - 1].content
        self._selections.set(self._state.session_id, message_id, index, len(variants))
        self._events.emit(
            DisplayChanged(message_id=message_id, index=index, content=self._state.display.get(message_id))
        )

    def _show(self, message_id: int, content: str) -> None:
        self._state.display[message_id] = content
        self._events.emit(
            DisplayChanged(message_id=message_id, index=self.index_of(message_id), content=content)
        )

    def _set_state(self, message_id: int, state: VariantState) -> None:
        self._state.variant_states[message_id] = state
        self._events.emit(VariantStateChanged(message_id=message_id, state=state))
