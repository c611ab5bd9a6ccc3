from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from loguru import logger

from variant_chat.conversation_state import ConversationState
from variant_chat.events import EventSink, NullEventEmitter, SessionRefreshed
from variant_chat.errors import ChatRuntimeError
from variant_chat.models import MessageVariant, SelectionRecord, SessionPage
from variant_chat.persistence import SelectionStore
from variant_chat.variant_manager import VariantManager

T = TypeVar("T")

SessionFetch = Callable[[], Awaitable[SessionPage]]


@dataclass(frozen=True)
class ReconcileSnapshot:
    variants: dict[int, tuple[MessageVariant, ...]]
    selection: dict[int, int]
    display: dict[int, str]
    records: dict[int, SelectionRecord | None]


class Reconciler:
    """Merges freshly fetched session data with local variant selections.

    A refresh replaces the message list wholesale. Variant selections the user made
    locally survive it unless the original message was just edited or the durable
    record says the original is selected.
    """

    def __init__(
        self,
        state: ConversationState,
        selections: SelectionStore,
        variants: VariantManager,
        *,
        events: EventSink | None = None,
    ):
        self._state = state
        self._selections = selections
        self._variants = variants
        self._events = events or NullEventEmitter()
        self._pending: asyncio.Task | None = None

    def snapshot(self) -> ReconcileSnapshot:
        return ReconcileSnapshot(
            variants={k: tuple(v) for k, v in self._state.variants.items()},
            selection=dict(self._state.selection),
            display=dict(self._state.display),
            records={k: self._selections.get(self._state.session_id, k) for k in self._state.selection},
        )

    def mark_edited_original(self, message_id: int) -> None:
        self._state.edited_originals.add(message_id)

    def apply_session(self, page: SessionPage) -> None:
        session = self._state.session
        session.messages = list(page.messages)
        session.summary = page.summary
        session.notes = page.notes
        session.has_more = page.has_more

        latest = session.latest_assistant()
        latest_id = latest.id if latest is not None else None
        self._prune_except(latest_id)

        if latest is not None and latest.variants:
            self._variants.resolve_selection(latest.id, latest.variants)

    def _prune_except(self, latest_id: int | None) -> None:
        tracked = set(self._state.variants) | set(self._state.selection) | set(self._state.display)
        tracked |= set(self._state.variant_states)
        for message_id in tracked:
            if message_id == latest_id:
                continue
            self._variants.abort(message_id)
            self._state.forget_variants(message_id)
            self._state.variant_states.pop(message_id, None)
            self._selections.clear(self._state.session_id, message_id)
            logger.debug(f"Pruned variant state of non-latest message {message_id}")

    async def load_latest_variants(self) -> int | None:
        """Fetch variants of the latest assistant message when the session did not embed them."""
        latest_id = self._state.latest_assistant_id()
        if latest_id is None or self._state.variants.get(latest_id):
            return None
        return await self._variants.load_variants(latest_id)

    def restore(self, snapshot: ReconcileSnapshot) -> None:
        edited = set(self._state.edited_originals)
        session_id = self._state.session_id
        for message_id, preserved_index in snapshot.selection.items():
            if message_id not in snapshot.variants or message_id in edited:
                continue
            fresh = self._state.variants.get(message_id)
            if not fresh:
                continue
            if self._state.state_of(message_id).in_flight:
                continue
            # The record as it was before the refresh; apply_session has rewritten it since.
            record = snapshot.records.get(message_id)
            if record is not None and record.index == 0:
                continue
            index = min(max(preserved_index, 0), len(fresh))
            self._state.selection[message_id] = index
            if index == 0:
                self._state.display.pop(message_id, None)
            elif index == preserved_index and message_id in snapshot.display:
                self._state.display[message_id] = snapshot.display[message_id]
            else:
                self._state.display[message_id] = fresh[index - 1].content
            self._selections.set(session_id, message_id, index, len(fresh))
        self._state.edited_originals.clear()

    async def refresh(self, fetch: SessionFetch, *, suppress_when_busy: bool = False) -> bool:
        snapshot = self.snapshot()
        page = await fetch()
        if suppress_when_busy and self._state.busy:
            logger.debug("Refresh result dropped: a stream is in progress")
            self._events.emit(SessionRefreshed(session_id=self._state.session_id, message_count=0, suppressed=True))
            return False
        self.apply_session(page)
        self.restore(snapshot)
        logger.debug(f"Session {self._state.session_id} refreshed: {len(page.messages)} messages")
        self._events.emit(SessionRefreshed(session_id=self._state.session_id, message_count=len(page.messages)))
        return True

    def schedule_refresh(self, fetch: SessionFetch, delay: float) -> asyncio.Task:
        self.cancel_pending()

        async def run() -> bool:
            await asyncio.sleep(delay)
            if self._state.busy:
                logger.debug("Scheduled refresh suppressed: a stream is in progress")
                self._events.emit(
                    SessionRefreshed(session_id=self._state.session_id, message_count=0, suppressed=True)
                )
                return False
            try:
                return await self.refresh(fetch, suppress_when_busy=True)
            except ChatRuntimeError as ex:
                logger.warning(f"Background refresh of session {self._state.session_id} failed: {ex}")
                return False

        self._pending = asyncio.create_task(run())
        return self._pending

    @property
    def pending_refresh(self) -> asyncio.Task | None:
        return self._pending

    def cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    async def apply_optimistic(self, apply: Callable[[], None], request: Callable[[], Awaitable[T]]) -> T:
        return await self._state.apply_optimistic(apply, request)
