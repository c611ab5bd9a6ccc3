from __future__ import annotations

from loguru import logger

from variant_chat.api_client import MAX_PAGE_SIZE, ChatApiClient
from variant_chat.conversation_state import ConversationState
from variant_chat.errors import PersistenceError, PolicyViolation
from variant_chat.models import Message, SessionPage
from variant_chat.reconciliation import Reconciler


class SessionController:
    """Edits to an open conversation. Every mutation is applied locally first and
    then reconciled against the server copy."""

    def __init__(
        self,
        state: ConversationState,
        api: ChatApiClient,
        reconciler: Reconciler,
        *,
        page_size: int = 50,
    ):
        self._state = state
        self._api = api
        self._reconciler = reconciler
        self._page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

    async def fetch_current(self) -> SessionPage:
        # Refreshes must not drop pages that were loaded with load_older().
        limit = min(max(self._page_size, len(self._state.messages)), MAX_PAGE_SIZE)
        return await self._api.get_session(self._state.session_id, limit=limit)

    async def load(self, limit: int | None = None) -> SessionPage:
        page = await self._api.get_session(self._state.session_id, limit=limit or self._page_size)
        self._reconciler.apply_session(page)
        await self._reconciler.load_latest_variants()
        logger.info(
            f"Loaded session {self._state.session_id}: {len(page.messages)} messages, has_more={page.has_more}"
        )
        return page

    async def load_older(self) -> list[Message]:
        session = self._state.session
        cursor = session.oldest_id()
        if not session.has_more or cursor is None:
            return []
        page = await self._api.get_session(session.id, limit=self._page_size, before_id=cursor)
        known = {m.id for m in session.messages}
        older = [m for m in page.messages if m.id not in known]
        session.messages = sorted([*older, *session.messages], key=lambda m: m.ordinal)
        session.has_more = page.has_more
        logger.debug(f"Loaded {len(older)} older messages before {cursor}")
        return older

    async def refresh(self) -> bool:
        return await self._reconciler.refresh(self.fetch_current)

    async def edit_message(self, message_id: int, content: str) -> Message:
        text = content.strip()
        if not text:
            raise PolicyViolation("Message content cannot be empty")
        message = self._state.message(message_id)
        if message is None:
            raise PolicyViolation(f"Unknown message {message_id}")
        edited = message.with_content(text)

        def apply() -> None:
            self._state.replace_message(edited)
            if self._state.variants.get(message_id):
                self._reconciler.mark_edited_original(message_id)

        try:
            await self._reconciler.apply_optimistic(apply, lambda: self._api.update_message(message_id, text))
        except PersistenceError:
            self._state.edited_originals.discard(message_id)
            raise
        await self.refresh()
        return edited

    async def delete_message(self, message_id: int) -> None:
        if self._state.message(message_id) is None:
            raise PolicyViolation(f"Unknown message {message_id}")

        def apply() -> None:
            session = self._state.session
            session.messages = [m for m in session.messages if m.id != message_id]
            self._state.forget_variants(message_id)

        await self._reconciler.apply_optimistic(apply, lambda: self._api.delete_message(message_id))
        logger.info(f"Deleted message {message_id}")
        await self.refresh()

    async def update_summary(self, summary: str) -> None:
        def apply() -> None:
            self._state.session.summary = summary

        await self._reconciler.apply_optimistic(
            apply, lambda: self._api.update_summary(self._state.session_id, summary)
        )
        await self.refresh()

    async def update_notes(self, notes: str) -> None:
        def apply() -> None:
            self._state.session.notes = notes

        await self._reconciler.apply_optimistic(apply, lambda: self._api.update_notes(self._state.session_id, notes))
        await self.refresh()
