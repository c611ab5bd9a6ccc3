import asyncio
import unittest

from tests.backend import SESSION_ID, Conversation, FakeChatBackend
from variant_chat.errors import PersistenceError
from variant_chat.events import SessionRefreshed
from variant_chat.models import Message, MessageVariant, SelectionRecord, SessionPage, VariantState
from variant_chat.variant_manager import Direction


def _variant(variant_id: int, message_id: int, content: str, version: int) -> MessageVariant:
    return MessageVariant(id=variant_id, parent_message_id=message_id, content=content, version=version)


class ReconcilerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.conv = Conversation(FakeChatBackend([("user", "hi"), ("assistant", "Original")]))
        self.conv.seed()
        self.variants = [_variant(100, 2, "a", 1), _variant(101, 2, "b", 2), _variant(102, 2, "c", 3)]

    def tearDown(self) -> None:
        asyncio.run(self.conv.aclose())


class ApplySessionTests(ReconcilerTestCase):
    def test_prunes_variants_of_messages_that_are_no_longer_latest(self) -> None:
        self.conv.variants.resolve_selection(2, self.variants)
        page = SessionPage(
            messages=[
                Message(id=1, role="user", content="hi", ordinal=1),
                Message(id=2, role="assistant", content="Original", ordinal=2),
                Message(id=3, role="user", content="more", ordinal=3),
                Message(id=4, role="assistant", content="reply", ordinal=4),
            ],
            has_more=False,
        )

        self.conv.reconciler.apply_session(page)

        self.assertEqual(0, self.conv.state.variant_count(2))
        self.assertNotIn(2, self.conv.state.selection)
        self.assertNotIn(2, self.conv.state.display)
        self.assertIsNone(self.conv.selections.get(SESSION_ID, 2))

    def test_embedded_versions_of_latest_assistant_are_resolved(self) -> None:
        page = SessionPage(
            messages=[
                Message(id=1, role="user", content="hi", ordinal=1),
                Message(id=2, role="assistant", content="Original", ordinal=2, variants=tuple(self.variants[:2])),
            ],
            has_more=False,
            summary="sum",
        )

        self.conv.reconciler.apply_session(page)

        self.assertEqual(2, self.conv.variants.index_of(2))
        self.assertEqual("b", self.conv.state.displayed_content(2))
        self.assertEqual("sum", self.conv.state.session.summary)


class RestoreTests(ReconcilerTestCase):
    def _select_first(self) -> None:
        self.conv.variants.resolve_selection(2, self.variants)
        self.conv.variants.navigate(2, Direction.NEXT)
        self.conv.variants.navigate(2, Direction.NEXT)
        self.assertEqual(1, self.conv.variants.index_of(2))

    def _simulate_reload(self) -> None:
        self.conv.state.selection[2] = 3
        self.conv.state.display[2] = "c"

    def test_restores_preserved_selection(self) -> None:
        self._select_first()
        snapshot = self.conv.reconciler.snapshot()
        self._simulate_reload()

        self.conv.reconciler.restore(snapshot)

        self.assertEqual(1, self.conv.variants.index_of(2))
        self.assertEqual("a", self.conv.state.displayed_content(2))

    def test_edited_original_is_not_restored_and_marker_clears(self) -> None:
        self._select_first()
        snapshot = self.conv.reconciler.snapshot()
        self.conv.reconciler.mark_edited_original(2)
        self._simulate_reload()

        self.conv.reconciler.restore(snapshot)

        self.assertEqual(3, self.conv.variants.index_of(2))
        self.assertEqual(set(), self.conv.state.edited_originals)

    def test_stored_original_selection_is_not_overridden(self) -> None:
        self._select_first()
        self.conv.selections.set(SESSION_ID, 2, 0, 3)
        snapshot = self.conv.reconciler.snapshot()
        self._simulate_reload()

        self.conv.reconciler.restore(snapshot)

        self.assertEqual(3, self.conv.variants.index_of(2))

    def test_record_rewritten_after_snapshot_does_not_block_restore(self) -> None:
        self._select_first()
        snapshot = self.conv.reconciler.snapshot()
        self.conv.selections.set(SESSION_ID, 2, 0, 3)
        self._simulate_reload()

        self.conv.reconciler.restore(snapshot)

        self.assertEqual(1, self.conv.variants.index_of(2))
        self.assertEqual(SelectionRecord(index=1, count=3), self.conv.selections.get(SESSION_ID, 2))

    def test_messages_without_fresh_variants_are_skipped(self) -> None:
        self._select_first()
        snapshot = self.conv.reconciler.snapshot()
        self.conv.state.forget_variants(2)

        self.conv.reconciler.restore(snapshot)

        self.assertNotIn(2, self.conv.state.selection)

    def test_preserved_index_is_clamped_to_fresh_count(self) -> None:
        self.conv.variants.resolve_selection(2, self.variants)
        snapshot = self.conv.reconciler.snapshot()
        self.conv.state.variants[2] = self.variants[:1]

        self.conv.reconciler.restore(snapshot)

        self.assertEqual(1, self.conv.variants.index_of(2))


class RefreshTests(ReconcilerTestCase):
    def test_refresh_keeps_local_selection(self) -> None:
        self.conv.backend.add_variant(2, "x")
        self.conv.backend.add_variant(2, "y")

        async def scenario():
            await self.conv.controller.load()
            self.conv.variants.navigate(2, Direction.PREV)
            self.conv.backend.messages[1]["content"] = "Server copy"
            return await self.conv.controller.refresh()

        self.assertTrue(asyncio.run(scenario()))

        self.assertEqual(1, self.conv.variants.index_of(2))
        self.assertEqual("x", self.conv.state.displayed_content(2))
        self.assertEqual("Server copy", self.conv.state.message(2).content)
        refreshed = [e for e in self.conv.received if isinstance(e, SessionRefreshed)]
        self.assertFalse(refreshed[-1].suppressed)

    def test_refresh_persists_restored_selection(self) -> None:
        self.conv.backend.add_variant(2, "a")
        self.conv.backend.add_variant(2, "b")

        async def scenario():
            await self.conv.controller.load()
            self.conv.variants.navigate(2, Direction.PREV)
            self.conv.backend.add_variant(2, "c")
            await self.conv.controller.refresh()
            await self.conv.variants.load_variants(2)

        asyncio.run(scenario())

        self.assertEqual(SelectionRecord(index=1, count=3), self.conv.selections.get(SESSION_ID, 2))
        self.assertEqual(1, self.conv.variants.index_of(2))
        self.assertEqual("a", self.conv.state.displayed_content(2))

    def test_scheduled_refresh_is_suppressed_while_streaming(self) -> None:
        calls: list[int] = []

        async def fetch() -> SessionPage:
            calls.append(1)
            return SessionPage(messages=[], has_more=False)

        async def scenario():
            self.conv.state.primary_streaming = True
            return await self.conv.reconciler.schedule_refresh(fetch, 0)

        self.assertFalse(asyncio.run(scenario()))

        self.assertEqual([], calls)
        self.assertEqual(2, len(self.conv.state.messages))
        self.assertTrue(self.conv.received[-1].suppressed)

    def test_scheduled_refresh_is_suppressed_while_variant_generates(self) -> None:
        async def fetch() -> SessionPage:
            return SessionPage(messages=[], has_more=False)

        async def scenario():
            self.conv.state.variant_states[2] = VariantState.STREAMING
            return await self.conv.reconciler.schedule_refresh(fetch, 0)

        self.assertFalse(asyncio.run(scenario()))
        self.assertEqual(2, len(self.conv.state.messages))

    def test_rescheduling_cancels_pending_refresh(self) -> None:
        async def fetch() -> SessionPage:
            return SessionPage(messages=list(self.conv.state.messages), has_more=False)

        async def scenario():
            first = self.conv.reconciler.schedule_refresh(fetch, 10)
            second = self.conv.reconciler.schedule_refresh(fetch, 0)
            result = await second
            await asyncio.sleep(0)
            return first, result

        first, result = asyncio.run(scenario())

        self.assertTrue(first.cancelled())
        self.assertTrue(result)


class ApplyOptimisticTests(ReconcilerTestCase):
    def test_persistence_error_restores_snapshot(self) -> None:
        async def failing() -> None:
            raise PersistenceError("edit message", 500)

        def apply() -> None:
            self.conv.state.replace_message(self.conv.state.message(2).with_content("changed"))

        with self.assertRaises(PersistenceError):
            asyncio.run(self.conv.reconciler.apply_optimistic(apply, failing))

        self.assertEqual("Original", self.conv.state.message(2).content)

    def test_success_keeps_tentative_state(self) -> None:
        async def ok() -> str:
            return "confirmed"

        def apply() -> None:
            self.conv.state.session.notes = "draft"

        self.assertEqual("confirmed", asyncio.run(self.conv.reconciler.apply_optimistic(apply, ok)))
        self.assertEqual("draft", self.conv.state.session.notes)


if __name__ == "__main__":
    unittest.main()
