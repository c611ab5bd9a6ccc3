import asyncio
import unittest

from tests.backend import Conversation, FakeChatBackend
from variant_chat.errors import PersistenceError, PolicyViolation
from variant_chat.models import Message, SessionPage
from variant_chat.variant_manager import Direction


def _run(conversation: Conversation, coro):
    async def scenario():
        try:
            return await coro
        finally:
            await conversation.aclose()

    return asyncio.run(scenario())


class LoadTests(unittest.TestCase):
    def test_load_reads_latest_page_and_variants(self) -> None:
        backend = FakeChatBackend([("user", "q1"), ("assistant", "a1"), ("user", "q2"), ("assistant", "a2")])
        backend.add_variant(4, "alt")
        backend.summary = "earlier talk"
        conv = Conversation(backend, page_size=2)

        page = _run(conv, conv.controller.load())

        self.assertTrue(page.has_more)
        self.assertEqual([3, 4], [m.id for m in conv.state.messages])
        self.assertEqual("earlier talk", conv.state.session.summary)
        self.assertEqual(1, conv.variants.index_of(4))
        self.assertEqual("alt", conv.state.displayed_content(4))

    def test_load_older_prepends_until_exhausted(self) -> None:
        backend = FakeChatBackend([("user", str(i)) for i in range(5)])
        conv = Conversation(backend, page_size=2)

        async def scenario():
            await conv.controller.load()
            first = await conv.controller.load_older()
            second = await conv.controller.load_older()
            third = await conv.controller.load_older()
            return first, second, third

        first, second, third = _run(conv, scenario())

        self.assertEqual([2, 3], [m.id for m in first])
        self.assertEqual([1], [m.id for m in second])
        self.assertEqual([], third)
        self.assertEqual([1, 2, 3, 4, 5], [m.id for m in conv.state.messages])
        self.assertFalse(conv.state.session.has_more)
        self.assertEqual(3, len(conv.backend.bodies("GET", "/api/sessions/1")))

    def test_load_older_skips_messages_already_loaded(self) -> None:
        backend = FakeChatBackend([("user", str(i)) for i in range(4)])
        conv = Conversation(backend, page_size=2)

        async def overlapping(session_id, *, limit=None, before_id=None) -> SessionPage:
            return SessionPage(
                messages=[
                    Message(id=2, role="user", content="1", ordinal=2),
                    Message(id=3, role="user", content="2", ordinal=3),
                ],
                has_more=False,
            )

        async def scenario():
            await conv.controller.load()
            conv.api.get_session = overlapping
            return await conv.controller.load_older()

        older = _run(conv, scenario())

        self.assertEqual([2], [m.id for m in older])
        self.assertEqual([2, 3, 4], [m.id for m in conv.state.messages])


class MutationTests(unittest.TestCase):
    def _conversation(self) -> Conversation:
        conv = Conversation(FakeChatBackend([("user", "hi"), ("assistant", "Original")]))
        conv.seed()
        return conv

    def test_edit_message_updates_server_and_local_copy(self) -> None:
        conv = self._conversation()

        edited = _run(conv, conv.controller.edit_message(2, "  Better answer "))

        self.assertEqual("Better answer", edited.content)
        self.assertEqual("Better answer", conv.state.message(2).content)
        self.assertEqual("Better answer", conv.backend.messages[1]["content"])
        self.assertEqual([{"content": "Better answer"}], conv.backend.bodies("PUT", "/api/messages/2"))

    def test_edit_original_with_variants_shows_fresh_content(self) -> None:
        conv = self._conversation()
        conv.backend.add_variant(2, "alt")

        async def scenario():
            await conv.variants.load_variants(2)
            conv.variants.navigate(2, Direction.NEXT)
            await conv.controller.edit_message(2, "Edited")

        _run(conv, scenario())

        self.assertEqual("Edited", conv.state.displayed_content(2))
        self.assertEqual(set(), conv.state.edited_originals)

    def test_failed_edit_rolls_back(self) -> None:
        conv = self._conversation()
        conv.backend.fail("PUT", "/api/messages/2", 500)

        with self.assertRaises(PersistenceError) as ctx:
            _run(conv, conv.controller.edit_message(2, "Edited"))

        self.assertEqual(500, ctx.exception.status)
        self.assertEqual("Original", conv.state.message(2).content)
        self.assertEqual([], conv.backend.bodies("GET", "/api/sessions/1"))

    def test_empty_edit_is_rejected(self) -> None:
        conv = self._conversation()
        with self.assertRaises(PolicyViolation):
            _run(conv, conv.controller.edit_message(2, " "))
        self.assertEqual([], conv.backend.requests)

    def test_delete_message(self) -> None:
        conv = self._conversation()

        _run(conv, conv.controller.delete_message(2))

        self.assertEqual([1], [m.id for m in conv.state.messages])
        self.assertEqual([1], [m["id"] for m in conv.backend.messages])

    def test_failed_delete_restores_message(self) -> None:
        conv = self._conversation()
        conv.backend.fail("DELETE", "/api/messages/2", 404)

        with self.assertRaises(PersistenceError):
            _run(conv, conv.controller.delete_message(2))

        self.assertEqual([1, 2], [m.id for m in conv.state.messages])

    def test_update_summary_and_notes(self) -> None:
        conv = self._conversation()

        async def scenario():
            await conv.controller.update_summary("short recap")
            await conv.controller.update_notes("remember the name")

        _run(conv, scenario())

        self.assertEqual("short recap", conv.backend.summary)
        self.assertEqual("remember the name", conv.backend.notes)
        self.assertEqual("short recap", conv.state.session.summary)
        self.assertEqual("remember the name", conv.state.session.notes)

    def test_failed_summary_update_rolls_back(self) -> None:
        conv = self._conversation()
        conv.state.session.summary = "old"
        conv.backend.fail("PUT", "/api/sessions/1/summary", 500)

        with self.assertRaises(PersistenceError):
            _run(conv, conv.controller.update_summary("new"))

        self.assertEqual("old", conv.state.session.summary)


if __name__ == "__main__":
    unittest.main()
