import asyncio
import unittest

import httpx

from variant_chat.api_client import MAX_PAGE_SIZE, ChatApiClient, create_http_client
from variant_chat.errors import PersistenceError, TransportError


def _api(handler) -> ChatApiClient:
    return ChatApiClient(httpx.AsyncClient(base_url="http://backend.test", transport=httpx.MockTransport(handler)))


async def _call(api: ChatApiClient, coro):
    try:
        return await coro
    finally:
        await api.aclose()


class ReadTests(unittest.TestCase):
    def test_get_session_sorts_by_ordinal_and_caps_limit(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "messages": [
                        {"id": 9, "role": "assistant", "content": "b", "ordinal": 2, "versions": [
                            {"id": 50, "content": "alt", "version": 1},
                        ]},
                        {"id": 8, "role": "user", "content": "a", "ordinal": 1},
                    ],
                    "hasMore": True,
                },
            )

        api = _api(handler)
        page = asyncio.run(_call(api, api.get_session(3, limit=10_000, before_id=12)))

        self.assertEqual([8, 9], [m.id for m in page.messages])
        self.assertTrue(page.has_more)
        self.assertEqual(9, page.messages[1].variants[0].parent_message_id)
        self.assertEqual(str(MAX_PAGE_SIZE), seen[0].url.params["limit"])
        self.assertEqual("12", seen[0].url.params["beforeId"])

    def test_latest_variant_returns_none_on_404(self) -> None:
        api = _api(lambda request: httpx.Response(404, json={"error": "none"}))
        self.assertIsNone(asyncio.run(_call(api, api.latest_variant(4))))

    def test_reads_retry_connection_errors(self) -> None:
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) < 3:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json=[{"id": 1, "content": "x", "version": 1}])

        api = _api(handler)
        variants = asyncio.run(_call(api, api.list_variants(4)))

        self.assertEqual(3, len(attempts))
        self.assertEqual(["x"], [v.content for v in variants])

    def test_read_failure_maps_to_persistence_error(self) -> None:
        api = _api(lambda request: httpx.Response(500, json={"error": {"message": "boom"}}))

        with self.assertRaises(PersistenceError) as ctx:
            asyncio.run(_call(api, api.list_variants(4)))

        self.assertEqual(500, ctx.exception.status)
        self.assertEqual("boom", ctx.exception.detail)

    def test_read_timeout_maps_to_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        api = _api(handler)
        with self.assertRaises(TransportError):
            asyncio.run(_call(api, api.get_session(1)))


class MutationTests(unittest.TestCase):
    def test_mutations_are_not_retried(self) -> None:
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            raise httpx.ConnectError("refused", request=request)

        api = _api(handler)
        with self.assertRaises(PersistenceError) as ctx:
            asyncio.run(_call(api, api.delete_variants(4)))

        self.assertEqual(1, len(attempts))
        self.assertEqual("discard variants", ctx.exception.operation)
        self.assertIsNone(ctx.exception.status)

    def test_delete_variants_returns_count(self) -> None:
        api = _api(lambda request: httpx.Response(200, json={"deleted": 3}))
        self.assertEqual(3, asyncio.run(_call(api, api.delete_variants(4))))

    def test_non_success_mutation_raises(self) -> None:
        api = _api(lambda request: httpx.Response(409, text="conflict"))

        with self.assertRaises(PersistenceError) as ctx:
            asyncio.run(_call(api, api.update_message(4, "x")))

        self.assertEqual(409, ctx.exception.status)
        self.assertEqual("conflict", ctx.exception.detail)


class CreateHttpClientTests(unittest.TestCase):
    def test_bearer_token_and_unbounded_reads(self) -> None:
        client = create_http_client("http://backend.test", "secret-token")
        try:
            self.assertEqual("Bearer secret-token", client.headers["Authorization"])
            self.assertIsNone(client.timeout.read)
            self.assertEqual(15.0, client.timeout.connect)
        finally:
            asyncio.run(client.aclose())

    def test_no_token_no_header(self) -> None:
        client = create_http_client("http://backend.test")
        try:
            self.assertNotIn("Authorization", client.headers)
        finally:
            asyncio.run(client.aclose())


if __name__ == "__main__":
    unittest.main()
