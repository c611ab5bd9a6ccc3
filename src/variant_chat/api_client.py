from __future__ import annotations

from typing import Any

import httpx
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from variant_chat.errors import PersistenceError, TransportError
from variant_chat.events import EventSink
from variant_chat.models import Message, MessageVariant, SessionPage
from variant_chat.redaction import extract_error_from_response
from variant_chat.stream import DeltaCallback, OpenCallback, StreamingRequest, StreamOutcome, StreamSession, decode_body

MAX_PAGE_SIZE = 500


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.1f}s (attempt {attempt}/3)...")


_read_retry = retry(
    retry=retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout, httpx.RemoteProtocolError)),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    stop=stop_after_attempt(3),
    before_sleep=_on_retry,
    reraise=True,
)


def create_http_client(base_url: str, token: str | None = None) -> httpx.AsyncClient:
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    # Stream reads have no deadline; only connecting is bounded.
    return httpx.AsyncClient(
        base_url=base_url,
        headers=headers,
        timeout=httpx.Timeout(None, connect=15.0),
    )


class ChatApiClient:
    def __init__(self, client: httpx.AsyncClient, *, events: EventSink | None = None):
        self._client = client
        self._streaming = StreamingRequest(client, events=events)

    async def aclose(self) -> None:
        await self._client.aclose()

    # --- completion & variant streams -------------------------------------------------

    async def stream_completion(
        self,
        body: dict[str, Any],
        session: StreamSession,
        *,
        on_delta: DeltaCallback | None = None,
        on_open: OpenCallback | None = None,
    ) -> StreamOutcome:
        return await self._streaming.run(
            "POST", "/api/chat", json_body=body, session=session, on_delta=on_delta, on_open=on_open
        )

    async def stream_variant(
        self,
        message_id: int,
        body: dict[str, Any],
        session: StreamSession,
        *,
        on_delta: DeltaCallback | None = None,
        on_open: OpenCallback | None = None,
    ) -> StreamOutcome:
        return await self._streaming.run(
            "POST",
            f"/api/messages/{message_id}/variants",
            json_body=body,
            session=session,
            on_delta=on_delta,
            on_open=on_open,
        )

    # --- reads ------------------------------------------------------------------------

    @_read_retry
    async def _get(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        return await self._client.get(path, params=params)

    async def _get_json(self, path: str, operation: str, params: dict[str, Any] | None = None) -> Any:
        try:
            response = await self._get(path, params)
        except httpx.TransportError as ex:
            raise TransportError(f"{operation}: {type(ex).__name__}") from ex
        if not response.is_success:
            raise PersistenceError(operation, response.status_code, self._error_text(response))
        return response.json()

    async def get_session(
        self,
        session_id: int,
        *,
        limit: int | None = None,
        before_id: int | None = None,
    ) -> SessionPage:
        params: dict[str, Any] = {}
        if limit is not None:
            params["limit"] = min(max(int(limit), 1), MAX_PAGE_SIZE)
        if before_id is not None:
            params["beforeId"] = before_id
        data = await self._get_json(f"/api/sessions/{session_id}", "load session", params or None)
        raw_messages = data.get("messages") or []
        messages = [Message.from_api(m) for m in raw_messages]
        messages.sort(key=lambda m: m.ordinal)
        return SessionPage(
            messages=messages,
            has_more=bool(data.get("hasMore", False)),
            summary=data.get("summary"),
            notes=data.get("notes"),
        )

    async def list_variants(self, message_id: int) -> list[MessageVariant]:
        data = await self._get_json(f"/api/messages/{message_id}/variants", "list variants")
        variants = [MessageVariant.from_api({"messageId": message_id, **v}) for v in data]
        return sorted(variants, key=lambda v: v.version)

    async def latest_variant(self, message_id: int) -> MessageVariant | None:
        try:
            response = await self._get(f"/api/messages/{message_id}/variants/latest")
        except httpx.TransportError as ex:
            raise TransportError(f"latest variant: {type(ex).__name__}") from ex
        if response.status_code == 404:
            return None
        if not response.is_success:
            raise PersistenceError("latest variant", response.status_code, self._error_text(response))
        return MessageVariant.from_api({"messageId": message_id, **response.json()})

    # --- mutations --------------------------------------------------------------------

    async def _mutate(self, method: str, path: str, operation: str, body: dict[str, Any] | None = None) -> Any:
        try:
            response = await self._client.request(method, path, json=body)
        except httpx.TransportError as ex:
            raise PersistenceError(operation, None, type(ex).__name__) from ex
        if not response.is_success:
            raise PersistenceError(operation, response.status_code, self._error_text(response))
        if not response.content:
            return None
        return decode_body(response.content)

    async def select_variant(self, message_id: int, variant_id: int) -> MessageVariant:
        data = await self._mutate(
            "PUT", f"/api/messages/{message_id}/variants", "commit variant", {"variantId": variant_id}
        )
        return MessageVariant.from_api({"messageId": message_id, **data})

    async def edit_variant(self, message_id: int, variant_id: int, content: str) -> MessageVariant:
        data = await self._mutate(
            "PUT",
            f"/api/messages/{message_id}/variants",
            "edit variant",
            {"variantId": variant_id, "content": content},
        )
        return MessageVariant.from_api({"messageId": message_id, **data})

    async def delete_variants(self, message_id: int) -> int:
        data = await self._mutate("DELETE", f"/api/messages/{message_id}/variants", "discard variants")
        if isinstance(data, dict):
            return int(data.get("deleted", 0))
        return 0

    async def update_message(self, message_id: int, content: str) -> None:
        await self._mutate("PUT", f"/api/messages/{message_id}", "edit message", {"content": content})

    async def delete_message(self, message_id: int) -> None:
        await self._mutate("DELETE", f"/api/messages/{message_id}", "delete message")

    async def update_summary(self, session_id: int, summary: str) -> None:
        await self._mutate("PUT", f"/api/sessions/{session_id}/summary", "update summary", {"summary": summary})

    async def update_notes(self, session_id: int, notes: str) -> None:
        await self._mutate("PUT", f"/api/sessions/{session_id}/notes", "update notes", {"notes": notes})

    def _error_text(self, response: httpx.Response) -> str:
        return extract_error_from_response(decode_body(response.content), response.reason_phrase)
