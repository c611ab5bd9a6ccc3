from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any

from loguru import logger

from variant_chat.api_client import ChatApiClient
from variant_chat.conversation_state import ConversationState
from variant_chat.errors import PersistenceError, PolicyViolation, TransportError, UpstreamError
from variant_chat.events import ErrorRaised, EventSink, NullEventEmitter
from variant_chat.models import Message, StreamStatus
from variant_chat.reconciliation import Reconciler, SessionFetch
from variant_chat.stream import DeltaCallback, StreamOutcome, StreamSession
from variant_chat.truncation import (
    DEFAULT_TRUNCATION_LIMIT,
    TruncationResult,
    clamp_truncation_limit,
    truncate_messages,
    with_truncation_note,
)
from variant_chat.variant_manager import VariantManager

CONTINUE_PREFIX = "[SYSTEM NOTE: Ignore this message"
CONTINUE_PROMPT = (
    f"{CONTINUE_PREFIX}, reply as if you are extending the last message you sent as if your reply never ended "
    "- do not make an effort to send a message on behalf of the user unless the most recent message from you "
    "did include speaking on behalf of the user. Specifically do not start messages with `{{user}}: `, you "
    "should NEVER use that format in any message.]"
)
CONTINUE_SEPARATOR = "\n\n"


def is_continue_prompt(text: str | None) -> bool:
    return bool(text) and text.startswith(CONTINUE_PREFIX)


@dataclass(frozen=True)
class TurnResult:
    status: StreamStatus
    content: str
    restored_input: str | None = None
    partial_error: str | None = None


class TurnEngine:
    """Primary send pipeline for one conversation.

    The backend stores the user message before it calls the provider and applies the
    truncation policy itself; ``outgoing_history`` reproduces that shaping locally so
    the console can preview what a request would carry.
    """

    def __init__(
        self,
        *,
        state: ConversationState,
        api: ChatApiClient,
        variants: VariantManager,
        reconciler: Reconciler,
        fetch_session: SessionFetch,
        stream: bool = True,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        truncation_limit: int = DEFAULT_TRUNCATION_LIMIT,
        refresh_delay_seconds: float = 0.5,
        events: EventSink | None = None,
    ) -> None:
        self._state = state
        self._api = api
        self._variants = variants
        self._reconciler = reconciler
        self._fetch_session = fetch_session
        self._stream = stream
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._truncation_limit = clamp_truncation_limit(truncation_limit)
        self._refresh_delay_seconds = refresh_delay_seconds
        self._events = events or NullEventEmitter()
        self._session: StreamSession | None = None
        self._tentative_ids = itertools.count(-1, -1)

    @property
    def streaming(self) -> bool:
        return self._session is not None

    @property
    def truncation_limit(self) -> int:
        return self._truncation_limit

    async def send(self, text: str, *, retry: bool = False) -> TurnResult:
        """Send a user turn. With ``retry`` the message is already stored and only a reply is requested."""
        user_text = text.strip()
        if not user_text:
            raise PolicyViolation("Message cannot be empty")
        latest_id = self._ensure_idle()
        if latest_id is not None:
            await self._settle_variants(latest_id)

        assistant = self._append_tentative(user_text, retry=retry)

        def on_delta(accumulated: str, _delta: str) -> None:
            self._state.replace_message(assistant.with_content(accumulated))

        logger.info(f"Sending turn for session {self._state.session_id} (retry={retry}, stream={self._stream})")
        try:
            outcome = await self._request(self._request_body(user_text, retry=retry), on_delta)
        except UpstreamError as ex:
            # The user message is already stored server side; only the reply is dropped.
            self._drop_message(assistant.id)
            self._events.emit(ErrorRaised(source="chat", message=ex.body))
            self._schedule_refresh()
            raise
        except TransportError as ex:
            logger.warning(f"Turn lost its connection: {ex}")
            self._drop_message(assistant.id)
            self._schedule_refresh()
            return TurnResult(status=StreamStatus.ERRORED, content="", restored_input=user_text)

        if outcome.aborted:
            self._drop_message(assistant.id)
            logger.info(f"Turn aborted after {len(outcome.content)} chars")
            self._schedule_refresh()
            return TurnResult(status=StreamStatus.ABORTED, content=outcome.content, restored_input=user_text)

        self._state.replace_message(assistant.with_content(outcome.content))
        self._schedule_refresh()
        return TurnResult(status=outcome.status, content=outcome.content, partial_error=outcome.partial_error)

    async def retry_last(self) -> TurnResult:
        """Ask again for a reply to the trailing user message."""
        messages = self._state.messages
        if not messages or messages[-1].role != "user":
            raise PolicyViolation("Nothing to retry: the last message already has a reply")
        return await self.send(messages[-1].content, retry=True)

    async def continue_last(self) -> TurnResult:
        """Extend the latest assistant reply; the backend appends the continuation to it."""
        latest_id = self._ensure_idle()
        messages = self._state.messages
        if latest_id is None or messages[-1].role != "assistant":
            raise PolicyViolation("Nothing to continue: the last message is not an assistant reply")
        await self._settle_variants(latest_id)

        base = self._state.message(latest_id)

        def extended(continuation: str) -> Message:
            if not continuation:
                return base
            return base.with_content(f"{base.content}{CONTINUE_SEPARATOR}{continuation}")

        def on_delta(accumulated: str, _delta: str) -> None:
            self._state.replace_message(extended(accumulated))

        logger.info(f"Continuing message {latest_id} in session {self._state.session_id}")
        try:
            outcome = await self._request(self._request_body(CONTINUE_PROMPT, retry=False), on_delta)
        except UpstreamError as ex:
            self._state.replace_message(base)
            self._events.emit(ErrorRaised(source="chat", message=ex.body))
            raise
        except TransportError as ex:
            logger.warning(f"Continuation lost its connection: {ex}")
            self._state.replace_message(base)
            return TurnResult(status=StreamStatus.ERRORED, content="")

        self._state.replace_message(extended(outcome.content))
        if outcome.aborted:
            # Partial continuation stays on screen; a refresh would replace it with the stored copy.
            logger.info(f"Continuation aborted after {len(outcome.content)} chars")
            return TurnResult(status=StreamStatus.ABORTED, content=outcome.content)
        self._schedule_refresh()
        return TurnResult(status=outcome.status, content=outcome.content, partial_error=outcome.partial_error)

    def abort(self) -> bool:
        if self._session is None:
            return False
        self._session.abort()
        return True

    def outgoing_history(self, system_prompt: str, *, continuing: bool = False) -> list[dict[str, Any]]:
        """History as it would be sent upstream: summary folded into the system prompt, then truncated.

        A continuation directive is added after truncation so it is never dropped.
        """
        history = with_truncation_note(self.truncate_history(system_prompt))
        if continuing:
            history.append({"role": "user", "content": CONTINUE_PROMPT})
        return history

    def truncate_history(self, system_prompt: str) -> TruncationResult:
        system = system_prompt
        if self._state.session.summary:
            system = f"{system_prompt}\n\n{self._state.session.summary}"
        messages = [{"role": "system", "content": system}]
        messages.extend(
            m.for_request()
            for m in self._state.messages
            if (m.id > 0 or m.content) and not (m.role == "user" and is_continue_prompt(m.content))
        )
        return truncate_messages(messages, self._truncation_limit)

    def _ensure_idle(self) -> int | None:
        if self._state.primary_streaming:
            raise PolicyViolation("A reply is already streaming")
        latest_id = self._state.latest_assistant_id()
        if latest_id is not None and self._state.state_of(latest_id).in_flight:
            raise PolicyViolation("Wait for the variant to finish generating")
        return latest_id

    async def _request(self, body: dict[str, Any], on_delta: DeltaCallback) -> StreamOutcome:
        session = StreamSession(channel="primary")
        self._session = session
        self._state.primary_streaming = True
        try:
            return await self._api.stream_completion(body, session, on_delta=on_delta)
        finally:
            self._state.primary_streaming = False
            self._session = None

    def _schedule_refresh(self) -> None:
        self._reconciler.schedule_refresh(self._fetch_session, self._refresh_delay_seconds)

    async def _settle_variants(self, message_id: int) -> None:
        if not self._state.variants.get(message_id):
            return
        try:
            if self._variants.index_of(message_id) > 0:
                await self._variants.commit(message_id)
            else:
                await self._variants.discard_all(message_id)
        except PersistenceError as ex:
            logger.warning(f"Could not settle variants of message {message_id} before sending: {ex}")
            raise

    def _append_tentative(self, user_text: str, *, retry: bool) -> Message:
        session = self._state.session
        ordinal = max((m.ordinal for m in session.messages), default=0)
        added: list[Message] = []
        if not retry:
            ordinal += 1
            added.append(Message(id=next(self._tentative_ids), role="user", content=user_text, ordinal=ordinal))
        assistant = Message(id=next(self._tentative_ids), role="assistant", content="", ordinal=ordinal + 1)
        added.append(assistant)
        session.messages = [*session.messages, *added]
        return assistant

    def _drop_message(self, message_id: int) -> None:
        session = self._state.session
        session.messages = [m for m in session.messages if m.id != message_id]

    def _request_body(self, user_text: str, *, retry: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "sessionId": self._state.session_id,
            "stream": self._stream,
            "temperature": self._temperature,
            "maxTokens": self._max_tokens,
            "userMessage": user_text,
        }
        if retry:
            body["retry"] = True
        return body
