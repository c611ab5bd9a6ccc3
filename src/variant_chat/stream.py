from __future__ import annotations

import asyncio
import codecs
import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger

from variant_chat.errors import ParseError, TransportError, UpstreamError
from variant_chat.events import EventSink, NullEventEmitter, StreamDelta, StreamFinished
from variant_chat.models import StreamStatus
from variant_chat.redaction import extract_error_from_response, extract_useful_error, sanitize_error_message

_LINE_BREAK = re.compile(r"\r?\n")
_DATA_PREFIX = "data: "
_DONE_SENTINEL = "[DONE]"

DeltaCallback = Callable[[str, str], None]
OpenCallback = Callable[[httpx.Response], None]


class AbortHandle:
    """Cancels one in-flight request. Handles are never shared between streams."""

    def __init__(self) -> None:
        self._aborted = False
        self._task: asyncio.Task | None = None

    @property
    def aborted(self) -> bool:
        return self._aborted

    def bind(self, task: asyncio.Task) -> None:
        self._task = task
        if self._aborted and not task.done():
            task.cancel()

    def abort(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        if self._task is not None and not self._task.done():
            self._task.cancel()


@dataclass
class StreamSession:
    channel: str = "primary"
    buffer: str = ""
    abort_handle: AbortHandle = field(default_factory=AbortHandle)
    status: StreamStatus = StreamStatus.IDLE
    bytes_received: int = 0

    @property
    def active(self) -> bool:
        return self.status in (StreamStatus.IDLE, StreamStatus.STREAMING) and not self.abort_handle.aborted

    def abort(self) -> None:
        self.abort_handle.abort()


@dataclass(frozen=True)
class StreamOutcome:
    content: str = ""
    status: StreamStatus = StreamStatus.DONE
    was_streaming: bool = False
    data: Any = None
    partial_error: str | None = None
    status_code: int | None = None

    @property
    def aborted(self) -> bool:
        return self.status == StreamStatus.ABORTED

    @property
    def soft_failed(self) -> bool:
        return self.status == StreamStatus.ERRORED and self.partial_error is not None


def is_event_stream(response: httpx.Response) -> bool:
    return "text/event-stream" in response.headers.get("content-type", "")


def parse_frame(line: str) -> str | None:
    """Return the payload of a ``data:`` line, or None for lines that are not data frames."""
    if not line.startswith(_DATA_PREFIX):
        return None
    return line[len(_DATA_PREFIX) :].strip()


def extract_content(payload: str) -> str:
    try:
        parsed = json.loads(payload)
    except ValueError as ex:
        raise ParseError(f"Malformed stream frame: {payload[:80]!r}") from ex
    if not isinstance(parsed, dict):
        return ""
    content = parsed.get("content")
    return content if isinstance(content, str) else ""


def decode_body(raw: bytes) -> Any:
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return {"raw_text": text}


def completion_text(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    choices = data.get("choices")
    if isinstance(choices, list) and choices:
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
    content = data.get("content")
    return content if isinstance(content, str) else ""


class StreamConsumer:
    def __init__(self, events: EventSink | None = None):
        self._events = events or NullEventEmitter()

    async def consume(
        self,
        response: httpx.Response,
        session: StreamSession,
        on_delta: DeltaCallback | None = None,
    ) -> str:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        session.status = StreamStatus.STREAMING

        async for chunk in response.aiter_bytes():
            if session.abort_handle.aborted:
                return session.buffer
            session.bytes_received += len(chunk)
            pending += decoder.decode(chunk)
            *lines, pending = _LINE_BREAK.split(pending)
            for line in lines:
                if self._handle_line(line, session, on_delta):
                    return session.buffer

        pending += decoder.decode(b"", final=True)
        if pending:
            self._handle_line(pending, session, on_delta)
        return session.buffer

    def _handle_line(self, line: str, session: StreamSession, on_delta: DeltaCallback | None) -> bool:
        payload = parse_frame(line)
        if payload is None:
            return False
        if payload == _DONE_SENTINEL:
            return True
        try:
            delta = extract_content(payload)
        except ParseError as ex:
            logger.debug(f"Skipping frame on {session.channel}: {ex}")
            return False
        if not delta:
            return False
        session.buffer += delta
        if on_delta is not None:
            on_delta(session.buffer, delta)
        self._events.emit(StreamDelta(channel=session.channel, accumulated=session.buffer, delta=delta))
        return False


class StreamingRequest:
    """Sends one request and reads either an event stream or a JSON body, honouring the session's abort handle."""

    def __init__(self, client: httpx.AsyncClient, *, events: EventSink | None = None):
        self._client = client
        self._events = events or NullEventEmitter()
        self._consumer = StreamConsumer(self._events)

    async def run(
        self,
        method: str,
        url: str,
        *,
        json_body: dict[str, Any],
        session: StreamSession,
        on_delta: DeltaCallback | None = None,
        on_open: OpenCallback | None = None,
    ) -> StreamOutcome:
        task = asyncio.create_task(self._execute(method, url, json_body, session, on_delta, on_open))
        session.abort_handle.bind(task)
        try:
            return await task
        except asyncio.CancelledError:
            if session.abort_handle.aborted and task.cancelled():
                logger.info(f"Stream {session.channel} aborted after {len(session.buffer)} chars")
                return self._aborted(session)
            raise
        except (UpstreamError, TransportError):
            session.status = StreamStatus.ERRORED
            raise
        finally:
            self._events.emit(StreamFinished(channel=session.channel, status=session.status, content=session.buffer))

    async def _execute(
        self,
        method: str,
        url: str,
        json_body: dict[str, Any],
        session: StreamSession,
        on_delta: DeltaCallback | None,
        on_open: OpenCallback | None,
    ) -> StreamOutcome:
        logger.debug(f"Request {method} {url} on {session.channel}: stream={json_body.get('stream')}")
        try:
            async with self._client.stream(method, url, json=json_body) as response:
                streaming = is_event_stream(response)
                if not response.is_success and not streaming:
                    body = decode_body(await response.aread())
                    message = extract_error_from_response(body, response.reason_phrase)
                    logger.warning(f"Upstream rejected {url}: {response.status_code} {message}")
                    raise UpstreamError(message, response.status_code)

                if on_open is not None:
                    on_open(response)

                if streaming:
                    return await self._consume(response, session, on_delta)

                data = decode_body(await response.aread())
                session.status = StreamStatus.DONE
                return StreamOutcome(
                    content=completion_text(data),
                    status=StreamStatus.DONE,
                    data=data,
                    status_code=response.status_code,
                )
        except httpx.TransportError as ex:
            if session.abort_handle.aborted:
                return self._aborted(session)
            message = sanitize_error_message(str(ex) or type(ex).__name__)
            logger.warning(f"Transport failure on {session.channel}: {message}")
            raise TransportError(message) from ex

    async def _consume(
        self,
        response: httpx.Response,
        session: StreamSession,
        on_delta: DeltaCallback | None,
    ) -> StreamOutcome:
        try:
            await self._consumer.consume(response, session, on_delta)
        except httpx.HTTPError as ex:
            if session.abort_handle.aborted:
                return self._aborted(session)
            session.status = StreamStatus.ERRORED
            message = sanitize_error_message(extract_useful_error(str(ex) or "Streaming error"))
            if session.buffer:
                logger.warning(f"Stream {session.channel} ended early after partial content: {message}")
                return StreamOutcome(
                    content=session.buffer,
                    status=StreamStatus.ERRORED,
                    was_streaming=True,
                    partial_error=message,
                    status_code=response.status_code,
                )
            raise UpstreamError(message, response.status_code) from ex

        if session.abort_handle.aborted:
            return self._aborted(session)

        if session.bytes_received == 0 and not response.is_success:
            message = extract_error_from_response(None, response.reason_phrase)
            raise UpstreamError(message, response.status_code)

        session.status = StreamStatus.DONE
        logger.debug(f"Stream {session.channel} done: {len(session.buffer)} chars")
        return StreamOutcome(
            content=session.buffer,
            status=StreamStatus.DONE,
            was_streaming=True,
            status_code=response.status_code,
        )

    def _aborted(self, session: StreamSession) -> StreamOutcome:
        session.status = StreamStatus.ABORTED
        return StreamOutcome(content=session.buffer, status=StreamStatus.ABORTED, was_streaming=True)
