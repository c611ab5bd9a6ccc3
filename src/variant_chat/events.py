from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from loguru import logger

from variant_chat.models import StreamStatus, VariantState


@dataclass(frozen=True)
class StreamDelta:
    channel: str
    accumulated: str
    delta: str


@dataclass(frozen=True)
class StreamFinished:
    channel: str
    status: StreamStatus
    content: str


@dataclass(frozen=True)
class VariantStateChanged:
    message_id: int
    state: VariantState


@dataclass(frozen=True)
class DisplayChanged:
    message_id: int
    index: int
    content: str | None


@dataclass(frozen=True)
class SessionRefreshed:
    session_id: int
    message_count: int
    suppressed: bool = False


@dataclass(frozen=True)
class ErrorRaised:
    source: str
    message: str


ChatEvent = StreamDelta | StreamFinished | VariantStateChanged | DisplayChanged | SessionRefreshed | ErrorRaised

Listener = Callable[[ChatEvent], None]


@runtime_checkable
class EventSink(Protocol):
    def emit(self, event: ChatEvent) -> None: ...


class EventEmitter:
    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: ChatEvent) -> None:
        for listener in tuple(self._listeners):
            try:
                listener(event)
            except Exception as ex:
                logger.warning(f"Event listener failed for {type(event).__name__}: {ex}")


class NullEventEmitter:
    def emit(self, event: ChatEvent) -> None:
        return None
