from __future__ import annotations

from collections.abc import Awaitable, Callable


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_variant: Callable[[str], Awaitable[None]],
        on_retry: Callable[[], Awaitable[None]],
        on_continue: Callable[[], Awaitable[None]],
        on_context: Callable[[], Awaitable[None]],
        on_older: Callable[[], Awaitable[None]],
        on_message: Callable[[str], Awaitable[None]],
        on_session: Callable[[str], Awaitable[None]],
        on_unknown: Callable[[str], None],
    ) -> None:
        self._on_help = on_help
        self._on_variant = on_variant
        self._on_retry = on_retry
        self._on_continue = on_continue
        self._on_context = on_context
        self._on_older = on_older
        self._on_message = on_message
        self._on_session = on_session
        self._on_unknown = on_unknown

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        if trimmed == "/help":
            await self._on_help()
            return True
        if trimmed.startswith("/variant"):
            await self._on_variant(trimmed)
            return True
        if trimmed == "/retry":
            await self._on_retry()
            return True
        if trimmed == "/continue":
            await self._on_continue()
            return True
        if trimmed == "/context":
            await self._on_context()
            return True
        if trimmed == "/older":
            await self._on_older()
            return True
        if trimmed.startswith("/message"):
            await self._on_message(trimmed)
            return True
        if trimmed.startswith("/summary") or trimmed.startswith("/notes"):
            await self._on_session(trimmed)
            return True

        self._on_unknown(trimmed)
        return True
