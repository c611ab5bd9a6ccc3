from __future__ import annotations

import asyncio
from collections.abc import Awaitable

from loguru import logger

from variant_chat.bootstrap import ConversationRuntime
from variant_chat.commands.router import CommandRouter
from variant_chat.errors import ChatRuntimeError, PolicyViolation, UpstreamError
from variant_chat.events import ChatEvent, EventEmitter, StreamDelta
from variant_chat.models import StreamStatus
from variant_chat.truncation import total_characters
from variant_chat.turn_engine import TurnResult
from variant_chat.variant_manager import Direction


class ChatConsole:
    """Terminal front end for one conversation."""

    _LINE_PREFIX = "assistant> "

    def __init__(self, runtime: ConversationRuntime, events: EventEmitter, *, temperature: float | None = None):
        self._runtime = runtime
        self._temperature = temperature
        self._run_lock = asyncio.Lock()
        self._streamed = False
        self._unsubscribe = events.subscribe(self._on_event)
        self._command_router = CommandRouter(
            on_help=self._on_help,
            on_variant=self._handle_variant_command,
            on_retry=self._handle_retry,
            on_continue=self._handle_continue,
            on_context=self._handle_context,
            on_older=self._handle_older,
            on_message=self._handle_message_command,
            on_session=self._handle_session_command,
            on_unknown=self._on_unknown_command,
        )

    def close(self) -> None:
        self._unsubscribe()
        self._runtime.close()

    def _on_event(self, event: ChatEvent) -> None:
        if isinstance(event, StreamDelta):
            self._streamed = True
            print(event.delta, end="", flush=True)

    async def run(self, user_message: str) -> None:
        async with self._run_lock:
            try:
                if await self._command_router.try_handle(user_message):
                    return
                print(self._LINE_PREFIX, end="", flush=True)
                self._streamed = False
                result = await self._runtime.turns.send(user_message)
                if not self._streamed and result.status == StreamStatus.DONE:
                    print(result.content, end="")
                if result.partial_error:
                    print(f"\n{self._LINE_PREFIX}[{result.partial_error}]")
            except PolicyViolation as ex:
                print(f"{self._LINE_PREFIX}{ex}")
            except UpstreamError as ex:
                print(f"\n{self._LINE_PREFIX}Error: {ex.body}")
                messages = self._runtime.state.messages
                if messages and messages[-1].role == "user":
                    print(f"{self._LINE_PREFIX}Your message was saved; use /retry to ask again")
            except ChatRuntimeError as ex:
                logger.error(f"Request failed: {ex}")

    def print_transcript(self) -> None:
        state = self._runtime.state
        for message in state.messages:
            content = state.displayed_content(message.id)
            marker = ""
            count = state.variant_count(message.id)
            if count:
                marker = f" [{state.selection.get(message.id, 0)}/{count}]"
            print(f"#{message.id} {message.role}{marker}: {content}")

    async def _on_help(self) -> None:
        print(f"{self._LINE_PREFIX}Available commands:")
        print(f"{self._LINE_PREFIX}- /help")
        print(f"{self._LINE_PREFIX}- /variant new | next | prev | commit | discard | edit <variant_id> <text>")
        print(f"{self._LINE_PREFIX}- /retry")
        print(f"{self._LINE_PREFIX}- /continue")
        print(f"{self._LINE_PREFIX}- /context")
        print(f"{self._LINE_PREFIX}- /older")
        print(f"{self._LINE_PREFIX}- /message edit <id> <text> | delete <id>")
        print(f"{self._LINE_PREFIX}- /summary <text>")
        print(f"{self._LINE_PREFIX}- /notes <text>")

    def _on_unknown_command(self, trimmed: str) -> None:
        print(f"{self._LINE_PREFIX}Unknown local command: {trimmed}")

    async def _handle_variant_command(self, command: str) -> None:
        parts = command.split(maxsplit=3)
        action = parts[1] if len(parts) > 1 else "new"
        variants = self._runtime.variants
        message_id = self._runtime.state.latest_assistant_id()
        if message_id is None:
            print(f"{self._LINE_PREFIX}No assistant message yet")
            return

        if action == "new":
            print(self._LINE_PREFIX, end="", flush=True)
            result = await variants.generate(message_id, temperature=self._temperature)
            if result is None:
                print("a variant is already generating")
            else:
                print()
        elif action in ("next", "prev"):
            index = variants.navigate(message_id, Direction(action))
            self._print_selection(message_id, index)
        elif action == "commit":
            committed = await variants.commit(message_id)
            print(f"{self._LINE_PREFIX}{'Committed' if committed else 'Original already selected'}")
        elif action == "discard":
            await variants.discard_all(message_id)
            print(f"{self._LINE_PREFIX}Variants discarded")
        elif action == "edit" and len(parts) == 4:
            try:
                variant_id = int(parts[2])
            except ValueError:
                print(f"{self._LINE_PREFIX}Usage: /variant edit <variant_id> <text>")
                return
            await variants.edit_variant(message_id, variant_id, parts[3])
        else:
            print(f"{self._LINE_PREFIX}Usage: /variant new | next | prev | commit | discard | edit <variant_id> <text>")

    def _print_selection(self, message_id: int, index: int) -> None:
        state = self._runtime.state
        count = state.variant_count(message_id)
        print(f"{self._LINE_PREFIX}[{index}/{count}] {state.displayed_content(message_id)}")

    async def _handle_retry(self) -> None:
        await self._stream_reply(self._runtime.turns.retry_last())

    async def _handle_continue(self) -> None:
        await self._stream_reply(self._runtime.turns.continue_last())

    async def _stream_reply(self, request: Awaitable[TurnResult]) -> None:
        print(self._LINE_PREFIX, end="", flush=True)
        self._streamed = False
        result = await request
        if not self._streamed and result.status == StreamStatus.DONE:
            print(result.content, end="")
        if result.partial_error:
            print(f"\n{self._LINE_PREFIX}[{result.partial_error}]")
        print()

    async def _handle_context(self) -> None:
        turns = self._runtime.turns
        result = turns.truncate_history("")
        loaded = len(result.messages) - 1 + result.removed_count
        print(
            f"{self._LINE_PREFIX}{loaded - result.removed_count} of {loaded} loaded messages fit the "
            f"{turns.truncation_limit:,} character budget ({total_characters(result.messages):,} chars)"
        )
        if result.was_truncated:
            print(f"{self._LINE_PREFIX}The oldest {result.removed_count} would be dropped from the next request")

    async def _handle_older(self) -> None:
        older = await self._runtime.controller.load_older()
        print(f"{self._LINE_PREFIX}Loaded {len(older)} older messages")

    async def _handle_message_command(self, command: str) -> None:
        parts = command.split(maxsplit=3)
        try:
            action, message_id = parts[1], int(parts[2])
        except (IndexError, ValueError):
            print(f"{self._LINE_PREFIX}Usage: /message edit <id> <text> | delete <id>")
            return
        if action == "edit" and len(parts) == 4:
            await self._runtime.controller.edit_message(message_id, parts[3])
        elif action == "delete":
            await self._runtime.controller.delete_message(message_id)
        else:
            print(f"{self._LINE_PREFIX}Usage: /message edit <id> <text> | delete <id>")

    async def _handle_session_command(self, command: str) -> None:
        name, _, text = command.partition(" ")
        if name == "/summary":
            await self._runtime.controller.update_summary(text.strip())
            print(f"{self._LINE_PREFIX}Summary saved")
        else:
            await self._runtime.controller.update_notes(text.strip())
            print(f"{self._LINE_PREFIX}Notes saved")
