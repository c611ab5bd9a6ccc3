from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from variant_chat.api_client import ChatApiClient, create_http_client
from variant_chat.app_config import AppConfig, RuntimeEnv
from variant_chat.conversation_state import ConversationState
from variant_chat.events import EventEmitter
from variant_chat.logging_config import setup_logging
from variant_chat.models import ConversationSession
from variant_chat.persistence import SelectionDatabase, SelectionStore, SqliteSelectionStore
from variant_chat.reconciliation import Reconciler
from variant_chat.session_controller import SessionController
from variant_chat.turn_engine import TurnEngine
from variant_chat.variant_manager import VariantManager


@dataclass
class ConversationRuntime:
    state: ConversationState
    variants: VariantManager
    reconciler: Reconciler
    controller: SessionController
    turns: TurnEngine

    def close(self) -> None:
        self.reconciler.cancel_pending()
        for message_id in list(self.state.variant_states):
            self.variants.abort(message_id)
        self.turns.abort()


@dataclass
class AppRuntime:
    app: AppConfig
    api: ChatApiClient
    events: EventEmitter
    selection_db: SelectionDatabase
    selections: SelectionStore
    log_descriptions: list[str]

    def open_session(self, session_id: int) -> ConversationRuntime:
        """Build the per-conversation object graph. Nothing here outlives the conversation."""
        state = ConversationState(session=ConversationSession(id=session_id))
        variants = VariantManager(state, self.api, self.selections, events=self.events, stream=self.app.stream)
        reconciler = Reconciler(state, self.selections, variants, events=self.events)
        controller = SessionController(state, self.api, reconciler, page_size=self.app.page_size)
        turns = TurnEngine(
            state=state,
            api=self.api,
            variants=variants,
            reconciler=reconciler,
            fetch_session=controller.fetch_current,
            stream=self.app.stream,
            temperature=self.app.temperature,
            max_tokens=self.app.max_tokens,
            truncation_limit=self.app.truncation_limit,
            refresh_delay_seconds=self.app.refresh_delay_seconds,
            events=self.events,
        )
        return ConversationRuntime(
            state=state,
            variants=variants,
            reconciler=reconciler,
            controller=controller,
            turns=turns,
        )

    async def aclose(self) -> None:
        await self.api.aclose()
        self.selection_db.close()


def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    db_path = Path(app.selection_db_path)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    selection_db = SelectionDatabase(str(db_path))

    events = EventEmitter()
    api = ChatApiClient(create_http_client(app.base_url, env.api_token), events=events)
    return AppRuntime(
        app=app,
        api=api,
        events=events,
        selection_db=selection_db,
        selections=SqliteSelectionStore(selection_db),
        log_descriptions=log_descriptions,
    )
