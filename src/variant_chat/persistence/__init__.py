from variant_chat.persistence.selection_store import InMemorySelectionStore, SelectionStore, SqliteSelectionStore
from variant_chat.persistence.store import SelectionDatabase

__all__ = [
    "InMemorySelectionStore",
    "SelectionDatabase",
    "SelectionStore",
    "SqliteSelectionStore",
]
