from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from variant_chat.models import SelectionRecord
from variant_chat.persistence.store import SelectionDatabase


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


@runtime_checkable
class SelectionStore(Protocol):
    def get(self, session_id: int | str, message_id: int) -> SelectionRecord | None: ...

    def set(self, session_id: int | str, message_id: int, index: int, count: int) -> None: ...

    def clear(self, session_id: int | str, message_id: int) -> None: ...


class InMemorySelectionStore:
    def __init__(self) -> None:
        self._records: dict[tuple[str, int], SelectionRecord] = {}

    def get(self, session_id: int | str, message_id: int) -> SelectionRecord | None:
        return self._records.get((str(session_id), message_id))

    def set(self, session_id: int | str, message_id: int, index: int, count: int) -> None:
        self._records[(str(session_id), message_id)] = SelectionRecord(index=max(0, index), count=max(0, count))

    def clear(self, session_id: int | str, message_id: int) -> None:
        self._records.pop((str(session_id), message_id), None)


class SqliteSelectionStore:
    def __init__(self, db: SelectionDatabase):
        self._db = db

    def get(self, session_id: int | str, message_id: int) -> SelectionRecord | None:
        row = self._db.execute(
            """
            SELECT selected_index, variant_count
            FROM variant_selections
            WHERE session_id = ? AND message_id = ?
            LIMIT 1
            """,
            (str(session_id), message_id),
        ).fetchone()
        if row is None:
            return None
        return SelectionRecord(index=int(row["selected_index"]), count=int(row["variant_count"]))

    def set(self, session_id: int | str, message_id: int, index: int, count: int) -> None:
        with self._db.transaction():
            self._db.execute(
                """
                INSERT INTO variant_selections (session_id, message_id, selected_index, variant_count, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(session_id, message_id) DO UPDATE SET
                    selected_index = excluded.selected_index,
                    variant_count = excluded.variant_count,
                    updated_at = excluded.updated_at
                """,
                (str(session_id), message_id, max(0, index), max(0, count), utc_now()),
            )

    def clear(self, session_id: int | str, message_id: int) -> None:
        with self._db.transaction():
            self._db.execute(
                "DELETE FROM variant_selections WHERE session_id = ? AND message_id = ?",
                (str(session_id), message_id),
            )
