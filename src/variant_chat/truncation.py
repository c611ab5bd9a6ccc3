from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

DEFAULT_TRUNCATION_LIMIT = 150_000
TRUNCATION_MIN = 30_000
TRUNCATION_MAX = 320_000

TRUNCATION_NOTE = (
    "\n\n<truncation_note>The earliest messages of this conversation have been truncated "
    "for token count reasons, please see summary section above for any lost detail"
    "</truncation_note>"
)


@dataclass(frozen=True)
class TruncationResult:
    messages: list[dict[str, Any]] = field(default_factory=list)
    was_truncated: bool = False
    removed_count: int = 0


def clamp_truncation_limit(value: object) -> int:
    if value is None or value == "":
        return DEFAULT_TRUNCATION_LIMIT
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return DEFAULT_TRUNCATION_LIMIT
    return max(TRUNCATION_MIN, min(TRUNCATION_MAX, parsed))


def _length(message: Mapping[str, Any]) -> int:
    content = message.get("content", "")
    return len(content) if isinstance(content, str) else len(str(content))


def total_characters(messages: Sequence[Mapping[str, Any]]) -> int:
    return sum(_length(m) for m in messages)


def truncate_messages(messages: Sequence[Mapping[str, Any]], budget: int) -> TruncationResult:
    """Drop the oldest non-system messages until the total content length fits ``budget``.

    ``messages[0]`` is always kept. Candidates are taken newest first and the walk
    stops at the first message that would overflow, so the kept tail is contiguous.
    """
    original = list(messages)
    total = total_characters(original)
    if total <= budget:
        return TruncationResult(messages=original)

    logger.info(f"Truncation: total characters {total:,} exceed limit {budget:,}")

    if not original:
        logger.warning("Truncation: no system message found, returning messages unchanged")
        return TruncationResult(messages=original)

    system_message = original[0]
    running = _length(system_message)
    kept_reversed: list[Mapping[str, Any]] = []
    for candidate in reversed(original[1:]):
        size = _length(candidate)
        if running + size > budget:
            break
        kept_reversed.append(candidate)
        running += size

    kept = [system_message, *reversed(kept_reversed)]
    removed_count = len(original) - len(kept)
    if removed_count > 0:
        logger.info(
            f"Truncation: removed {removed_count} oldest messages, "
            f"final character count {running:,} (limit {budget:,})"
        )
    return TruncationResult(messages=kept, was_truncated=removed_count > 0, removed_count=removed_count)


def with_truncation_note(result: TruncationResult) -> list[dict[str, Any]]:
    """Return the outgoing list for a single request, advisory appended to a copy of the system message."""
    if not result.was_truncated or not result.messages:
        return list(result.messages)
    system_copy = dict(result.messages[0])
    system_copy["content"] = str(system_copy.get("content", "")) + TRUNCATION_NOTE
    return [system_copy, *result.messages[1:]]
