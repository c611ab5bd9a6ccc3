import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from variant_chat.redaction import redact_string

_CONSOLE_FORMAT = "<level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    """Logs go to stderr so they never interleave with the streamed reply on stdout."""

    def __init__(self, colorize: bool | None = None):
        self._colorize = colorize

    def register(self, level: str) -> None:
        logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT, colorize=self._colorize)

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    def __init__(self, path: str, rotation: str = "10 MB", retention: int = 3):
        self._path = Path(path)
        self._rotation = rotation
        self._retention = retention

    def register(self, level: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(self._path),
            level=level,
            format=_FILE_FORMAT,
            rotation=self._rotation,
            retention=self._retention,
            encoding="utf-8",
        )

    def describe(self, level: str) -> str:
        return f"file ({self._path}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}


def redact_record(record: dict) -> None:
    """loguru patcher: scrub tokens and connection-string passwords before any sink sees them."""
    record["message"] = redact_string(record["message"])


def setup_logging(level: str, consumers: list[dict[str, Any]]) -> list[str]:
    """Install the redacting patcher and one sink per consumer entry.

    Entries come from ``AppConfig.log_consumers``; each names a ``type`` and may
    override ``level``. Returns a description of every registered sink.
    """
    logger.remove()
    logger.configure(patcher=redact_record)

    descriptions: list[str] = []
    for entry in consumers:
        sink_type = entry.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        sink_level = entry.get("level", level)
        try:
            consumer = cls(**{k: v for k, v in entry.items() if k not in ("type", "level")})
        except TypeError as ex:
            logger.warning(f"Invalid settings for {sink_type} log consumer: {ex}")
            continue
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
