from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from variant_chat.truncation import clamp_truncation_limit

TOKEN_ENV_VAR = "VARIANT_CHAT_API_TOKEN"
DEFAULT_LOG_FILE = ".variant_chat/variant_chat.log"


@dataclass
class RuntimeEnv:
    api_token: str | None
    token_env_var: str


@dataclass
class AppConfig:
    base_url: str
    session_id: int | None
    stream: bool
    temperature: float
    max_tokens: int
    truncation_limit: int
    page_size: int
    refresh_delay_seconds: float
    selection_db_path: str
    log_level: str
    log_file: str
    log_consumers: list[dict]


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _clamped_int(value: object, default: int, low: int, high: int) -> int:
    try:
        parsed = int(value) if value is not None else default
    except (TypeError, ValueError):
        parsed = default
    return max(low, min(high, parsed))


def _clamped_float(value: object, default: float, low: float, high: float) -> float:
    try:
        parsed = float(value) if value is not None else default
    except (TypeError, ValueError):
        parsed = default
    return max(low, min(high, parsed))


def default_log_consumers(log_file: str) -> list[dict]:
    return [{"type": "console"}, {"type": "file", "path": log_file}]


def parse_app_config(config: dict) -> AppConfig:
    session_id = str(config.get("SessionId", "")).strip()
    log_file = str(config.get("LogFile") or DEFAULT_LOG_FILE)
    return AppConfig(
        base_url=str(config.get("BaseUrl", "http://localhost:3000")).rstrip("/"),
        session_id=int(session_id) if session_id else None,
        stream=_to_bool(config.get("Stream", True), default=True),
        temperature=_clamped_float(config.get("Temperature"), 0.7, 0.0, 2.0),
        max_tokens=_clamped_int(config.get("MaxTokens"), 4096, 256, 8192),
        truncation_limit=clamp_truncation_limit(config.get("TruncationLimit")),
        page_size=_clamped_int(config.get("PageSize"), 50, 1, 500),
        refresh_delay_seconds=float(config.get("RefreshDelaySeconds", 0.5)),
        selection_db_path=str(config.get("SelectionDbPath", ".variant_chat/selections.db")),
        log_level=str(config.get("LogLevel", "INFO")).upper(),
        log_file=log_file,
        log_consumers=config.get("LogConsumers") or default_log_consumers(log_file),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        api_token=os.environ.get(TOKEN_ENV_VAR) or None,
        token_env_var=TOKEN_ENV_VAR,
    )
