from __future__ import annotations

import json
import re
from typing import Any

_API_KEY_MESSAGE_PATTERN = re.compile(r"(api\s*key\s*:\s*)(\S+)", re.IGNORECASE)
_KEEP_TAIL = 4

_TOKEN_PATTERN = re.compile(r"(?:(?:sk|pk|rk|ak)_[A-Za-z0-9]{16,}|[A-Za-z0-9]{24,})")
_BEARER_PATTERN = re.compile(r"(Authorization:\s*Bearer\s+)([A-Za-z0-9._\-]+)", re.IGNORECASE)
_DB_URL_PATTERN = re.compile(r"(postgres(?:ql)?://)([^:\n\r@]+):([^@\n\r]+)@", re.IGNORECASE)

_REDACTED = "****REDACTED****"

STREAM_INTERRUPTED_MESSAGE = "The AI stream was interrupted. Partial response was saved if available."


def _mask_key(match: re.Match[str]) -> str:
    prefix, key = match.group(1), match.group(2)
    if len(key) <= _KEEP_TAIL:
        return prefix + "****"
    return prefix + "*" * (len(key) - _KEEP_TAIL) + key[-_KEEP_TAIL:]


def sanitize_error_message(message: str) -> str:
    """Mask ``api key: <value>`` so only the last four characters remain visible."""
    if not message:
        return ""
    return _API_KEY_MESSAGE_PATTERN.sub(_mask_key, message)


def extract_useful_error(raw: str) -> str:
    if not raw:
        return ""
    message = raw.strip()
    message = re.sub(r"^\[[^\]]+\]\s*", "", message)
    if re.search(r"input\s*stream", message, re.IGNORECASE):
        return STREAM_INTERRUPTED_MESSAGE
    auth = re.search(r"Authentication Fails[\s\S]*$", message, re.IGNORECASE)
    if auth:
        return auth.group(0).strip()
    idx = message.rfind(":")
    if idx != -1 and idx + 1 < len(message):
        return message[idx + 1 :].strip()
    return message


def extract_error_from_response(data: Any, status_text: str | None = None) -> str:
    """Pick the most useful error string out of a decoded error body."""
    raw: Any = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            raw = error.get("message")
        elif error:
            raw = error
        if not raw:
            raw = data.get("raw_text")
    elif isinstance(data, str) and data.strip():
        raw = data
    if not raw:
        raw = status_text or "Unknown error"
    return sanitize_error_message(extract_useful_error(str(raw)))


def _mask_token(match: re.Match[str]) -> str:
    token = match.group(0)
    if len(token) <= 8:
        return "****"
    return token[:4] + _REDACTED + token[-4:]


def redact_string(value: Any) -> str:
    """Best-effort removal of credentials from text destined for logs."""
    if value is None:
        return ""
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    text = _BEARER_PATTERN.sub(lambda m: m.group(1) + _REDACTED, text)
    text = _TOKEN_PATTERN.sub(_mask_token, text)
    text = _DB_URL_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}:{_REDACTED}@", text)
    return text
