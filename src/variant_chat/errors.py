from __future__ import annotations


class ChatRuntimeError(Exception):
    """Base class for runtime errors raised by variant_chat."""


class TransportError(ChatRuntimeError):
    """Network failure talking to the backend. Logged, never shown as a user-facing error."""


class UpstreamError(ChatRuntimeError):
    """Non-success response from the provider. ``body`` is already sanitized."""

    def __init__(self, body: str, status: int | None = None):
        super().__init__(body)
        self.body = body
        self.status = status

    def __str__(self) -> str:
        if self.status is None:
            return self.body
        return f"{self.body} (status {self.status})"


class ParseError(ChatRuntimeError):
    """A stream frame could not be decoded. Always skipped by the consumer."""


class PersistenceError(ChatRuntimeError):
    """A server-side mutation failed. Callers roll back to their last snapshot."""

    def __init__(self, operation: str, status: int | None = None, detail: str = ""):
        message = f"{operation} failed"
        if status is not None:
            message += f" (status {status})"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.operation = operation
        self.status = status
        self.detail = detail


class PolicyViolation(ChatRuntimeError):
    """Request rejected locally before anything was sent."""
