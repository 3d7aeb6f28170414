from __future__ import annotations


class ChatRuntimeError(Exception):
    pass


class ConfigurationError(ChatRuntimeError):
    """A required backend base URL is missing."""


class NoThreadSelectedError(ChatRuntimeError):
    pass


class TransportError(ChatRuntimeError):
    """Non-2xx response or network failure talking to the backend."""

    def __init__(self, message: str, *, status: int | None = None, operation: str = ""):
        self.status = status
        self.message = message
        self.operation = operation
        super().__init__(self._render())

    def _render(self) -> str:
        prefix = f"{self.operation} " if self.operation else ""
        if self.status is None:
            return f"{prefix}network error: {self.message}"
        return f"{prefix}HTTP {self.status}: {self.message}"
