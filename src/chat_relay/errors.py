"""Exception hierarchy shared across the relay."""
from __future__ import annotations


class RelayError(Exception):
    """Base class for all relay errors."""


class StoreError(RelayError):
    """Persisted conversation data is unusable (bad import payload, etc.)."""


class LLMError(RelayError):
    """The chat-completion backend failed or returned an unusable answer."""

    def __init__(self, message: str, *, status: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class BackupError(RelayError):
    """A backup could not be found, read or restored."""


class AuthError(RelayError):
    """User management or login step rejected."""


class ConfigError(RelayError):
    """A configuration update was rejected; ``problems`` lists each reason."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("; ".join(problems))
        self.problems = list(problems)
