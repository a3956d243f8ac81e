"""Error taxonomy for log replay, graph construction and optimization."""
from __future__ import annotations

from typing import Any, Dict, Optional


class SlamError(RuntimeError):
    """Base class; carries a small context dict (channel, timestamp, ids)."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def with_context(self, **context: Any) -> "SlamError":
        for key, value in context.items():
            if value is not None:
                self.context.setdefault(key, value)
        return self

    def __str__(self) -> str:
        if not self.context:
            return self.message
        ctx = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({ctx})"


class CorruptRecord(SlamError):
    """A log record or its payload could not be decoded."""


class InvalidReference(SlamError):
    """An edge referenced a node index that does not exist."""


class DegenerateHomography(SlamError):
    """A tag homography is too close to singular to recover a pose."""


class SingularSystem(SlamError):
    """The optimizer's normal equations are not positive definite."""

    def __init__(self, message: str, report: Optional[Any] = None, **context: Any):
        super().__init__(message, **context)
        self.report = report


class LogSourceError(SlamError):
    """Raised when a log source cannot be constructed or opened."""


class ConfigError(SlamError):
    """Raised for unreadable or invalid configuration files."""
