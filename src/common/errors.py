# ABOUTME: Declares the error taxonomy raised by the study-time engines.
# ABOUTME: Every error is unrecoverable inside a unit; batch wrappers decide what to do next.

from __future__ import annotations

from typing import Any, Optional


class StudyTimeError(Exception):
    """Base class for all engine errors."""


class MalformedEventError(StudyTimeError):
    """Event batch is out of order, duplicated, or falls outside its session window."""

    def __init__(self, message: str, session_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class InvalidTransitionError(StudyTimeError):
    """Requested status change is not allowed by the transition table."""

    def __init__(self, current: Any, requested: Any, subject: Optional[str] = None) -> None:
        label = f" for {subject}" if subject else ""
        super().__init__(f"Cannot transition{label} from '{current.value}' to '{requested.value}'.")
        self.current = current
        self.requested = requested
        self.subject = subject


class InvariantViolationError(StudyTimeError):
    """Aggregated durations are inconsistent; the unit must not be persisted."""


class ConfigurationError(StudyTimeError):
    """A policy value is missing, unknown, or out of range."""
