"""Application-level exception types for lessonloop."""

from __future__ import annotations


class LessonLoopError(Exception):
    """Base exception for lessonloop."""


class ConfigurationError(LessonLoopError):
    """Base exception for configuration and startup validation errors."""


class RubricError(ConfigurationError):
    """Raised when rubric weights do not sum to 100."""


class StoreUnavailableError(LessonLoopError):
    """Raised when the preference store cannot be read."""


class RequestValidationError(LessonLoopError):
    """Raised when a teaching request is malformed."""


class UnsupportedPayloadError(LessonLoopError):
    """Raised by a worker for a payload it does not handle."""
