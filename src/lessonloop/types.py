"""Core data records shared by the pipeline, the dispatcher and the workers."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from lessonloop.errors import RequestValidationError

if TYPE_CHECKING:
    from lessonloop.bodies import CandidateBody
    from lessonloop.preferences import PreferenceDelta, PreferenceSnapshot

type WorkerName = str


class Format(StrEnum):
    TEXT = "text"
    VIDEO = "video"
    FLASHCARDS = "flashcards"

    @classmethod
    def coerce(cls, value: object) -> Format | None:
        """Return the matching format, or None for unknown or empty values."""
        if isinstance(value, Format):
            return value
        if not isinstance(value, str):
            return None
        normalized = value.strip().casefold()
        if normalized in {"flashcard", "cards"}:
            normalized = "flashcards"
        if normalized == "videos":
            normalized = "video"
        try:
            return cls(normalized)
        except ValueError:
            return None


class ExplanationStyle(StrEnum):
    CONCISE = "concise"
    DETAILED = "detailed"
    BALANCED = "balanced"


class Pace(StrEnum):
    SLOW = "slow"
    NORMAL = "normal"
    FAST = "fast"


class Complexity(StrEnum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class EnvelopeKind(StrEnum):
    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ErrorKind(StrEnum):
    RECIPIENT_NOT_FOUND = "recipient_not_found"
    WORKER_FAULT = "worker_fault"
    TIMEOUT = "timeout"


class EvaluationSource(StrEnum):
    JUDGE = "judge"
    HEURISTIC = "heuristic"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class PriorTurn:
    """One earlier message of the conversation."""

    is_user: bool
    message: str


@dataclass(frozen=True)
class LessonContext:
    """Lesson the request is about."""

    title: str = ""
    topic: str = ""
    description: str = ""


@dataclass(frozen=True)
class TeachingRequest:
    """Immutable input to one teaching cycle."""

    user_id: str
    message: str
    lesson: LessonContext | None = None
    history: tuple[PriorTurn, ...] = ()

    def recent_history(self, limit: int = 6) -> tuple[PriorTurn, ...]:
        if limit <= 0:
            return ()
        return self.history[-limit:]


def validate_request(request: object) -> TeachingRequest:
    """Check a teaching request before any worker sees it."""

    if not isinstance(request, TeachingRequest):
        raise RequestValidationError(f"expected TeachingRequest, got {type(request).__name__}")
    if not isinstance(request.user_id, str) or not request.user_id.strip():
        raise RequestValidationError("user_id must be a non-empty string")
    if not isinstance(request.message, str) or not request.message.strip():
        raise RequestValidationError("message must be a non-empty string")
    if request.lesson is not None and not isinstance(request.lesson, LessonContext):
        raise RequestValidationError("lesson must be a LessonContext")
    if not isinstance(request.history, tuple):
        raise RequestValidationError("history must be a tuple of PriorTurn")
    for turn in request.history:
        if not isinstance(turn, PriorTurn) or not isinstance(turn.message, str):
            raise RequestValidationError("history entries must be PriorTurn with a text message")
    return request


@dataclass(frozen=True)
class Envelope:
    """One routed message. Never mutated after creation."""

    sender: WorkerName
    recipient: WorkerName
    kind: EnvelopeKind
    payload: Any
    priority: Priority = Priority.MEDIUM
    sent_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class WorkMeta:
    elapsed_ms: float = 0.0
    worker: WorkerName = ""


@dataclass(frozen=True)
class WorkResult:
    """Uniform return contract of every worker call."""

    ok: bool
    data: Any = None
    error: ErrorKind | None = None
    detail: str = ""
    meta: WorkMeta = field(default_factory=WorkMeta)

    @classmethod
    def success(cls, data: Any, *, worker: WorkerName = "", elapsed_ms: float = 0.0) -> WorkResult:
        return cls(ok=True, data=data, meta=WorkMeta(elapsed_ms=elapsed_ms, worker=worker))

    @classmethod
    def failure(
        cls,
        error: ErrorKind,
        detail: str = "",
        *,
        worker: WorkerName = "",
        elapsed_ms: float = 0.0,
    ) -> WorkResult:
        return cls(ok=False, error=error, detail=detail, meta=WorkMeta(elapsed_ms=elapsed_ms, worker=worker))


@dataclass(frozen=True)
class WorkerStatus:
    name: WorkerName
    busy: bool
    queue_depth: int


@dataclass(frozen=True)
class CriterionScore:
    criterion: str
    weight: int
    score: float
    feedback: str = ""


def clamp_score(value: float) -> float:
    """Bound a score to 0..100. NaN and infinities are rejected, not clamped."""
    value = float(value)
    if not math.isfinite(value):
        raise ValueError(f"score must be a finite number, got {value}")
    return max(0.0, min(100.0, value))


@dataclass(frozen=True)
class Evaluation:
    """Judgement of one candidate. Each attempt gets its own."""

    total_score: float
    passed: bool
    breakdown: tuple[CriterionScore, ...]
    improvements: tuple[str, ...] = ()
    overall_feedback: str = ""
    source: EvaluationSource = EvaluationSource.JUDGE

    @classmethod
    def from_breakdown(
        cls,
        breakdown: Sequence[CriterionScore],
        *,
        pass_threshold: float,
        improvements: Sequence[str] = (),
        overall_feedback: str = "",
        source: EvaluationSource = EvaluationSource.JUDGE,
    ) -> Evaluation:
        weighted = sum(item.weight * clamp_score(item.score) for item in breakdown) / 100
        total = round(clamp_score(weighted), 2)
        return cls(
            total_score=total,
            passed=total >= pass_threshold,
            breakdown=tuple(breakdown),
            improvements=tuple(improvements),
            overall_feedback=overall_feedback,
            source=source,
        )

    @classmethod
    def unavailable(
        cls,
        weights: Sequence[tuple[str, int]],
        *,
        pass_threshold: float,
        reason: str,
    ) -> Evaluation:
        """Zero-score evaluation used when the judge could not be reached."""
        breakdown = [CriterionScore(criterion=name, weight=weight, score=0.0, feedback=reason) for name, weight in weights]
        return cls.from_breakdown(
            breakdown,
            pass_threshold=pass_threshold,
            improvements=("Regenerate the response; the previous attempt could not be evaluated.",),
            overall_feedback=reason,
            source=EvaluationSource.UNAVAILABLE,
        )

    @property
    def weight_total(self) -> int:
        return sum(item.weight for item in self.breakdown)


@dataclass(frozen=True)
class Candidate:
    """One generated artifact for one attempt."""

    format: Format
    body: CandidateBody
    attempt: int
    worker: WorkerName = ""

    @property
    def is_fallback(self) -> bool:
        return bool(getattr(self.body, "fallback", False))

    def render_text(self) -> str:
        return self.body.render_text()


@dataclass(frozen=True)
class GenerateCall:
    request: TeachingRequest
    directives: str
    attempt: int
    prior_feedback: Evaluation | None = None


@dataclass(frozen=True)
class EvaluateCall:
    candidate: Candidate
    request: TeachingRequest
    preferences: PreferenceSnapshot


@dataclass(frozen=True)
class DetectCall:
    user_id: str
    message: str
    history: tuple[PriorTurn, ...]
    current: PreferenceSnapshot


@dataclass(frozen=True)
class Detection:
    """Detector output: what to change, and which format to use now."""

    delta: PreferenceDelta
    recommended_format: Format
    is_stuck: bool = False
    confidence: int = 50
    rejected_formats: frozenset[Format] = frozenset()
    reasoning: str = ""


@dataclass(frozen=True)
class TeachingResult:
    """Terminal output of one cycle, owned by the caller."""

    candidate: Candidate
    evaluation: Evaluation
    attempts_used: int
    preference_changed: bool
    recommended_format: Format
    preferences: PreferenceSnapshot
    worker: WorkerName
    is_stuck: bool = False

    @property
    def passed(self) -> bool:
        return self.evaluation.passed
