"""Retry-gated teaching pipeline."""

from __future__ import annotations

import asyncio
import threading
import uuid
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any

from loguru import logger

from lessonloop.bus import Dispatcher
from lessonloop.config import Settings, load_settings
from lessonloop.directives import DirectiveCache
from lessonloop.errors import StoreUnavailableError
from lessonloop.logging_utils import bind_cycle, unbind_cycle
from lessonloop.models import ModelClient, build_model
from lessonloop.parsing import fallback_body
from lessonloop.preferences import PreferenceDelta, PreferenceSnapshot, changed_fields
from lessonloop.registry import WorkerRegistry
from lessonloop.store import ContentSink, PreferenceStore
from lessonloop.types import (
    Candidate,
    DetectCall,
    Detection,
    EnvelopeKind,
    EvaluateCall,
    Evaluation,
    Format,
    GenerateCall,
    LessonContext,
    Priority,
    TeachingRequest,
    TeachingResult,
    WorkerName,
    WorkerStatus,
    WorkResult,
    validate_request,
)
from lessonloop.workers import (
    FlashcardWorker,
    FormatPolicy,
    JudgeWorker,
    PreferenceDetectorWorker,
    Rubric,
    TextWorker,
    VideoWorker,
    build_content_workers,
)
from lessonloop.workers.content import is_first_explanation

ORCHESTRATOR: WorkerName = "Orchestrator"
DETECTOR: WorkerName = PreferenceDetectorWorker.default_name
JUDGE: WorkerName = JudgeWorker.default_name
PREFERENCES_CHANGED = "preferences_changed"

FORMAT_WORKERS: Mapping[Format, WorkerName] = {
    Format.TEXT: TextWorker.default_name,
    Format.VIDEO: VideoWorker.default_name,
    Format.FLASHCARDS: FlashcardWorker.default_name,
}


class CycleState(StrEnum):
    INIT = "init"
    DETECT_PREFERENCES = "detect_preferences"
    UPDATE_PREFERENCES = "update_preferences"
    SELECT_WORKER = "select_worker"
    GENERATE = "generate"
    EVALUATE = "evaluate"
    RETRY = "retry"
    ACCEPT = "accept"
    GIVE_UP = "give_up"


def select_worker(content_format: Format | str | None) -> WorkerName:
    """Map a format to its content worker; unknown or missing formats get text."""
    return FORMAT_WORKERS[Format.coerce(content_format) or Format.TEXT]


@dataclass
class UserActivity:
    """Per-user counters kept for the lifetime of a pipeline."""

    cycles: int = 0
    stuck_count: int = 0
    preference_changes: int = 0


@dataclass
class _SharedCycle:
    task: asyncio.Task[TeachingResult]
    waiters: int = 0


class Pipeline:
    """Run teaching cycles: detect, update, generate, evaluate, retry.

    Build one per process and pass it to callers. Workers are reached only
    through the dispatcher, so any of them can be replaced by registering a
    new worker under the same name.
    """

    def __init__(
        self,
        *,
        store: PreferenceStore,
        sink: ContentSink,
        settings: Settings | None = None,
        model: ModelClient | None = None,
        registry: WorkerRegistry | None = None,
    ) -> None:
        self._settings = settings or load_settings()
        self._store = store
        self._sink = sink
        self._model = model
        self._rubric = Rubric.from_weights(self._settings.rubric_weights)
        self._policy = FormatPolicy(
            precedence=self._settings.format_precedence,
            substitutions=dict(self._settings.format_substitutions),
        )
        self._registry = registry if registry is not None else WorkerRegistry()
        self._dispatcher = Dispatcher(
            self._registry,
            history_cap=self._settings.history_cap,
            default_timeout_seconds=self._settings.worker_timeout_seconds,
        )
        self._directives = DirectiveCache(self._settings.directive_cache_size)
        self._stats_lock = threading.Lock()
        self._cycles = 0
        self._cycles_passed = 0
        self._total_attempts = 0
        self._score_sum = 0.0
        self._activity: dict[str, UserActivity] = {}
        self._first_explanations: dict[tuple[str, LessonContext | None], _SharedCycle] = {}

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def registry(self) -> WorkerRegistry:
        return self._registry

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def rubric(self) -> Rubric:
        return self._rubric

    @property
    def directives(self) -> DirectiveCache:
        return self._directives

    def register_default_workers(self) -> Pipeline:
        """Register the three content workers, the judge and the detector."""

        model = self._model or build_model(self._settings)
        self._model = model
        for worker in build_content_workers(model):
            self._registry.register(worker)
        self._registry.register(
            JudgeWorker(model, rubric=self._rubric, pass_threshold=self._settings.pass_threshold)
        )
        self._registry.register(PreferenceDetectorWorker(model, policy=self._policy))
        return self

    def run(self, request: TeachingRequest) -> TeachingResult:
        """Blocking wrapper around `run_teaching_cycle`."""
        return asyncio.run(self.run_teaching_cycle(request))

    async def run_teaching_cycle(self, request: TeachingRequest) -> TeachingResult:
        """Run one cycle and always return a result once preferences are read.

        Raises `RequestValidationError` for a malformed request, before any
        worker is consulted, and `StoreUnavailableError` when the preference
        store cannot be read. Concurrent first-explanation requests for the
        same user and lesson share one cycle.
        """

        request = validate_request(request)
        if is_first_explanation(request):
            return await self._join_first_explanation(request)
        return await self._bound_cycle(request)

    async def _bound_cycle(self, request: TeachingRequest) -> TeachingResult:
        token = bind_cycle(uuid.uuid4().hex[:12])
        try:
            return await self._run_cycle(request)
        finally:
            unbind_cycle(token)

    async def _join_first_explanation(self, request: TeachingRequest) -> TeachingResult:
        key = (request.user_id, request.lesson)
        shared = self._first_explanations.get(key)
        if shared is None:
            shared = _SharedCycle(asyncio.create_task(self._bound_cycle(request)))
            self._first_explanations[key] = shared
            shared.task.add_done_callback(lambda _: self._first_explanations.pop(key, None))
        else:
            logger.info("cycle.first_explanation.joined user={} waiters={}", request.user_id, shared.waiters)

        shared.waiters += 1
        try:
            return await asyncio.shield(shared.task)
        finally:
            shared.waiters -= 1
            # the last caller to leave takes the cycle down with it
            if shared.waiters == 0 and not shared.task.done():
                shared.task.cancel()

    async def _run_cycle(self, request: TeachingRequest) -> TeachingResult:
        self._enter(CycleState.INIT, user=request.user_id)
        snapshot = await self._read_preferences(request.user_id)

        self._enter(CycleState.DETECT_PREFERENCES)
        detection = await self._detect(request, snapshot)

        preference_changed = False
        if not detection.delta.is_empty:
            self._enter(CycleState.UPDATE_PREFERENCES, delta=detection.delta.describe())
            previous = snapshot
            snapshot, preference_changed = await self._update_preferences(request.user_id, snapshot, detection.delta)
            if preference_changed:
                await self._notify_preferences_changed(request.user_id, previous, snapshot)

        directives = self._directives.get_or_render(request.user_id, snapshot, request.lesson, detection.is_stuck)

        content_format = detection.recommended_format
        worker_name = select_worker(content_format)
        self._enter(CycleState.SELECT_WORKER, format=content_format, worker=worker_name)

        candidate, evaluation, attempt = await self._attempts(worker_name, content_format, request, directives, snapshot)
        await self._persist(request, candidate, evaluation)
        self._record(
            request.user_id,
            attempt,
            evaluation,
            is_stuck=detection.is_stuck,
            preference_changed=preference_changed,
        )
        return TeachingResult(
            candidate=candidate,
            evaluation=evaluation,
            attempts_used=attempt,
            preference_changed=preference_changed,
            recommended_format=content_format,
            preferences=snapshot,
            worker=worker_name,
            is_stuck=detection.is_stuck,
        )

    async def _attempts(
        self,
        worker_name: WorkerName,
        content_format: Format,
        request: TeachingRequest,
        directives: str,
        snapshot: PreferenceSnapshot,
    ) -> tuple[Candidate, Evaluation, int]:
        max_attempts = self._settings.max_attempts
        prior_feedback: Evaluation | None = None
        attempt = 1
        while True:
            self._enter(CycleState.GENERATE, attempt=attempt)
            candidate = await self._generate(worker_name, content_format, request, directives, attempt, prior_feedback)
            self._enter(CycleState.EVALUATE, attempt=attempt)
            evaluation = await self._evaluate(candidate, request, snapshot)
            if evaluation.passed:
                self._enter(CycleState.ACCEPT, attempt=attempt, score=evaluation.total_score)
                return candidate, evaluation, attempt
            if attempt >= max_attempts:
                self._enter(CycleState.GIVE_UP, attempt=attempt, score=evaluation.total_score)
                return candidate, evaluation, attempt
            self._enter(CycleState.RETRY, attempt=attempt, score=evaluation.total_score)
            prior_feedback = evaluation
            attempt += 1

    async def _read_preferences(self, user_id: str) -> PreferenceSnapshot:
        try:
            return await self._store.get(user_id)
        except StoreUnavailableError:
            logger.opt(exception=True).error("cycle.store_unavailable user={}", user_id)
            raise
        except Exception as exc:
            logger.opt(exception=True).error("cycle.store_unavailable user={}", user_id)
            raise StoreUnavailableError(f"cannot read preferences for '{user_id}': {exc}") from exc

    async def _detect(self, request: TeachingRequest, snapshot: PreferenceSnapshot) -> Detection:
        call = DetectCall(
            user_id=request.user_id,
            message=request.message,
            history=request.history,
            current=snapshot,
        )
        result = await self._dispatcher.send(ORCHESTRATOR, DETECTOR, call, priority=Priority.HIGH)
        if result.ok and isinstance(result.data, Detection):
            return result.data
        logger.warning("cycle.detect_failed {}", self._describe_failure(result))
        return Detection(delta=PreferenceDelta(), recommended_format=snapshot.format)

    async def _update_preferences(
        self,
        user_id: str,
        snapshot: PreferenceSnapshot,
        delta: PreferenceDelta,
    ) -> tuple[PreferenceSnapshot, bool]:
        """Apply `delta` against the snapshot we read; on conflict retry once without the contested fields."""

        try:
            result = await self._store.apply(user_id, delta, snapshot.change_count)
            if result.applied:
                return result.snapshot, True

            fresh = await self._store.get(user_id)
            contested = changed_fields(snapshot, fresh)
            retry_delta = delta.without(contested).effective_against(fresh)
            if retry_delta.is_empty:
                logger.info("cycle.preferences.superseded user={} contested={}", user_id, sorted(contested))
                return fresh, False

            result = await self._store.apply(user_id, retry_delta, fresh.change_count)
            if result.applied:
                return result.snapshot, True
            logger.warning(
                "cycle.preferences.dropped user={} delta={} change_count={}",
                user_id,
                retry_delta.describe(),
                result.snapshot.change_count,
            )
            return result.snapshot, False
        except Exception:
            logger.opt(exception=True).warning("cycle.preferences.update_failed user={}", user_id)
            return snapshot, False

    async def _notify_preferences_changed(
        self,
        user_id: str,
        before: PreferenceSnapshot,
        after: PreferenceSnapshot,
    ) -> None:
        payload = {
            "event": PREFERENCES_CHANGED,
            "user_id": user_id,
            "change_count": after.change_count,
            "fields": sorted(changed_fields(before, after)),
        }
        results = await self._dispatcher.broadcast(ORCHESTRATOR, payload, kind=EnvelopeKind.NOTIFICATION)
        failed = sorted(name for name, result in results.items() if not result.ok)
        if failed:
            logger.warning("cycle.notify_failed event={} workers={}", PREFERENCES_CHANGED, failed)

    async def _generate(
        self,
        worker_name: WorkerName,
        content_format: Format,
        request: TeachingRequest,
        directives: str,
        attempt: int,
        prior_feedback: Evaluation | None,
    ) -> Candidate:
        call = GenerateCall(request=request, directives=directives, attempt=attempt, prior_feedback=prior_feedback)
        result = await self._dispatcher.send(ORCHESTRATOR, worker_name, call)
        if result.ok and isinstance(result.data, Candidate):
            return result.data
        logger.warning("cycle.generate_failed attempt={} {}", attempt, self._describe_failure(result))
        return Candidate(
            format=content_format,
            body=fallback_body(content_format, request),
            attempt=attempt,
            worker=worker_name,
        )

    async def _evaluate(
        self,
        candidate: Candidate,
        request: TeachingRequest,
        snapshot: PreferenceSnapshot,
    ) -> Evaluation:
        call = EvaluateCall(candidate=candidate, request=request, preferences=snapshot)
        result = await self._dispatcher.send(ORCHESTRATOR, JUDGE, call)
        if result.ok and isinstance(result.data, Evaluation):
            return result.data
        reason = f"evaluation unavailable ({self._describe_failure(result)})"
        logger.warning("cycle.evaluate_failed attempt={} {}", candidate.attempt, self._describe_failure(result))
        return Evaluation.unavailable(
            self._rubric.weights(),
            pass_threshold=self._settings.pass_threshold,
            reason=reason,
        )

    async def _persist(self, request: TeachingRequest, candidate: Candidate, evaluation: Evaluation) -> None:
        try:
            await self._sink.save(request.user_id, request, candidate, evaluation)
        except Exception:
            logger.opt(exception=True).warning("cycle.sink_failed user={}", request.user_id)

    def _record(
        self,
        user_id: str,
        attempts: int,
        evaluation: Evaluation,
        *,
        is_stuck: bool,
        preference_changed: bool,
    ) -> None:
        with self._stats_lock:
            self._cycles += 1
            self._cycles_passed += int(evaluation.passed)
            self._total_attempts += attempts
            self._score_sum += evaluation.total_score
            activity = self._activity.setdefault(user_id, UserActivity())
            activity.cycles += 1
            activity.stuck_count += int(is_stuck)
            activity.preference_changes += int(preference_changed)

    def statistics(self) -> dict[str, Any]:
        """Counters since this pipeline was built."""

        with self._stats_lock:
            cycles = self._cycles
            passed = self._cycles_passed
            attempts = self._total_attempts
            score_sum = self._score_sum
            users = {user_id: asdict(activity) for user_id, activity in sorted(self._activity.items())}
        return {
            "cycles_run": cycles,
            "cycles_passed": passed,
            "average_score": round(score_sum / cycles, 2) if cycles else 0.0,
            "total_attempts": attempts,
            "workers": self._registry.names(),
            "history_size": len(self._dispatcher.history(limit=self._settings.history_cap)),
            "directive_cache": {
                "entries": len(self._directives),
                "hits": self._directives.hits,
                "misses": self._directives.misses,
            },
            "users": users,
        }

    def worker_statuses(self) -> list[WorkerStatus]:
        return self._registry.statuses()

    @staticmethod
    def _describe_failure(result: WorkResult) -> str:
        if result.ok:
            return f"worker={result.meta.worker} unexpected_data={type(result.data).__name__}"
        return f"worker={result.meta.worker} error={result.error} detail={result.detail}"

    @staticmethod
    def _enter(state: CycleState, **fields: Any) -> None:
        details = " ".join(f"{key}={value}" for key, value in fields.items())
        logger.debug("cycle.state {} {}", state, details)
