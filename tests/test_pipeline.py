from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest

from lessonloop.config import Settings
from lessonloop.errors import RequestValidationError, RubricError, StoreUnavailableError
from lessonloop.pipeline import PREFERENCES_CHANGED, Pipeline, select_worker
from lessonloop.preferences import PreferenceDelta, PreferenceSnapshot
from lessonloop.store import ApplyResult, InMemoryContentSink, InMemoryPreferenceStore
from lessonloop.types import (
    CriterionScore,
    Envelope,
    EvaluateCall,
    Evaluation,
    EvaluationSource,
    Format,
    LessonContext,
    Pace,
    TeachingRequest,
)
from lessonloop.workers import PreferenceDetectorWorker, Worker, build_content_workers
from lessonloop.workers.judge import Rubric

FLASHCARD_JSON = json.dumps(
    {
        "topic": "Loops",
        "subtopic": "for loops",
        "flashcards": [
            {"id": 1, "front": "What does a for loop do?", "back": "Repeats a block per item.", "difficulty": "easy"},
        ],
        "studyTips": ["Trace a loop by hand"],
    }
)
LESSON = LessonContext(title="Loops", topic="Python")


class RecordingModel:
    def __init__(self, reply: str = FLASHCARD_JSON) -> None:
        self.reply = reply
        self.prompts: list[str] = []

    async def complete(self, prompt: str, *, system_prompt: str = "") -> str:
        self.prompts.append(prompt)
        return self.reply


class GatedModel(RecordingModel):
    """Holds every completion until released."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.cancelled = asyncio.Event()

    async def complete(self, prompt: str, *, system_prompt: str = "") -> str:
        self.prompts.append(prompt)
        self.started.set()
        try:
            await self.release.wait()
        except asyncio.CancelledError:
            self.cancelled.set()
            raise
        return self.reply


class ScriptedJudge(Worker):
    default_name = "Judge"

    def __init__(self, *scores: float, pass_threshold: float = 70) -> None:
        super().__init__()
        self.scores = list(scores)
        self.pass_threshold = pass_threshold
        self.calls: list[EvaluateCall] = []

    async def handle(self, envelope: Envelope) -> Evaluation:
        call = envelope.payload
        self.calls.append(call)
        score = self.scores.pop(0) if len(self.scores) > 1 else self.scores[0]
        breakdown = [
            CriterionScore(criterion=name, weight=weight, score=score, feedback=f"{name} needs work")
            for name, weight in Rubric.default().weights()
        ]
        return Evaluation.from_breakdown(
            breakdown,
            pass_threshold=self.pass_threshold,
            improvements=(f"Raise the score above {score:g}",),
            overall_feedback="Keep going",
        )


class FaultyJudge(Worker):
    default_name = "Judge"

    async def handle(self, envelope: Envelope) -> Any:
        raise RuntimeError("judge offline")


class SlowWorker(Worker):
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.started = asyncio.Event()
        self.cancelled = False

    async def handle(self, envelope: Envelope) -> Any:
        self.started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return None


class Observer(Worker):
    default_name = "Observer"

    def __init__(self) -> None:
        super().__init__()
        self.notifications: list[Any] = []

    async def handle(self, envelope: Envelope) -> Any:
        return None

    async def on_notification(self, envelope: Envelope) -> Any:
        self.notifications.append(envelope.payload)
        return {"acknowledged": True}


class RacingStore(InMemoryPreferenceStore):
    """Lets another writer land one delta right before the first apply."""

    def __init__(self, competing: PreferenceDelta) -> None:
        super().__init__()
        self.competing = competing
        self.raced = False

    async def apply(self, user_id: str, delta: PreferenceDelta, expected_change_count: int) -> ApplyResult:
        if not self.raced:
            self.raced = True
            current = await self.get(user_id)
            await super().apply(user_id, self.competing, current.change_count)
        return await super().apply(user_id, delta, expected_change_count)


class RejectingStore(InMemoryPreferenceStore):
    async def apply(self, user_id: str, delta: PreferenceDelta, expected_change_count: int) -> ApplyResult:
        return ApplyResult(applied=False, snapshot=await self.get(user_id))


class BrokenStore(InMemoryPreferenceStore):
    async def get(self, user_id: str) -> PreferenceSnapshot:
        raise RuntimeError("disk on fire")


class BrokenSink:
    async def save(self, *args: Any) -> None:
        raise OSError("read-only filesystem")


def _pipeline(
    make_settings: Callable[..., Settings],
    *,
    judge: Worker,
    model: RecordingModel | None = None,
    store: InMemoryPreferenceStore | None = None,
    sink: Any = None,
    **overrides: Any,
) -> Pipeline:
    pipeline = Pipeline(
        store=store or InMemoryPreferenceStore(),
        sink=sink or InMemoryContentSink(),
        settings=make_settings(**overrides),
    )
    for worker in build_content_workers(model or RecordingModel()):
        pipeline.registry.register(worker)
    pipeline.registry.register(judge)
    pipeline.registry.register(PreferenceDetectorWorker())
    return pipeline


def _request(message: str = "I hate text, give me flashcards", user_id: str = "u1") -> TeachingRequest:
    return TeachingRequest(user_id=user_id, message=message, lesson=LESSON)


FIRST_LESSON = "Please provide a complete, comprehensive explanation of this lesson"


@pytest.mark.asyncio
async def test_cycle_switches_format_and_retries_until_pass(make_settings: Callable[..., Settings]) -> None:
    model = RecordingModel()
    store = InMemoryPreferenceStore()
    sink = InMemoryContentSink()
    judge = ScriptedJudge(55, 62, 81)
    pipeline = _pipeline(make_settings, judge=judge, model=model, store=store, sink=sink)

    result = await pipeline.run_teaching_cycle(_request())

    assert result.passed is True
    assert result.attempts_used == 3
    assert result.evaluation.total_score == 81
    assert result.candidate.format is Format.FLASHCARDS
    assert result.candidate.attempt == 3
    assert result.candidate.is_fallback is False
    assert result.worker == "FlashcardWorker"
    assert result.preference_changed is True
    assert result.recommended_format is Format.FLASHCARDS

    assert len(model.prompts) == 3
    assert "PREVIOUS RESPONSE FEEDBACK" not in model.prompts[0]
    assert "PREVIOUS RESPONSE FEEDBACK (Score: 55/100)" in model.prompts[1]
    assert "PREVIOUS RESPONSE FEEDBACK (Score: 62/100)" in model.prompts[2]
    assert [call.candidate.attempt for call in judge.calls] == [1, 2, 3]

    stored = await store.get("u1")
    assert stored.format is Format.FLASHCARDS
    assert stored.change_count == 1
    [record] = sink.records
    assert record.candidate is result.candidate


@pytest.mark.asyncio
async def test_cycle_gives_up_with_last_attempt(make_settings: Callable[..., Settings]) -> None:
    sink = InMemoryContentSink()
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(40, 50, 60), sink=sink)

    result = await pipeline.run_teaching_cycle(_request("What is a for loop?"))

    assert result.passed is False
    assert result.attempts_used == 3
    assert result.evaluation.total_score == 60
    assert result.candidate.attempt == 3
    assert result.preference_changed is False
    assert len(sink.records) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("scores", "max_attempts", "expected_attempts", "passed"),
    [
        ((90,), 3, 1, True),
        ((10, 70), 3, 2, True),
        ((10, 20, 30, 40, 95), 5, 5, True),
        ((10,), 1, 1, False),
        ((10, 20), 2, 2, False),
    ],
)
async def test_attempts_never_exceed_the_limit(
    make_settings: Callable[..., Settings],
    scores: tuple[float, ...],
    max_attempts: int,
    expected_attempts: int,
    passed: bool,
) -> None:
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(*scores), max_attempts=max_attempts)

    result = await pipeline.run_teaching_cycle(_request("What is a for loop?"))

    assert result.attempts_used == expected_attempts
    assert result.attempts_used <= max_attempts
    assert result.passed is passed


@pytest.mark.asyncio
async def test_judge_fault_yields_unavailable_evaluation(
    make_settings: Callable[..., Settings],
    log_messages: list[str],
) -> None:
    pipeline = _pipeline(make_settings, judge=FaultyJudge(), max_attempts=2)

    result = await pipeline.run_teaching_cycle(_request("What is a for loop?"))

    assert result.attempts_used == 2
    assert result.evaluation.source is EvaluationSource.UNAVAILABLE
    assert result.evaluation.total_score == 0
    assert result.evaluation.weight_total == 100
    assert any(message.startswith("cycle.evaluate_failed") for message in log_messages)


@pytest.mark.asyncio
async def test_missing_content_worker_produces_fallback_candidate(make_settings: Callable[..., Settings]) -> None:
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(75))
    pipeline.registry.unregister("FlashcardWorker")

    result = await pipeline.run_teaching_cycle(_request())

    assert result.candidate.format is Format.FLASHCARDS
    assert result.candidate.is_fallback is True
    assert result.candidate.body.flashcards[0].front == "I hate text, give me flashcards"
    assert result.passed is True


@pytest.mark.asyncio
async def test_slow_content_worker_times_out_into_fallback(make_settings: Callable[..., Settings]) -> None:
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(80), worker_timeout_seconds=0.05)
    slow = SlowWorker("TextWorker")
    pipeline.registry.register(slow)

    result = await pipeline.run_teaching_cycle(_request("What is a for loop?"))

    assert slow.cancelled is True
    assert result.candidate.format is Format.TEXT
    assert result.candidate.is_fallback is True
    assert result.attempts_used == 1


@pytest.mark.asyncio
async def test_missing_detector_keeps_stored_format(make_settings: Callable[..., Settings]) -> None:
    store = InMemoryPreferenceStore({"u1": PreferenceSnapshot(format=Format.VIDEO)})
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(90), store=store)
    pipeline.registry.unregister("PreferenceDetector")

    result = await pipeline.run_teaching_cycle(_request())

    assert result.recommended_format is Format.VIDEO
    assert result.worker == "VideoWorker"
    assert result.preference_changed is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "request_",
    [
        TeachingRequest(user_id="", message="hello"),
        TeachingRequest(user_id="u1", message="   "),
        TeachingRequest(user_id="u1", message="hello", history=["not a turn"]),  # type: ignore[arg-type]
        "not a request",
    ],
)
async def test_invalid_requests_fail_before_any_worker(
    make_settings: Callable[..., Settings],
    request_: Any,
) -> None:
    judge = ScriptedJudge(90)
    pipeline = _pipeline(make_settings, judge=judge)

    with pytest.raises(RequestValidationError):
        await pipeline.run_teaching_cycle(request_)

    assert pipeline.dispatcher.history() == []
    assert judge.calls == []


@pytest.mark.asyncio
async def test_unreadable_store_fails_the_cycle(make_settings: Callable[..., Settings]) -> None:
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(90), store=BrokenStore())

    with pytest.raises(StoreUnavailableError, match="disk on fire"):
        await pipeline.run_teaching_cycle(_request())


@pytest.mark.asyncio
async def test_sink_failure_is_logged_and_result_returned(
    make_settings: Callable[..., Settings],
    log_messages: list[str],
) -> None:
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(90), sink=BrokenSink())

    result = await pipeline.run_teaching_cycle(_request())

    assert result.passed is True
    assert any(message.startswith("cycle.sink_failed") for message in log_messages)


@pytest.mark.asyncio
async def test_concurrent_writer_on_other_field_is_merged(make_settings: Callable[..., Settings]) -> None:
    store = RacingStore(PreferenceDelta(sets={"pace": "fast"}))
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(90), store=store)

    result = await pipeline.run_teaching_cycle(_request())

    assert result.preference_changed is True
    assert result.preferences.format is Format.FLASHCARDS
    assert result.preferences.pace is Pace.FAST
    assert result.preferences.change_count == 2


@pytest.mark.asyncio
async def test_concurrent_writer_on_same_field_wins(
    make_settings: Callable[..., Settings],
    log_messages: list[str],
) -> None:
    store = RacingStore(PreferenceDelta(sets={"format": "video"}))
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(90), store=store)

    result = await pipeline.run_teaching_cycle(_request())

    assert result.preference_changed is False
    assert result.preferences.format is Format.VIDEO
    assert result.preferences.change_count == 1
    assert result.recommended_format is Format.FLASHCARDS
    assert any(message.startswith("cycle.preferences.superseded") for message in log_messages)


@pytest.mark.asyncio
async def test_second_rejection_drops_the_delta(
    make_settings: Callable[..., Settings],
    log_messages: list[str],
) -> None:
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(90), store=RejectingStore())

    result = await pipeline.run_teaching_cycle(_request())

    assert result.preference_changed is False
    assert result.preferences.change_count == 0
    assert result.candidate.format is Format.FLASHCARDS
    assert any(message.startswith("cycle.preferences.dropped") for message in log_messages)


@pytest.mark.asyncio
async def test_preference_change_is_broadcast(make_settings: Callable[..., Settings]) -> None:
    observer = Observer()
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(90))
    pipeline.registry.register(observer)

    await pipeline.run_teaching_cycle(_request())
    await pipeline.run_teaching_cycle(_request("What is a for loop?"))

    assert observer.notifications == [
        {"event": PREFERENCES_CHANGED, "user_id": "u1", "change_count": 1, "fields": ["format"]},
    ]


@pytest.mark.asyncio
async def test_cancelling_the_cycle_cancels_the_worker(make_settings: Callable[..., Settings]) -> None:
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(90))
    slow = SlowWorker("TextWorker")
    pipeline.registry.register(slow)

    task = asyncio.create_task(pipeline.run_teaching_cycle(_request("What is a for loop?")))
    await slow.started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert slow.cancelled is True
    assert pipeline.statistics()["cycles_run"] == 0


@pytest.mark.asyncio
async def test_statistics_and_directive_reuse(make_settings: Callable[..., Settings]) -> None:
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(40, 80, 90))

    await pipeline.run_teaching_cycle(_request("What is a for loop?"))
    await pipeline.run_teaching_cycle(_request("What is a for loop?"))

    stats = pipeline.statistics()
    assert stats["cycles_run"] == 2
    assert stats["cycles_passed"] == 2
    assert stats["total_attempts"] == 3
    assert stats["average_score"] == 85.0
    assert stats["directive_cache"] == {"entries": 1, "hits": 1, "misses": 1}
    assert "Judge" in stats["workers"]
    assert stats["history_size"] > 0
    assert all(status.busy is False for status in pipeline.worker_statuses())


def test_blocking_run(make_settings: Callable[..., Settings]) -> None:
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(90))

    result = pipeline.run(_request("What is a for loop?"))

    assert result.passed is True
    assert result.worker == "TextWorker"


@pytest.mark.asyncio
async def test_default_workers_run_offline(make_settings: Callable[..., Settings]) -> None:
    sink = InMemoryContentSink()
    pipeline = Pipeline(store=InMemoryPreferenceStore(), sink=sink, settings=make_settings()).register_default_workers()

    assert pipeline.registry.names() == ["FlashcardWorker", "Judge", "PreferenceDetector", "TextWorker", "VideoWorker"]

    result = await pipeline.run_teaching_cycle(_request("What is a for loop?"))

    assert result.candidate.format is Format.TEXT
    assert 1 <= result.attempts_used <= 3
    assert result.evaluation.source is EvaluationSource.HEURISTIC
    assert len(sink.records) == 1


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (Format.VIDEO, "VideoWorker"),
        ("cards", "FlashcardWorker"),
        ("text", "TextWorker"),
        ("audio", "TextWorker"),
        (None, "TextWorker"),
    ],
)
def test_select_worker(value: Any, expected: str) -> None:
    assert select_worker(value) == expected


def test_bad_rubric_weights_are_rejected(make_settings: Callable[..., Settings]) -> None:
    with pytest.raises(RubricError):
        Pipeline(
            store=InMemoryPreferenceStore(),
            sink=InMemoryContentSink(),
            settings=make_settings(rubric_weights={"accuracy": 50, "clarity": 30}),
        )


@pytest.mark.asyncio
async def test_concurrent_first_explanations_share_one_cycle(make_settings: Callable[..., Settings]) -> None:
    model = RecordingModel("Loops repeat a block of code.")
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(90), model=model)

    first, second = await asyncio.gather(
        pipeline.run_teaching_cycle(_request(FIRST_LESSON)),
        pipeline.run_teaching_cycle(_request(FIRST_LESSON)),
    )

    assert len(model.prompts) == 1
    assert first is second
    assert pipeline.statistics()["cycles_run"] == 1


@pytest.mark.asyncio
async def test_first_explanations_for_other_lessons_run_separately(make_settings: Callable[..., Settings]) -> None:
    model = RecordingModel("Loops repeat a block of code.")
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(90), model=model)
    other = TeachingRequest(user_id="u1", message=FIRST_LESSON, lesson=LessonContext(title="Functions"))

    await asyncio.gather(
        pipeline.run_teaching_cycle(_request(FIRST_LESSON)),
        pipeline.run_teaching_cycle(other),
        pipeline.run_teaching_cycle(_request(FIRST_LESSON, user_id="u2")),
    )

    assert len(model.prompts) == 3


@pytest.mark.asyncio
async def test_shared_first_explanation_survives_one_cancelled_caller(
    make_settings: Callable[..., Settings],
) -> None:
    model = GatedModel()
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(90), model=model)

    leaving = asyncio.create_task(pipeline.run_teaching_cycle(_request(FIRST_LESSON)))
    staying = asyncio.create_task(pipeline.run_teaching_cycle(_request(FIRST_LESSON)))
    await model.started.wait()
    leaving.cancel()
    with pytest.raises(asyncio.CancelledError):
        await leaving

    model.release.set()
    result = await staying

    assert result.passed is True
    assert len(model.prompts) == 1
    assert not model.cancelled.is_set()


@pytest.mark.asyncio
async def test_last_caller_leaving_cancels_the_first_explanation(make_settings: Callable[..., Settings]) -> None:
    model = GatedModel()
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(90), model=model)

    task = asyncio.create_task(pipeline.run_teaching_cycle(_request(FIRST_LESSON)))
    await model.started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await asyncio.wait_for(model.cancelled.wait(), timeout=1)
    assert pipeline.statistics()["cycles_run"] == 0


@pytest.mark.asyncio
async def test_statistics_count_stuck_and_preference_changes_per_user(
    make_settings: Callable[..., Settings],
) -> None:
    pipeline = _pipeline(make_settings, judge=ScriptedJudge(90))

    await pipeline.run_teaching_cycle(_request("I hate text, give me flashcards"))
    await pipeline.run_teaching_cycle(_request("I'm confused, what do you mean by iteration?"))
    await pipeline.run_teaching_cycle(_request("What is a for loop?", user_id="u2"))

    assert pipeline.statistics()["users"] == {
        "u1": {"cycles": 2, "stuck_count": 1, "preference_changes": 1},
        "u2": {"cycles": 1, "stuck_count": 0, "preference_changes": 0},
    }
