"""Judge worker: weighted rubric scoring with a heuristic fallback."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from lessonloop.config import DEFAULT_RUBRIC_WEIGHTS
from lessonloop.errors import RubricError
from lessonloop.models import ModelClient
from lessonloop.parsing import MalformedOutputError, extract_object
from lessonloop.preferences import PreferenceSnapshot
from lessonloop.types import (
    Candidate,
    CriterionScore,
    Envelope,
    EvaluateCall,
    Evaluation,
    EvaluationSource,
    Format,
    TeachingRequest,
    clamp_score,
)
from lessonloop.workers.base import Worker

DEFAULT_PASS_THRESHOLD = 70.0
RUBRIC_TOTAL = 100

CRITERION_DESCRIPTIONS: dict[str, str] = {
    "accuracy": "Information is correct and factual",
    "clarity": "Explanation is clear and easy to understand",
    "relevance": "Directly addresses the student's question",
    "pedagogy": "Uses good teaching techniques (examples, structure)",
    "alignment": "Matches the student's learning preferences and format",
}

FORMAT_GUIDANCE: dict[Format, str] = {
    Format.TEXT: "RESPONSE TYPE: Text-based lesson.",
    Format.VIDEO: (
        "RESPONSE TYPE: Educational video script (visual prompt, narration, key takeaways). "
        "Judge narration quality, completeness of takeaways and the educational value of the visuals."
    ),
    Format.FLASHCARDS: (
        "RESPONSE TYPE: Flashcard set. Judge card quality (clear questions, complete answers), "
        "difficulty progression, memory techniques and coverage of key concepts."
    ),
}

LIST_MARKER_RE = re.compile(r"(^|\n)\s*(\d+\.|[-*•])\s+")
HEURISTIC_IMPROVEMENTS = (
    "Add more specific examples",
    "Improve clarity and structure",
    "Better address the student's question",
)


@dataclass(frozen=True)
class Criterion:
    name: str
    weight: int
    description: str = ""


class Rubric:
    """Ordered scoring criteria whose weights sum to 100."""

    def __init__(self, criteria: list[Criterion]) -> None:
        if not criteria:
            raise RubricError("rubric needs at least one criterion")
        names = [item.name for item in criteria]
        if len(set(names)) != len(names):
            raise RubricError(f"duplicate rubric criteria: {names}")
        if any(item.weight < 0 for item in criteria):
            raise RubricError("rubric weights must not be negative")
        total = sum(item.weight for item in criteria)
        if total != RUBRIC_TOTAL:
            raise RubricError(f"rubric weights must sum to {RUBRIC_TOTAL}, got {total}")
        self._criteria = tuple(criteria)

    @classmethod
    def from_weights(cls, weights: Mapping[str, int]) -> Rubric:
        return cls(
            [Criterion(name=name, weight=weight, description=CRITERION_DESCRIPTIONS.get(name, "")) for name, weight in weights.items()]
        )

    @classmethod
    def default(cls) -> Rubric:
        return cls.from_weights(DEFAULT_RUBRIC_WEIGHTS)

    @property
    def criteria(self) -> tuple[Criterion, ...]:
        return self._criteria

    def weights(self) -> list[tuple[str, int]]:
        return [(item.name, item.weight) for item in self._criteria]

    def render(self) -> str:
        return "\n".join(f"- {item.name} (weight: {item.weight}): {item.description}" for item in self._criteria)


class CriterionReport(BaseModel):
    model_config = ConfigDict(extra="ignore")

    score: float = Field(allow_inf_nan=False)
    feedback: str = ""

    @field_validator("score")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return clamp_score(value)


class JudgeReport(BaseModel):
    """Shape the judge model is asked to return."""

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    scores: dict[str, CriterionReport]
    overall_feedback: str = ""
    improvements: list[str] = Field(default_factory=list)

    @field_validator("scores", mode="before")
    @classmethod
    def _lower_keys(cls, value: object) -> object:
        if isinstance(value, dict):
            return {str(key).strip().casefold(): item for key, item in value.items()}
        return value


def heuristic_evaluation(
    candidate: Candidate,
    request: TeachingRequest,
    rubric: Rubric,
    *,
    pass_threshold: float = DEFAULT_PASS_THRESHOLD,
) -> Evaluation:
    """Conservative score from length, keyword overlap and teaching markers."""

    text = candidate.render_text()
    lowered = text.casefold()
    score = 50.0

    word_count = len(text.split())
    if 50 <= word_count <= 500:
        score += 15
    elif word_count < 20:
        score -= 20

    question_words = [word for word in request.message.casefold().split() if len(word) > 3]
    if question_words:
        addressed = sum(1 for word in question_words if word in lowered)
        score += int(addressed / len(question_words) * 20)

    if "example" in lowered:
        score += 5
    if "for instance" in lowered or "for example" in lowered:
        score += 5
    if LIST_MARKER_RE.search(text):
        score += 5
    if candidate.is_fallback:
        score -= 10

    score = clamp_score(score)
    breakdown = [
        CriterionScore(criterion=item.name, weight=item.weight, score=score, feedback="Heuristic evaluation")
        for item in rubric.criteria
    ]
    passed = score >= pass_threshold
    return Evaluation.from_breakdown(
        breakdown,
        pass_threshold=pass_threshold,
        improvements=() if passed else HEURISTIC_IMPROVEMENTS,
        overall_feedback="Response meets basic quality standards" if passed else "Response needs improvement",
        source=EvaluationSource.HEURISTIC,
    )


class JudgeWorker(Worker):
    """Score candidates against the rubric."""

    default_name = "Judge"

    def __init__(
        self,
        model: ModelClient,
        *,
        rubric: Rubric | None = None,
        pass_threshold: float = DEFAULT_PASS_THRESHOLD,
        name: str | None = None,
    ) -> None:
        super().__init__(name)
        self._model = model
        self._rubric = rubric or Rubric.default()
        self._pass_threshold = pass_threshold

    @property
    def rubric(self) -> Rubric:
        return self._rubric

    @property
    def pass_threshold(self) -> float:
        return self._pass_threshold

    async def handle(self, envelope: Envelope) -> Evaluation:
        call = envelope.payload
        if not isinstance(call, EvaluateCall):
            raise self.unsupported(envelope)
        return await self.evaluate(call.candidate, call.request, call.preferences)

    async def evaluate(
        self,
        candidate: Candidate,
        request: TeachingRequest,
        preferences: PreferenceSnapshot,
    ) -> Evaluation:
        prompt = self.build_prompt(candidate, request, preferences)
        try:
            raw = await self._model.complete(
                prompt,
                system_prompt="You are an expert educational content evaluator who scores teaching responses.",
            )
            evaluation = self._from_report(JudgeReport.model_validate(extract_object(raw)))
        except (MalformedOutputError, ValidationError, ValueError) as exc:
            logger.warning("judge.fallback reason={}", exc)
            evaluation = heuristic_evaluation(candidate, request, self._rubric, pass_threshold=self._pass_threshold)
        except Exception:
            logger.opt(exception=True).warning("judge.model_error")
            evaluation = heuristic_evaluation(candidate, request, self._rubric, pass_threshold=self._pass_threshold)
        logger.info(
            "judge.evaluate attempt={} score={} passed={} source={}",
            candidate.attempt,
            evaluation.total_score,
            evaluation.passed,
            evaluation.source,
        )
        return evaluation

    def build_prompt(self, candidate: Candidate, request: TeachingRequest, preferences: PreferenceSnapshot) -> str:
        lesson = request.lesson
        history = "\n".join(
            f"{'Student' if turn.is_user else 'Tutor'}: {turn.message}" for turn in request.recent_history(3)
        )
        schema = {
            "scores": {item.name: {"score": "number 0-100", "feedback": "..."} for item in self._rubric.criteria},
            "overallFeedback": "string",
            "improvements": ["specific improvements if the response falls short"],
        }
        return "\n\n".join(
            [
                "You are evaluating an AI tutor's response to a student. Score each rubric criterion from 0 to 100.",
                "CONTEXT:\n"
                f"Lesson: {lesson.title if lesson and lesson.title else 'General Learning Topic'}\n"
                f"Topic: {lesson.topic if lesson and lesson.topic else 'General'}\n"
                f'Student asked: "{request.message}"',
                FORMAT_GUIDANCE[candidate.format],
                f"TEACHING RESPONSE TO EVALUATE:\n{candidate.render_text()}",
                "USER PREFERENCES (consider these in evaluation):\n"
                + json.dumps(preferences.to_payload(), indent=2),
                f"CONVERSATION HISTORY (last 3 exchanges):\n{history or 'No previous conversation'}",
                f"RUBRIC:\n{self._rubric.render()}",
                "Respond with JSON in this EXACT format:\n" + json.dumps(schema, indent=2),
                "Return ONLY valid JSON, no markdown or extra text.",
            ]
        )

    def _from_report(self, report: JudgeReport) -> Evaluation:
        missing = [item.name for item in self._rubric.criteria if item.name not in report.scores]
        if missing:
            raise ValueError(f"judge output is missing criteria: {missing}")
        breakdown = [
            CriterionScore(
                criterion=item.name,
                weight=item.weight,
                score=report.scores[item.name].score,
                feedback=report.scores[item.name].feedback,
            )
            for item in self._rubric.criteria
        ]
        return Evaluation.from_breakdown(
            breakdown,
            pass_threshold=self._pass_threshold,
            improvements=report.improvements,
            overall_feedback=report.overall_feedback,
            source=EvaluationSource.JUDGE,
        )
