"""Content workers: one per output format, all behind `ContentWorker.generate`."""

from __future__ import annotations

from abc import abstractmethod
from typing import ClassVar

from loguru import logger

from lessonloop.models import ModelClient
from lessonloop.parsing import fallback_body, parse_candidate_body
from lessonloop.types import Candidate, Envelope, Evaluation, Format, GenerateCall, TeachingRequest
from lessonloop.workers.base import Worker

HISTORY_TURNS = 6
FIRST_EXPLANATION_MARKER = "please provide a complete, comprehensive explanation"


def render_lesson_block(request: TeachingRequest) -> str:
    lesson = request.lesson
    if lesson is None:
        return "LESSON CONTEXT:\n- Topic: General\n- Lesson: Introduction\n- Description: Not provided"
    return (
        "LESSON CONTEXT:\n"
        f"- Topic: {lesson.topic or 'General'}\n"
        f"- Lesson: {lesson.title or 'Introduction'}\n"
        f"- Description: {lesson.description or 'Not provided'}"
    )


def render_history_block(request: TeachingRequest, limit: int = HISTORY_TURNS) -> str:
    turns = request.recent_history(limit)
    if not turns:
        return "CONVERSATION HISTORY:\nThis is the start of the conversation"
    lines = [f"{'Student' if turn.is_user else 'Teacher'}: {turn.message}" for turn in turns]
    return "CONVERSATION HISTORY:\n" + "\n".join(lines)


def render_feedback_block(feedback: Evaluation | None) -> str:
    """Fold the failing evaluation of the previous attempt into the next prompt."""

    if feedback is None:
        return ""
    lines = [
        f"PREVIOUS RESPONSE FEEDBACK (Score: {feedback.total_score:g}/100):",
        feedback.overall_feedback or "No feedback",
    ]
    weak = [item for item in feedback.breakdown if item.feedback and item.score < 70]
    if weak:
        lines.append("")
        lines.append("WEAK CRITERIA:")
        lines.extend(f"- {item.criterion} ({item.score:g}/100): {item.feedback}" for item in weak)
    lines.append("")
    lines.append("IMPROVEMENTS NEEDED:")
    improvements = feedback.improvements or ("Improve overall quality",)
    lines.extend(f"- {item}" for item in improvements)
    lines.append("")
    lines.append("Please provide an improved response that addresses these issues.")
    return "\n".join(lines)


def is_first_explanation(request: TeachingRequest) -> bool:
    return not request.history and FIRST_EXPLANATION_MARKER in request.message.casefold()


class ContentWorker(Worker):
    """Produce one candidate in this worker's format."""

    content_format: ClassVar[Format]

    def __init__(self, model: ModelClient, name: str | None = None) -> None:
        super().__init__(name)
        self._model = model

    async def handle(self, envelope: Envelope) -> Candidate:
        call = envelope.payload
        if not isinstance(call, GenerateCall):
            raise self.unsupported(envelope)
        return await self.generate(call.request, call.directives, call.prior_feedback, call.attempt)

    async def generate(
        self,
        request: TeachingRequest,
        directives: str,
        prior_feedback: Evaluation | None = None,
        attempt: int = 1,
    ) -> Candidate:
        prompt = self.build_prompt(request, directives, prior_feedback)
        try:
            raw = await self._model.complete(prompt, system_prompt=directives)
        except Exception:
            logger.opt(exception=True).warning("content.generate.model_error worker={} attempt={}", self.name, attempt)
            body = fallback_body(self.content_format, request)
        else:
            body = parse_candidate_body(self.content_format, raw, request)
        logger.info(
            "content.generate worker={} format={} attempt={} fallback={}",
            self.name,
            self.content_format,
            attempt,
            body.fallback,
        )
        return Candidate(format=self.content_format, body=body, attempt=attempt, worker=self.name)

    def build_prompt(self, request: TeachingRequest, directives: str, prior_feedback: Evaluation | None) -> str:
        sections = [
            directives,
            self.task_block(request),
            render_lesson_block(request),
            render_history_block(request),
            f"STUDENT QUESTION: {request.message}",
            render_feedback_block(prior_feedback),
            self.output_block(request),
        ]
        return "\n\n".join(section for section in sections if section)

    @abstractmethod
    def task_block(self, request: TeachingRequest) -> str:
        """What to write, given the request."""

    @abstractmethod
    def output_block(self, request: TeachingRequest) -> str:
        """How the model must shape its reply."""


class TextWorker(ContentWorker):
    default_name = "TextWorker"
    content_format = Format.TEXT

    def task_block(self, request: TeachingRequest) -> str:
        if is_first_explanation(request):
            return (
                "You are writing the student's FIRST explanation of this lesson. "
                "Cover every major concept, from fundamentals to the key takeaways."
            )
        return "You are a patient tutor answering the student's question in a written explanation."

    def output_block(self, request: TeachingRequest) -> str:
        _ = request
        return (
            "Write the explanation as markdown. Use short sections, concrete examples where the "
            "preferences ask for them, and end with a one-line check for understanding."
        )


class VideoWorker(ContentWorker):
    default_name = "VideoWorker"
    content_format = Format.VIDEO

    def task_block(self, request: TeachingRequest) -> str:
        _ = request
        return (
            "You are writing a SHORT EDUCATIONAL VIDEO SCRIPT. Describe what to SHOW visually "
            "(clear demonstrations, step-by-step visuals, text overlays for key points) and "
            "write a narration that can be spoken in about ten seconds."
        )

    def output_block(self, request: TeachingRequest) -> str:
        _ = request
        return (
            "Return a JSON object with these keys:\n"
            "- title: video title\n"
            "- visualPrompt: what the video shows, at most 500 characters\n"
            "- narration: narration under 100 words\n"
            "- keyTakeaways: list of three short takeaways\n"
            "- durationSeconds: length of the clip, 10 by default\n"
            "Return ONLY valid JSON."
        )


class FlashcardWorker(ContentWorker):
    default_name = "FlashcardWorker"
    content_format = Format.FLASHCARDS

    def task_block(self, request: TeachingRequest) -> str:
        if is_first_explanation(request):
            title = request.lesson.title if request.lesson and request.lesson.title else "this lesson"
            return (
                "You are creating EDUCATIONAL FLASHCARDS for spaced repetition. This is the student's "
                f'first lesson: create a comprehensive set of 8-12 cards covering every major concept of "{title}".'
            )
        return "You are creating 5-8 EDUCATIONAL FLASHCARDS for spaced repetition, one concept per card."

    def output_block(self, request: TeachingRequest) -> str:
        _ = request
        return (
            "Return a JSON object with these keys:\n"
            "- topic, subtopic: names of the topic and the specific subtopic\n"
            "- flashcards: list of cards, each with id (1-based), front (question), back (answer with "
            "explanation), difficulty (easy, medium or hard), tags, and optional hint, mnemonic and example\n"
            "- studyTips: list of study tips\n"
            "- reviewSchedule: suggested review intervals\n"
            "Use active recall and varied question types. Return ONLY valid JSON."
        )


CONTENT_WORKER_TYPES: dict[Format, type[ContentWorker]] = {
    Format.TEXT: TextWorker,
    Format.VIDEO: VideoWorker,
    Format.FLASHCARDS: FlashcardWorker,
}


def build_content_workers(model: ModelClient) -> list[ContentWorker]:
    return [worker_type(model) for worker_type in CONTENT_WORKER_TYPES.values()]
