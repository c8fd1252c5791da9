"""Turn free-form model output into validated candidate bodies."""

from __future__ import annotations

import json
import re
from typing import Any

from loguru import logger
from pydantic import ValidationError

from lessonloop.bodies import BODY_TYPES, CandidateBody, Flashcard, FlashcardSet, TextBody, VideoScript
from lessonloop.types import Format, TeachingRequest

FENCED_JSON_RE = re.compile(r"```(?:json)?\s*([\[{][\s\S]*[\]}])\s*```", re.IGNORECASE)
FALLBACK_BACK_CHARS = 300
FALLBACK_SUBTOPIC_CHARS = 50


class MalformedOutputError(ValueError):
    """Raised when model output holds no usable JSON."""


def extract_json(text: str) -> Any:
    """Read JSON from raw text, a fenced block, or the outermost object in prose."""

    stripped = text.strip()
    if not stripped:
        raise MalformedOutputError("empty model output")
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass

    for match in FENCED_JSON_RE.finditer(stripped):
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            continue

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(stripped[start : end + 1])
        except json.JSONDecodeError as exc:
            raise MalformedOutputError(f"invalid JSON object in model output: {exc.msg}") from exc
    raise MalformedOutputError("no JSON found in model output")


def extract_object(text: str) -> dict[str, Any]:
    data = extract_json(text)
    if not isinstance(data, dict):
        raise MalformedOutputError(f"expected a JSON object, got {type(data).__name__}")
    return data


def parse_candidate_body(content_format: Format, raw: str, request: TeachingRequest) -> CandidateBody:
    """Validate model output for one format, or fall back to a minimal body."""

    try:
        if content_format is Format.TEXT:
            return _parse_text(raw)
        data = extract_object(raw)
        return BODY_TYPES[content_format].model_validate(data)  # type: ignore[return-value]
    except (MalformedOutputError, ValidationError) as exc:
        logger.warning("parse.candidate.fallback format={} reason={}", content_format, _short_reason(exc))
        return fallback_body(content_format, request, raw)


def fallback_body(content_format: Format, request: TeachingRequest, raw: str = "") -> CandidateBody:
    """Smallest scoreable body for a format, built from what is at hand."""

    text = raw.strip()
    title = request.lesson.title if request.lesson and request.lesson.title else "General Topic"
    if content_format is Format.FLASHCARDS:
        return FlashcardSet(
            topic=title,
            subtopic=request.message[:FALLBACK_SUBTOPIC_CHARS],
            flashcards=[
                Flashcard(
                    id=1,
                    front=request.message,
                    back=text[:FALLBACK_BACK_CHARS] or "Review the lesson material for this concept.",
                    difficulty="medium",
                    tags=["general"],
                    hint="Think about the key concepts",
                )
            ],
            study_tips=["Review regularly", "Use spaced repetition"],
            fallback=True,
        )
    if content_format is Format.VIDEO:
        return VideoScript(
            title=title,
            visual_prompt=f"Simple explainer visuals for: {request.message}",
            narration=text or request.message,
            key_takeaways=["Video script unavailable", "Showing a text explanation instead"],
            fallback=True,
        )
    return TextBody(content=text or f"Let's look at this together: {request.message}", fallback=True)


def _parse_text(raw: str) -> TextBody:
    stripped = raw.strip()
    if stripped.startswith("{"):
        try:
            data = extract_object(stripped)
        except MalformedOutputError:
            data = {}
        content = data.get("content") or data.get("response") or data.get("text")
        if isinstance(content, str) and content.strip():
            return TextBody(content=content.strip())
    if not stripped:
        raise MalformedOutputError("empty text output")
    return TextBody(content=stripped)


def _short_reason(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return f"{exc.error_count()} validation error(s)"
    return str(exc)
