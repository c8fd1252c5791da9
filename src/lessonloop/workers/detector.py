"""Preference detector worker.

Rules over the user's message always run first. They find format likes and
dislikes per clause, explanation style, pace, complexity, the three content
toggles, and requests to reset stored preferences. An optional model then
fills in fields the rules left open. The recommended format is never one the
message rejects.
"""

from __future__ import annotations

import json
import re
from collections.abc import Collection, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel, to_snake
from rapidfuzz import fuzz, process, utils

from lessonloop.config import DEFAULT_FORMAT_PRECEDENCE
from lessonloop.models import ModelClient
from lessonloop.parsing import MalformedOutputError, extract_object
from lessonloop.preferences import (
    PREFERENCE_FIELDS,
    PreferenceDelta,
    PreferenceSnapshot,
    apply_delta,
    coerce_field,
)
from lessonloop.types import (
    Complexity,
    DetectCall,
    Detection,
    Envelope,
    ExplanationStyle,
    Format,
    Pace,
    PriorTurn,
)
from lessonloop.workers.base import Worker

EXPLICIT_CONFIDENCE = 90
IMPLICIT_CONFIDENCE = 60
NEUTRAL_CONFIDENCE = 50
REPEAT_SCORE_CUTOFF = 85
REPEAT_MIN_WORDS = 3
REPEAT_LOOKBACK = 10

CLAUSE_SPLIT_RE = re.compile(r"[.;!?\n]+|,|\bbut\b", re.IGNORECASE)

_FORMAT_TERMS: Mapping[Format, str] = {
    Format.FLASHCARDS: r"flash ?cards?",
    Format.VIDEO: r"video scripts?|video clips?|videos?|clips",
    Format.TEXT: r"written explanations?|texts?|reading",
}
_FORMAT = "(?:" + "|".join(_FORMAT_TERMS.values()) + ")"
# Words allowed between a cue and the format it governs ("give me some short videos").
_FILLER = (
    r"(?:the|a|an|some|more|any|only|just|those|these|your|my|all|with|of|to|me|us|them|"
    r"get|have|see|use|watch|read|try|using|getting|short|simple|plain)"
)
# A format word followed by another noun is a modifier ("video compression"), not an object.
_FOLLOWERS = (
    r"and|or|anymore|please|instead|for|from|again|ever|at|too|only|so|because|since|then|now|on|about|"
    r"formats?|versions?|explanations?|lessons?|content|style|mode|better|more|rather|than|over|"
    r"is|are|was|were|work|works|help|helps|seem|seems|feel|feels|though|either|if|when|which|that|"
    r"to|with|as|this|these|here|going"
)
_OBJECT_END = r"(?=\s*$|\s*[^\w\s']|\s+(?:" + _FOLLOWERS + r")\b)"
_FORMAT_SEQ = rf"{_FORMAT}(?:\s+(?:and|or|&)\s+{_FORMAT})*"
_FORMAT_OBJECT = rf"{_FORMAT}(?:\s+(?:and|or|&)\s+(?:{_FILLER}\s+)?{_FORMAT})*{_OBJECT_END}"

_DISLIKE = (
    r"hate|dislike|can'?t stand|don'?t (?:like|want|need)|do not (?:like|want|need)|no more|"
    r"stop (?:using|sending|giving me|giving)|stop|too much|too many|tired of|sick of|enough (?:with|of)|"
    r"instead of|rather than|not a fan of|less|fewer|avoid|skip"
)
_LIKE = (
    r"prefer|i'?d rather(?: have)?|i would rather(?: have)?|rather have|would like|i'?d (?:like|love|prefer)|"
    r"(?:i|we) (?:really |much )?(?:like|love|enjoy|want|need)|give me|switch(?: back)? to|"
    r"change (?:it |this )?to|send me|show me|go with|let'?s (?:do|try|use|go with)|can (?:i|we) (?:get|have)"
)
_VERDICT_DISLIKE = (
    r"boring|annoying|useless|awful|terrible|confusing|unhelpful|not helpful|not working|sucks?|"
    r"don'?t help|doesn'?t help|don'?t work|doesn'?t work"
)
_VERDICT_LIKE = (
    r"more helpful|work better|works better|work well|works well|help (?:me )?more|helps (?:me )?more|"
    r"helps? a lot|better|great|helpful|best|awesome|easier"
)

# "give me flashcards", "stop sending flashcards and video"
PRE_CUE_RE = re.compile(
    rf"\b(?:(?P<dislike>{_DISLIKE})|(?P<like>{_LIKE}))\s+(?:{_FILLER}\s+){{0,2}}(?P<formats>{_FORMAT_OBJECT})",
    re.IGNORECASE,
)
# "videos are boring", "flashcards work better"
VERDICT_RE = re.compile(
    rf"\b(?P<formats>{_FORMAT_SEQ})\s+(?:(?:are|is|seem|seems|feel|feels|get|gets)\s+)?"
    rf"(?:(?:really|so|pretty|way|much)\s+)?(?:(?P<dislike>{_VERDICT_DISLIKE})|(?P<like>{_VERDICT_LIKE}))\b",
    re.IGNORECASE,
)
# "... better than text", "videos over text"; only read once the clause likes something
CONTRAST_RE = re.compile(
    rf"\b(?:than|over)\s+(?:{_FILLER}\s+){{0,2}}(?P<formats>{_FORMAT_OBJECT})",
    re.IGNORECASE,
)
FORMAT_TERM_RE = re.compile(
    r"\b(?:" + "|".join(f"(?P<{fmt.value}>{terms})" for fmt, terms in _FORMAT_TERMS.items()) + r")\b",
    re.IGNORECASE,
)

IMPLICIT_FORMAT_CUES: Mapping[Format, re.Pattern[str]] = {
    Format.VIDEO: re.compile(r"\b(show me how|visuali[sz]e|demonstrate)\b", re.IGNORECASE),
    Format.FLASHCARDS: re.compile(r"\b(quiz me|test me|drill me|help me memori[sz]e)\b", re.IGNORECASE),
    Format.TEXT: re.compile(r"\b(summari[sz]e|write it out|in writing)\b", re.IGNORECASE),
}

# Only lasting, first-person phrasings count; "is there a faster algorithm?" must not set a pace.
_ABOUT_ANSWERS = r"(?:your |the )?(?:answers|explanations|responses|lessons)"
FIELD_RULES: Mapping[str, Sequence[tuple[Any, re.Pattern[str]]]] = {
    "explanation_style": (
        (
            ExplanationStyle.CONCISE,
            re.compile(
                rf"\b(keep it (short|simple|brief)|keep {_ABOUT_ANSWERS} (short|brief|concise)|"
                rf"(be|make it) (more )?(concise|brief|shorter)|{_ABOUT_ANSWERS} (are|were) too long|"
                rf"(that's|that is|this is|it's|way) too long|shorter {_ABOUT_ANSWERS}|(get|keep it) to the point)\b",
                re.IGNORECASE,
            ),
        ),
        (
            ExplanationStyle.DETAILED,
            re.compile(
                rf"\b((be|make it) more (detailed|thorough)|i (want|like|prefer) (more )?detailed|"
                rf"{_ABOUT_ANSWERS} (are|were) too short|(that's|that is|this is|it's|way) too short|"
                rf"more detailed {_ABOUT_ANSWERS}|in[ -]depth {_ABOUT_ANSWERS}|always go deeper)\b",
                re.IGNORECASE,
            ),
        ),
        (ExplanationStyle.BALANCED, re.compile(r"\b(balanced (answers|explanations)|medium length)\b", re.IGNORECASE)),
    ),
    "pace": (
        (
            Pace.SLOW,
            re.compile(
                r"\b(slow(er)?( it)? down|(you're|you are|that's|that is|this is) (going |moving )?too fast|"
                r"one step at a time|go slower|a slower pace)\b",
                re.IGNORECASE,
            ),
        ),
        (
            Pace.FAST,
            re.compile(
                r"\b(speed( it)? up|(you're|you are|that's|that is|this is) (going |moving )?too slow|"
                r"go faster|move on quicker|a faster pace)\b",
                re.IGNORECASE,
            ),
        ),
        (Pace.NORMAL, re.compile(r"\b(normal pace|regular pace)\b", re.IGNORECASE)),
    ),
    "complexity": (
        (
            Complexity.BEGINNER,
            re.compile(r"\b(i'?m a beginner|i am a beginner|i'?m new to this|eli5|like i'?m (5|five))\b", re.IGNORECASE),
        ),
        (
            Complexity.ADVANCED,
            re.compile(
                r"\b((make it|be) more (advanced|technical)|i'?m (an )?(advanced|expert)|i am (an )?(advanced|expert)|"
                r"challenge me|expert level)\b",
                re.IGNORECASE,
            ),
        ),
        (Complexity.INTERMEDIATE, re.compile(r"\b(intermediate level|i'?m intermediate)\b", re.IGNORECASE)),
    ),
    "wants_examples": (
        (
            False,
            re.compile(
                r"\b(no (more )?examples|without examples|skip the examples|fewer examples|"
                r"(don'?t|do not) need examples)\b",
                re.IGNORECASE,
            ),
        ),
        (
            True,
            re.compile(
                r"\b(always (give|include|use) examples|i learn better with examples|i (like|love|prefer) examples)\b",
                re.IGNORECASE,
            ),
        ),
    ),
    "wants_analogies": (
        (False, re.compile(r"\b(no (more )?analogies|without analogies|skip the analogies)\b", re.IGNORECASE)),
        (
            True,
            re.compile(
                r"\b(always use analogies|i learn better with analogies|i (like|love|prefer) analogies)\b",
                re.IGNORECASE,
            ),
        ),
    ),
    "wants_exercises": (
        (
            False,
            re.compile(r"\b(no (more )?(exercises|practice)|without exercises|skip the exercises)\b", re.IGNORECASE),
        ),
        (
            True,
            re.compile(
                r"\b(always (give|include) (exercises|practice)|i (like|love|want) (more )?(exercises|practice problems))\b",
                re.IGNORECASE,
            ),
        ),
    ),
}

RESET_ALL_RE = re.compile(r"\b(reset|forget|clear) (all (of )?)?my preferences\b", re.IGNORECASE)
RESET_FIELD_RE = re.compile(
    r"\b(?:reset|forget|clear) my (?P<field>format|style|explanation style|pace|level|complexity)\b",
    re.IGNORECASE,
)
RESET_FIELD_NAMES: Mapping[str, str] = {
    "format": "format",
    "style": "explanation_style",
    "explanation style": "explanation_style",
    "pace": "pace",
    "level": "complexity",
    "complexity": "complexity",
}

STUCK_RE = re.compile(
    r"\b(don'?t understand|do not understand|still don'?t get|i'?m (so )?confused|confused|"
    r"i'?m lost|i am lost|i'?m stuck|what do you mean|explain (it |that )?again|makes no sense|i need help)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class FormatPolicy:
    """Where to go when the user rejects a format."""

    precedence: tuple[Format, ...] = DEFAULT_FORMAT_PRECEDENCE
    substitutions: Mapping[Format, Format] = field(default_factory=dict)

    def choose(self, wanted: Format, rejected: Collection[Format]) -> Format:
        """Return `wanted` unless rejected, else its substitute, else the first allowed format."""
        if wanted not in rejected:
            return wanted
        substitute = self.substitutions.get(wanted)
        if substitute is not None and substitute not in rejected:
            return substitute
        for candidate in self.precedence:
            if candidate not in rejected:
                return candidate
        logger.warning("detector.all_formats_rejected keeping={}", wanted)
        return wanted


@dataclass
class RuleFindings:
    liked: list[Format] = field(default_factory=list)
    rejected: set[Format] = field(default_factory=set)
    sets: dict[str, Any] = field(default_factory=dict)
    removals: set[str] = field(default_factory=set)
    implicit_format: Format | None = None

    @property
    def explicit(self) -> bool:
        return bool(self.liked or self.rejected or self.sets or self.removals)

    def decided_fields(self) -> set[str]:
        decided = set(self.sets) | self.removals
        if self.liked or self.rejected:
            decided.add("format")
        return decided


def split_clauses(message: str) -> list[str]:
    normalized = message.replace("’", "'")
    return [part.strip() for part in CLAUSE_SPLIT_RE.split(normalized) if part and part.strip()]


def format_signals(clause: str) -> tuple[list[Format], list[Format]]:
    """Liked and rejected formats in one clause.

    A format counts only as the object of a preference cue ("I hate text")
    or as the subject of a verdict ("videos are boring"). Mentions inside
    ordinary questions ("how does video compression work") carry no signal.
    """

    hits: list[tuple[int, bool, list[Format]]] = []
    for pattern in (PRE_CUE_RE, VERDICT_RE):
        for match in pattern.finditer(clause):
            hits.append((match.start("formats"), bool(match.group("dislike")), _formats_in(match.group("formats"))))

    liked: list[Format] = []
    rejected: list[Format] = []
    for _, dislike, formats in sorted(hits, key=lambda hit: hit[0]):
        target = rejected if dislike else liked
        target.extend(fmt for fmt in formats if fmt not in target)
    if liked:
        for match in CONTRAST_RE.finditer(clause):
            rejected.extend(
                fmt for fmt in _formats_in(match.group("formats")) if fmt not in rejected and fmt not in liked
            )
    return liked, rejected


def _formats_in(text: str) -> list[Format]:
    found: list[Format] = []
    for match in FORMAT_TERM_RE.finditer(text):
        fmt = next(fmt for fmt in _FORMAT_TERMS if match.group(fmt.value))
        if fmt not in found:
            found.append(fmt)
    return found


def apply_rules(message: str) -> RuleFindings:
    findings = RuleFindings()
    normalized = message.replace("’", "'")

    for clause in split_clauses(normalized):
        liked, rejected = format_signals(clause)
        findings.liked.extend(liked)
        findings.rejected.update(rejected)

    if RESET_ALL_RE.search(normalized):
        findings.removals.update(PREFERENCE_FIELDS)
    for match in RESET_FIELD_RE.finditer(normalized):
        findings.removals.add(RESET_FIELD_NAMES[match.group("field").casefold()])

    for name, rules in FIELD_RULES.items():
        last_position = -1
        for value, pattern in rules:
            for match in pattern.finditer(normalized):
                if match.start() > last_position:
                    last_position = match.start()
                    findings.sets[name] = value

    for fmt, pattern in IMPLICIT_FORMAT_CUES.items():
        if pattern.search(normalized) and fmt not in findings.rejected:
            findings.implicit_format = fmt
            break
    return findings


def is_repeat_question(message: str, history: Sequence[PriorTurn]) -> bool:
    if len(message.split()) < REPEAT_MIN_WORDS:
        return False
    earlier = [turn.message for turn in history if turn.is_user][-REPEAT_LOOKBACK:]
    if not earlier:
        return False
    best_match = process.extractOne(
        message,
        earlier,
        scorer=fuzz.ratio,
        processor=utils.default_process,
        score_cutoff=REPEAT_SCORE_CUTOFF,
    )
    return best_match is not None


class DetectionReport(BaseModel):
    """Shape the detector model is asked to return."""

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    is_stuck: bool = False
    new_preferences: dict[str, Any] = Field(default_factory=dict)
    preferences_to_remove: list[str] = Field(default_factory=list)
    reasoning: str = ""
    confidence: int = NEUTRAL_CONFIDENCE

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> int:
        try:
            return max(0, min(100, int(value)))
        except (TypeError, ValueError):
            return NEUTRAL_CONFIDENCE

    @field_validator("new_preferences", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return value or {}


def _field_name(raw: str) -> str | None:
    name = to_snake(raw.strip())
    if name == "format_preference":
        name = "format"
    return name if name in PREFERENCE_FIELDS else None


class PreferenceDetectorWorker(Worker):
    """Propose a preference delta and a format for the current message."""

    default_name = "PreferenceDetector"

    def __init__(
        self,
        model: ModelClient | None = None,
        *,
        policy: FormatPolicy | None = None,
        name: str | None = None,
    ) -> None:
        super().__init__(name)
        self._model = model
        self._policy = policy or FormatPolicy()

    @property
    def policy(self) -> FormatPolicy:
        return self._policy

    async def handle(self, envelope: Envelope) -> Detection:
        call = envelope.payload
        if not isinstance(call, DetectCall):
            raise self.unsupported(envelope)
        return await self.detect(call.user_id, call.message, call.history, call.current)

    async def detect(
        self,
        user_id: str,
        message: str,
        history: Sequence[PriorTurn],
        current: PreferenceSnapshot,
    ) -> Detection:
        findings = apply_rules(message)
        stuck = bool(STUCK_RE.search(message.replace("’", "'"))) or is_repeat_question(message, history)
        confidence = (
            EXPLICIT_CONFIDENCE
            if findings.explicit
            else IMPLICIT_CONFIDENCE
            if findings.implicit_format or stuck
            else NEUTRAL_CONFIDENCE
        )
        reasoning = [self._describe(findings)]

        if self._model is not None:
            report = await self._refine(self._model, message, history, current)
            if report is not None:
                added = self._merge_report(findings, report)
                stuck = stuck or report.is_stuck
                if added:
                    confidence = max(confidence, report.confidence)
                if report.reasoning:
                    reasoning.append(f"model: {report.reasoning}")

        sets = dict(findings.sets)
        allowed_likes = [fmt for fmt in findings.liked if fmt not in findings.rejected]
        if allowed_likes:
            sets["format"] = allowed_likes[-1]
        delta = PreferenceDelta(sets=sets, removals=frozenset(findings.removals))
        projected = apply_delta(current, delta).format
        if projected in findings.rejected:
            sets["format"] = self._policy.choose(projected, findings.rejected)
            delta = PreferenceDelta(sets=sets, removals=frozenset(findings.removals))
        delta = delta.effective_against(current)

        recommended = apply_delta(current, delta).format
        if not allowed_likes and findings.implicit_format is not None:
            recommended = findings.implicit_format
        recommended = self._policy.choose(recommended, findings.rejected)

        logger.info(
            "detector.detect user={} recommended={} rejected={} stuck={} delta={}",
            user_id,
            recommended,
            sorted(findings.rejected),
            stuck,
            delta.describe(),
        )
        return Detection(
            delta=delta,
            recommended_format=recommended,
            is_stuck=stuck,
            confidence=confidence,
            rejected_formats=frozenset(findings.rejected),
            reasoning="; ".join(part for part in reasoning if part),
        )

    async def _refine(
        self,
        model: ModelClient,
        message: str,
        history: Sequence[PriorTurn],
        current: PreferenceSnapshot,
    ) -> DetectionReport | None:
        try:
            raw = await model.complete(self.build_prompt(message, history, current))
            return DetectionReport.model_validate(extract_object(raw))
        except (MalformedOutputError, ValidationError) as exc:
            logger.warning("detector.model_output_ignored reason={}", exc)
        except Exception:
            logger.opt(exception=True).warning("detector.model_error")
        return None

    def _merge_report(self, findings: RuleFindings, report: DetectionReport) -> bool:
        decided = findings.decided_fields()
        added = False
        for raw_name, value in report.new_preferences.items():
            name = _field_name(raw_name)
            if name is None or name in decided or value is None:
                continue
            try:
                coerced = coerce_field(name, value)
            except ValueError:
                continue
            if name == "format":
                if coerced in findings.rejected:
                    continue
                findings.liked.append(coerced)
            else:
                findings.sets[name] = coerced
            added = True
        for raw_name in report.preferences_to_remove:
            name = _field_name(raw_name)
            if name is None or name in decided:
                continue
            findings.removals.add(name)
            added = True
        return added

    def build_prompt(self, message: str, history: Sequence[PriorTurn], current: PreferenceSnapshot) -> str:
        turns = "\n".join(
            f"{index}. {'Student' if turn.is_user else 'Teacher'}: {turn.message[:200]}"
            for index, turn in enumerate(history[-REPEAT_LOOKBACK:], start=1)
        )
        return "\n\n".join(
            [
                "You are analyzing a learning conversation to detect GLOBAL PREFERENCES that should be "
                "saved to the student's profile.",
                f'USER MESSAGE: "{message}"',
                f"CONVERSATION HISTORY:\n{turns or 'None'}",
                "CURRENT SAVED PREFERENCES:\n" + json.dumps(current.to_payload(), indent=2),
                "Save only lasting preferences. One-off requests such as 'can you give an example?' "
                "are not preferences. Confusion and repeated questions mean the student is stuck; "
                "report that without saving anything.",
                "Respond with one JSON object with these keys:\n"
                "- isStuck: boolean\n"
                "- newPreferences: object with any of format (text, video, flashcards), explanation_style "
                "(concise, detailed, balanced), pace (slow, normal, fast), complexity (beginner, "
                "intermediate, advanced), wants_examples, wants_analogies, wants_exercises (booleans)\n"
                "- preferencesToRemove: list of preference names to reset to their defaults\n"
                "- reasoning: one sentence\n"
                "- confidence: number from 0 to 100",
                "Return ONLY valid JSON, no markdown or extra text.",
            ]
        )

    @staticmethod
    def _describe(findings: RuleFindings) -> str:
        parts: list[str] = []
        if findings.liked:
            parts.append("liked=" + ",".join(fmt.value for fmt in findings.liked))
        if findings.rejected:
            parts.append("rejected=" + ",".join(sorted(fmt.value for fmt in findings.rejected)))
        if findings.sets:
            parts.append("sets=" + ",".join(sorted(findings.sets)))
        if findings.removals:
            parts.append("removals=" + ",".join(sorted(findings.removals)))
        if findings.implicit_format:
            parts.append(f"implicit={findings.implicit_format.value}")
        return " ".join(parts) or "no preference signal"
