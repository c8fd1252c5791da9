"""Style directives rendered from a preference snapshot."""

from __future__ import annotations

import threading
from collections import OrderedDict
from collections.abc import Callable

from loguru import logger

from lessonloop.preferences import PreferenceSnapshot
from lessonloop.types import Complexity, ExplanationStyle, LessonContext, Pace

DEFAULT_CACHE_SIZE = 256

type DirectiveKey = tuple[str, int, LessonContext | None, bool]


def preference_instructions(snapshot: PreferenceSnapshot) -> list[str]:
    instructions: list[str] = []
    if snapshot.wants_examples:
        instructions.append("INCLUDE multiple concrete examples and demonstrations")
    if snapshot.wants_analogies:
        instructions.append("USE analogies and metaphors to explain concepts")
    if snapshot.wants_exercises:
        instructions.append("PROVIDE practice exercises or challenges when appropriate")

    if snapshot.explanation_style is ExplanationStyle.CONCISE or snapshot.pace is Pace.FAST:
        instructions.append("Keep explanations CONCISE and focused on key points")
    elif snapshot.explanation_style is ExplanationStyle.DETAILED or snapshot.pace is Pace.SLOW:
        instructions.append("Provide DETAILED, thorough explanations with depth")

    if snapshot.complexity is Complexity.BEGINNER:
        instructions.append("Use BEGINNER-FRIENDLY language, avoid jargon")
    elif snapshot.complexity is Complexity.ADVANCED:
        instructions.append("Use TECHNICAL terminology, assume prior knowledge")
    return instructions


def _pace_line(pace: Pace) -> str:
    if pace is Pace.FAST:
        return "Be concise and efficient"
    if pace is Pace.SLOW:
        return "Be patient and thorough, explain step-by-step"
    return "Balance detail with clarity"


def _complexity_line(complexity: Complexity) -> str:
    if complexity is Complexity.BEGINNER:
        return "Use simple language and basic concepts"
    if complexity is Complexity.ADVANCED:
        return "Include technical details and advanced concepts"
    return "Provide intermediate-level explanations"


def render_style_directives(
    snapshot: PreferenceSnapshot,
    lesson: LessonContext | None = None,
    stuck: bool = False,
) -> str:
    """Render the tutor directives every content worker receives."""

    title = lesson.title if lesson and lesson.title else "General Learning Topic"
    topic = lesson.topic if lesson and lesson.topic else "General"
    lines = [f'You are an AI tutor helping a student learn about "{title}" (Topic: {topic}).', ""]

    instructions = preference_instructions(snapshot)
    if instructions:
        lines.append("STUDENT PREFERENCES (MUST APPLY):")
        lines.extend(f"- {item}" for item in instructions)
        lines.append("")

    lines.extend(
        [
            "STUDENT PROFILE:",
            f"- Preferred Pace: {snapshot.pace}",
            f"- Complexity Level: {snapshot.complexity}",
            f"- Explanation Style: {snapshot.explanation_style}",
            "",
            "TEACHING APPROACH:",
            f"- {_pace_line(snapshot.pace)}",
            f"- {_complexity_line(snapshot.complexity)}",
            "- Always check for understanding",
            "- Build on previous knowledge",
        ]
    )
    if stuck:
        lines.extend(
            [
                "",
                "THE STUDENT IS STUCK:",
                "- Re-explain from a different angle instead of repeating the last answer",
                "- Break the concept into smaller steps",
            ]
        )
    lines.extend(["", "Remember: STRICTLY FOLLOW the student preferences listed above."])
    return "\n".join(lines)


class DirectiveCache:
    """Bounded LRU of rendered directives.

    The key carries the snapshot's change counter, so a preference update
    yields a new key and stale text is simply never read again.
    """

    def __init__(self, max_entries: int = DEFAULT_CACHE_SIZE) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._entries: OrderedDict[DirectiveKey, str] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_or_render(
        self,
        user_id: str,
        snapshot: PreferenceSnapshot,
        lesson: LessonContext | None,
        stuck: bool,
        render: Callable[[PreferenceSnapshot, LessonContext | None, bool], str] = render_style_directives,
    ) -> str:
        key: DirectiveKey = (user_id, snapshot.change_count, lesson, stuck)
        with self._lock:
            cached = self._entries.get(key)
            if cached is not None:
                self._entries.move_to_end(key)
                self.hits += 1
                return cached
            self.misses += 1

        rendered = render(snapshot, lesson, stuck)
        with self._lock:
            self._entries[key] = rendered
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("directives.evict user={} change_count={}", evicted[0], evicted[1])
        return rendered

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
