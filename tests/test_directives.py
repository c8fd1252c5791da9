from __future__ import annotations

from dataclasses import replace

import pytest

from lessonloop.directives import DirectiveCache, preference_instructions, render_style_directives
from lessonloop.preferences import PreferenceSnapshot
from lessonloop.types import Complexity, ExplanationStyle, LessonContext, Pace

LESSON = LessonContext(title="Recursion", topic="Algorithms")


def test_directives_name_the_lesson_and_every_preference() -> None:
    snapshot = PreferenceSnapshot(
        pace=Pace.SLOW,
        complexity=Complexity.BEGINNER,
        wants_analogies=False,
    )

    text = render_style_directives(snapshot, LESSON)

    assert '"Recursion" (Topic: Algorithms)' in text
    assert "STUDENT PREFERENCES (MUST APPLY):" in text
    assert "- INCLUDE multiple concrete examples and demonstrations" in text
    assert "analogies" not in text
    assert "- Preferred Pace: slow" in text
    assert "- Use BEGINNER-FRIENDLY language, avoid jargon" in text
    assert "explain step-by-step" in text
    assert "STUCK" not in text


def test_directives_without_lesson_and_with_stuck_student() -> None:
    text = render_style_directives(PreferenceSnapshot(), None, stuck=True)

    assert '"General Learning Topic" (Topic: General)' in text
    assert "THE STUDENT IS STUCK:" in text


def test_concise_style_wins_over_detailed_pace() -> None:
    snapshot = PreferenceSnapshot(explanation_style=ExplanationStyle.CONCISE, pace=Pace.SLOW)

    instructions = preference_instructions(snapshot)

    assert "Keep explanations CONCISE and focused on key points" in instructions
    assert all("DETAILED" not in item for item in instructions)


def test_no_toggles_and_defaults_leave_no_preference_block() -> None:
    snapshot = PreferenceSnapshot(wants_examples=False, wants_analogies=False, wants_exercises=False)

    assert preference_instructions(snapshot) == []
    assert "STUDENT PREFERENCES" not in render_style_directives(snapshot)


def test_cache_hits_until_change_count_moves() -> None:
    cache = DirectiveCache()
    calls: list[int] = []

    def render(snapshot: PreferenceSnapshot, lesson: LessonContext | None, stuck: bool) -> str:
        calls.append(snapshot.change_count)
        return f"v{snapshot.change_count}"

    snapshot = PreferenceSnapshot(change_count=1)
    assert cache.get_or_render("u1", snapshot, LESSON, False, render) == "v1"
    assert cache.get_or_render("u1", snapshot, LESSON, False, render) == "v1"
    assert (cache.hits, cache.misses) == (1, 1)

    updated = replace(snapshot, pace=Pace.FAST, change_count=2)
    assert cache.get_or_render("u1", updated, LESSON, False, render) == "v2"
    assert cache.get_or_render("u1", updated, LESSON, True, render) == "v2"
    assert calls == [1, 2, 2]
    assert len(cache) == 3


def test_cache_evicts_least_recently_used() -> None:
    cache = DirectiveCache(max_entries=2)
    first = PreferenceSnapshot(change_count=1)
    second = PreferenceSnapshot(change_count=2)
    third = PreferenceSnapshot(change_count=3)

    cache.get_or_render("u1", first, None, False)
    cache.get_or_render("u1", second, None, False)
    cache.get_or_render("u1", first, None, False)
    cache.get_or_render("u1", third, None, False)
    assert len(cache) == 2

    cache.get_or_render("u1", first, None, False)
    assert cache.hits == 2
    cache.get_or_render("u1", second, None, False)
    assert cache.misses == 4

    cache.clear()
    assert len(cache) == 0


def test_cache_size_must_be_positive() -> None:
    with pytest.raises(ValueError, match="max_entries"):
        DirectiveCache(max_entries=0)
