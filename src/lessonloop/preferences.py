"""Per-user preference snapshot and the delta rules that change it."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field, replace
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from lessonloop.types import Complexity, ExplanationStyle, Format, Pace


@dataclass(frozen=True)
class PreferenceSnapshot:
    """Stored preferences of one user."""

    format: Format = Format.TEXT
    explanation_style: ExplanationStyle = ExplanationStyle.BALANCED
    pace: Pace = Pace.NORMAL
    complexity: Complexity = Complexity.INTERMEDIATE
    wants_examples: bool = True
    wants_analogies: bool = True
    wants_exercises: bool = True
    change_count: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {key: str(value) if isinstance(value, StrEnum) else value for key, value in asdict(self).items()}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> PreferenceSnapshot:
        """Build a snapshot from stored data; unknown or bad values fall back to defaults."""
        values: dict[str, Any] = {}
        for name, value in payload.items():
            if name == "change_count":
                if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
                    values[name] = value
                continue
            if name not in FIELD_TYPES:
                continue
            try:
                values[name] = coerce_field(name, value)
            except ValueError:
                continue
        return cls(**values)


DEFAULT_SNAPSHOT = PreferenceSnapshot()

FIELD_TYPES: Mapping[str, type] = MappingProxyType(
    {
        "format": Format,
        "explanation_style": ExplanationStyle,
        "pace": Pace,
        "complexity": Complexity,
        "wants_examples": bool,
        "wants_analogies": bool,
        "wants_exercises": bool,
    }
)
PREFERENCE_FIELDS: frozenset[str] = frozenset(FIELD_TYPES)


def coerce_field(name: str, value: Any) -> Any:
    """Validate one preference value against its field type."""

    if name not in FIELD_TYPES:
        raise ValueError(f"unknown preference field: {name}")
    expected = FIELD_TYPES[name]
    if expected is bool:
        if not isinstance(value, bool):
            raise ValueError(f"{name} expects a bool, got {value!r}")
        return value
    if expected is Format:
        coerced = Format.coerce(value)
        if coerced is None:
            raise ValueError(f"{name} expects one of {[item.value for item in Format]}, got {value!r}")
        return coerced
    try:
        return expected(value)
    except ValueError as exc:
        raise ValueError(f"{name} expects one of {[item.value for item in expected]}, got {value!r}") from exc


def default_of(name: str) -> Any:
    if name not in FIELD_TYPES:
        raise ValueError(f"unknown preference field: {name}")
    return getattr(DEFAULT_SNAPSHOT, name)


@dataclass(frozen=True)
class PreferenceDelta:
    """Partial update: removals reset to defaults first, then sets apply."""

    sets: Mapping[str, Any] = field(default_factory=dict)
    removals: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        validated = {name: coerce_field(name, value) for name, value in self.sets.items()}
        unknown = set(self.removals) - PREFERENCE_FIELDS
        if unknown:
            raise ValueError(f"unknown preference fields in removals: {sorted(unknown)}")
        object.__setattr__(self, "sets", MappingProxyType(validated))
        object.__setattr__(self, "removals", frozenset(self.removals))

    @property
    def is_empty(self) -> bool:
        return not self.sets and not self.removals

    def without(self, names: Iterable[str]) -> PreferenceDelta:
        dropped = set(names)
        return PreferenceDelta(
            sets={name: value for name, value in self.sets.items() if name not in dropped},
            removals=frozenset(name for name in self.removals if name not in dropped),
        )

    def effective_against(self, snapshot: PreferenceSnapshot) -> PreferenceDelta:
        """Keep only the parts that would change the snapshot."""
        target: dict[str, Any] = {name: default_of(name) for name in self.removals}
        target.update(self.sets)
        sets: dict[str, Any] = {}
        removals: set[str] = set()
        for name, value in target.items():
            if getattr(snapshot, name) == value:
                continue
            if name in self.sets:
                sets[name] = value
            else:
                removals.add(name)
        return PreferenceDelta(sets=sets, removals=frozenset(removals))

    def describe(self) -> dict[str, Any]:
        return {
            "sets": {name: str(value) if isinstance(value, StrEnum) else value for name, value in self.sets.items()},
            "removals": sorted(self.removals),
        }


def apply_delta(snapshot: PreferenceSnapshot, delta: PreferenceDelta) -> PreferenceSnapshot:
    """Return a new snapshot with the delta applied and the change counter bumped."""

    values: dict[str, Any] = {name: default_of(name) for name in delta.removals}
    values.update(delta.sets)
    return replace(snapshot, change_count=snapshot.change_count + 1, **values)


def changed_fields(before: PreferenceSnapshot, after: PreferenceSnapshot) -> frozenset[str]:
    return frozenset(name for name in PREFERENCE_FIELDS if getattr(before, name) != getattr(after, name))
