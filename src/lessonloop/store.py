"""Preference stores and content sinks."""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from lessonloop.errors import StoreUnavailableError
from lessonloop.preferences import PreferenceDelta, PreferenceSnapshot, apply_delta
from lessonloop.types import Candidate, Evaluation, TeachingRequest

PREFERENCES_FILE = "preferences.json"
CONTENT_FILE = "content.jsonl"


@dataclass(frozen=True)
class ApplyResult:
    applied: bool
    snapshot: PreferenceSnapshot


class PreferenceStore(Protocol):
    async def get(self, user_id: str) -> PreferenceSnapshot: ...

    async def apply(self, user_id: str, delta: PreferenceDelta, expected_change_count: int) -> ApplyResult: ...


class ContentSink(Protocol):
    async def save(
        self,
        user_id: str,
        request: TeachingRequest,
        candidate: Candidate,
        evaluation: Evaluation,
    ) -> None: ...


class LockedPreferenceStore(ABC):
    """Compare-and-apply on top of synchronous read/write hooks.

    The whole read-compare-write of `apply` runs under one lock with no
    await inside it, so a cancelled caller never leaves half an update.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    async def get(self, user_id: str) -> PreferenceSnapshot:
        with self._lock:
            return self._get_or_create_locked(user_id)

    async def apply(self, user_id: str, delta: PreferenceDelta, expected_change_count: int) -> ApplyResult:
        with self._lock:
            current = self._get_or_create_locked(user_id)
            if current.change_count != expected_change_count:
                logger.info(
                    "store.apply.rejected user={} expected={} stored={}",
                    user_id,
                    expected_change_count,
                    current.change_count,
                )
                return ApplyResult(applied=False, snapshot=current)
            updated = apply_delta(current, delta)
            self._write_locked(user_id, updated)
        logger.info("store.apply user={} change_count={} delta={}", user_id, updated.change_count, delta.describe())
        return ApplyResult(applied=True, snapshot=updated)

    def _get_or_create_locked(self, user_id: str) -> PreferenceSnapshot:
        snapshot = self._read_locked(user_id)
        if snapshot is None:
            snapshot = PreferenceSnapshot()
            self._create_locked(user_id, snapshot)
        return snapshot

    @abstractmethod
    def _read_locked(self, user_id: str) -> PreferenceSnapshot | None: ...

    @abstractmethod
    def _write_locked(self, user_id: str, snapshot: PreferenceSnapshot) -> None: ...

    def _create_locked(self, user_id: str, snapshot: PreferenceSnapshot) -> None:
        self._write_locked(user_id, snapshot)


class InMemoryPreferenceStore(LockedPreferenceStore):
    def __init__(self, initial: dict[str, PreferenceSnapshot] | None = None) -> None:
        super().__init__()
        self._snapshots: dict[str, PreferenceSnapshot] = dict(initial or {})

    def _read_locked(self, user_id: str) -> PreferenceSnapshot | None:
        return self._snapshots.get(user_id)

    def _write_locked(self, user_id: str, snapshot: PreferenceSnapshot) -> None:
        self._snapshots[user_id] = snapshot


class JSONPreferenceStore(LockedPreferenceStore):
    """Preferences of every user in one JSON file, rewritten on each accepted apply."""

    def __init__(self, file_path: str | Path) -> None:
        super().__init__()
        self.file_path = Path(file_path)
        self._snapshots: dict[str, PreferenceSnapshot] | None = None

    def _load_locked(self) -> dict[str, PreferenceSnapshot]:
        if self._snapshots is not None:
            return self._snapshots
        loaded: dict[str, PreferenceSnapshot] = {}
        if self.file_path.exists():
            try:
                with open(self.file_path, encoding="utf-8") as f:
                    raw = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise StoreUnavailableError(f"cannot read preference store {self.file_path}: {e}") from e
            if not isinstance(raw, dict):
                raise StoreUnavailableError(f"preference store {self.file_path} does not hold a JSON object")
            loaded = {
                str(user_id): PreferenceSnapshot.from_payload(payload)
                for user_id, payload in raw.items()
                if isinstance(payload, dict)
            }
        self._snapshots = loaded
        return loaded

    def _save_locked(self, snapshots: dict[str, PreferenceSnapshot]) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.file_path.with_suffix(self.file_path.suffix + ".tmp")
        payload = {user_id: snapshot.to_payload() for user_id, snapshot in snapshots.items()}
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
            tmp_path.replace(self.file_path)
        except OSError as e:
            raise StoreUnavailableError(f"cannot write preference store {self.file_path}: {e}") from e

    def _read_locked(self, user_id: str) -> PreferenceSnapshot | None:
        return self._load_locked().get(user_id)

    def _create_locked(self, user_id: str, snapshot: PreferenceSnapshot) -> None:
        self._load_locked()[user_id] = snapshot

    def _write_locked(self, user_id: str, snapshot: PreferenceSnapshot) -> None:
        snapshots = dict(self._load_locked())
        snapshots[user_id] = snapshot
        self._save_locked(snapshots)
        self._snapshots = snapshots


@dataclass(frozen=True)
class ContentRecord:
    """One saved `(candidate, evaluation)` pair."""

    user_id: str
    request: TeachingRequest
    candidate: Candidate
    evaluation: Evaluation
    saved_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_payload(self) -> dict[str, Any]:
        lesson = self.request.lesson
        return {
            "user_id": self.user_id,
            "message": self.request.message,
            "lesson": asdict(lesson) if lesson is not None else None,
            "format": str(self.candidate.format),
            "attempt": self.candidate.attempt,
            "worker": self.candidate.worker,
            "fallback": self.candidate.is_fallback,
            "body": self.candidate.body.model_dump(mode="json", by_alias=True),
            "evaluation": {
                "total_score": self.evaluation.total_score,
                "passed": self.evaluation.passed,
                "source": str(self.evaluation.source),
                "breakdown": [asdict(item) for item in self.evaluation.breakdown],
                "improvements": list(self.evaluation.improvements),
                "overall_feedback": self.evaluation.overall_feedback,
            },
            "saved_at": self.saved_at.isoformat(),
        }


class InMemoryContentSink:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[ContentRecord] = []

    @property
    def records(self) -> list[ContentRecord]:
        with self._lock:
            return list(self._records)

    async def save(
        self,
        user_id: str,
        request: TeachingRequest,
        candidate: Candidate,
        evaluation: Evaluation,
    ) -> None:
        record = ContentRecord(user_id=user_id, request=request, candidate=candidate, evaluation=evaluation)
        with self._lock:
            self._records.append(record)


class JSONLContentSink:
    """Append one JSON line per saved record."""

    def __init__(self, file_path: str | Path) -> None:
        self.file_path = Path(file_path)
        self._lock = threading.Lock()

    async def save(
        self,
        user_id: str,
        request: TeachingRequest,
        candidate: Candidate,
        evaluation: Evaluation,
    ) -> None:
        record = ContentRecord(user_id=user_id, request=request, candidate=candidate, evaluation=evaluation)
        line = json.dumps(record.to_payload(), ensure_ascii=False)
        with self._lock:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            with self.file_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def read(self) -> list[dict[str, Any]]:
        if not self.file_path.exists():
            return []
        records: list[dict[str, Any]] = []
        with self._lock, self.file_path.open("r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(payload, dict):
                    records.append(payload)
        return records
