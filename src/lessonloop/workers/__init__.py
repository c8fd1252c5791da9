"""Workers behind the dispatcher."""

from .base import Worker
from .content import (
    CONTENT_WORKER_TYPES,
    ContentWorker,
    FlashcardWorker,
    TextWorker,
    VideoWorker,
    build_content_workers,
)
from .detector import FormatPolicy, PreferenceDetectorWorker
from .judge import Criterion, JudgeWorker, Rubric, heuristic_evaluation

__all__ = [
    "CONTENT_WORKER_TYPES",
    "ContentWorker",
    "Criterion",
    "FlashcardWorker",
    "FormatPolicy",
    "JudgeWorker",
    "PreferenceDetectorWorker",
    "Rubric",
    "TextWorker",
    "VideoWorker",
    "Worker",
    "build_content_workers",
    "heuristic_evaluation",
]
