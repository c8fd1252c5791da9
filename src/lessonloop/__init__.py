"""lessonloop - evaluation-gated teaching content pipeline."""

from .config import Settings, load_settings
from .pipeline import Pipeline
from .preferences import PreferenceDelta, PreferenceSnapshot
from .store import InMemoryContentSink, InMemoryPreferenceStore, JSONLContentSink, JSONPreferenceStore
from .types import LessonContext, PriorTurn, TeachingRequest, TeachingResult

__version__ = "0.1.0"

__all__ = [
    "InMemoryContentSink",
    "InMemoryPreferenceStore",
    "JSONLContentSink",
    "JSONPreferenceStore",
    "LessonContext",
    "Pipeline",
    "PreferenceDelta",
    "PreferenceSnapshot",
    "PriorTurn",
    "Settings",
    "TeachingRequest",
    "TeachingResult",
    "load_settings",
]
