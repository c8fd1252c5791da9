from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

import pytest
from loguru import logger

from lessonloop.config import Settings


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "LESSONLOOP_MODEL",
        "LESSONLOOP_API_KEY",
        "LESSONLOOP_API_BASE",
        "LESSONLOOP_MAX_ATTEMPTS",
        "LESSONLOOP_PASS_THRESHOLD",
        "LESSONLOOP_FORMAT_PRECEDENCE",
        "LESSONLOOP_FORMAT_SUBSTITUTIONS",
        "LESSONLOOP_LOG_LEVEL",
        "LESSONLOOP_HOME",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="DEBUG")
    try:
        yield messages
    finally:
        logger.remove(handler_id)


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    def _make(**overrides: Any) -> Settings:
        overrides.setdefault("worker_timeout_seconds", 2.0)
        return Settings(_env_file=None, **overrides)

    return _make
