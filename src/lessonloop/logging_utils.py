"""Runtime logging helpers."""

from __future__ import annotations

import os
import sys
from contextvars import ContextVar, Token
from logging import Handler
from typing import Literal

import loguru
from loguru import logger
from rich import get_console
from rich.logging import RichHandler

LogProfile = Literal["default", "cli"]

_PROFILE_FORMATS: dict[LogProfile, str] = {
    "cli": "{level} | {extra[cycle]} | {message}",
    "default": "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<6} | {name}:{function}:{line} | {extra[cycle]} | {message}",
}
_CONFIGURED_PROFILE: LogProfile | None = None
_cycle_context: ContextVar[str] = ContextVar("cycle", default="-")


def current_cycle() -> str:
    """Get the id of the teaching cycle running in this context."""
    return _cycle_context.get()


def bind_cycle(cycle_id: str) -> Token[str]:
    """Mark the current context as running one cycle; returns a reset token."""
    return _cycle_context.set(cycle_id)


def unbind_cycle(token: Token[str]) -> None:
    _cycle_context.reset(token)


def _build_cli_handler() -> Handler:
    return RichHandler(
        console=get_console(),
        show_level=True,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )


def configure_logging(*, profile: LogProfile = "default", level: str | None = None) -> None:
    """Configure process-level logging once."""

    def inject_context(record: loguru.Record) -> None:
        record["extra"]["cycle"] = current_cycle()

    global _CONFIGURED_PROFILE
    if profile == _CONFIGURED_PROFILE:
        return

    resolved_level = (level or os.getenv("LESSONLOOP_LOG_LEVEL", "INFO")).upper()
    logger.remove()
    if profile == "cli":
        logger.add(
            _build_cli_handler(),
            level=resolved_level,
            format=_PROFILE_FORMATS[profile],
            backtrace=False,
            diagnose=False,
        )
    else:
        logger.add(
            sys.stderr,
            level=resolved_level,
            format=_PROFILE_FORMATS[profile],
            backtrace=False,
            diagnose=False,
        )
    logger.configure(patcher=inject_context)
    _CONFIGURED_PROFILE = profile
