"""Model clients the workers generate, judge and detect with."""

from __future__ import annotations

from typing import Any, Protocol

from loguru import logger
from republic import LLM

from lessonloop.config import Settings


class ModelClient(Protocol):
    """Minimal async contract for text completion backends."""

    async def complete(self, prompt: str, *, system_prompt: str = "") -> str: ...


class RepublicModel:
    """Republic-backed completion client."""

    def __init__(self, llm: LLM, *, max_tokens: int) -> None:
        self._llm = llm
        self._max_tokens = max_tokens

    @property
    def name(self) -> str:
        return f"{self._llm.provider}:{self._llm.model}"

    async def complete(self, prompt: str, *, system_prompt: str = "") -> str:
        logger.debug("model.call.start model={} prompt_chars={}", self.name, len(prompt))
        result = await self._llm.chat_async(
            prompt,
            system_prompt=system_prompt or None,
            max_tokens=self._max_tokens,
        )
        return _result_text(result)


class EchoModel:
    """Offline client that returns the prompt it was given."""

    name = "echo"

    async def complete(self, prompt: str, *, system_prompt: str = "") -> str:
        _ = system_prompt
        return prompt


def build_llm(settings: Settings) -> LLM:
    """Build Republic LLM client from settings."""

    return LLM(
        settings.model,
        api_key=settings.api_key,
        api_base=settings.api_base,
    )


def build_model(settings: Settings) -> ModelClient:
    if settings.offline:
        logger.info("model.offline using echo model; set LESSONLOOP_MODEL to enable an LLM")
        return EchoModel()
    return RepublicModel(build_llm(settings), max_tokens=settings.max_tokens)


def _result_text(result: Any) -> str:
    error = getattr(result, "error", None)
    if error is not None:
        raise RuntimeError(f"model_call_error: {error}")
    value = getattr(result, "value", result)
    if value is None:
        return ""
    return str(value)
