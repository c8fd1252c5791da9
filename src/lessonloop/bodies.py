"""Validated candidate body schemas, one per content format."""

from __future__ import annotations

from abc import abstractmethod
from typing import ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from lessonloop.types import Format


class _Body(BaseModel):
    format: ClassVar[Format]

    model_config = ConfigDict(extra="ignore", frozen=True, alias_generator=to_camel, populate_by_name=True)

    fallback: bool = False

    @abstractmethod
    def render_text(self) -> str:
        """Plain-text rendering the judge scores and the CLI prints."""


class TextBody(_Body):
    format: ClassVar[Format] = Format.TEXT

    content: str = Field(min_length=1)

    def render_text(self) -> str:
        return self.content


class VideoScript(_Body):
    format: ClassVar[Format] = Format.VIDEO

    title: str = "Educational Video"
    visual_prompt: str = Field(min_length=1)
    narration: str = Field(min_length=1)
    key_takeaways: list[str] = Field(default_factory=list)
    duration_seconds: int = Field(default=10, ge=1, le=600)

    def render_text(self) -> str:
        lines = [f"# {self.title}", "", "Visuals:", self.visual_prompt, "", "Narration:", self.narration]
        if self.key_takeaways:
            lines.extend(["", "Key takeaways:"])
            lines.extend(f"- {item}" for item in self.key_takeaways)
        return "\n".join(lines)


class Flashcard(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: int = 0
    front: str = Field(min_length=1)
    back: str = Field(min_length=1)
    difficulty: Literal["easy", "medium", "hard"] = "medium"
    tags: list[str] = Field(default_factory=list)
    hint: str | None = None
    mnemonic: str | None = None
    example: str | None = None

    @field_validator("difficulty", mode="before")
    @classmethod
    def _normalize_difficulty(cls, value: object) -> object:
        if isinstance(value, str):
            lowered = value.strip().casefold()
            return lowered if lowered in {"easy", "medium", "hard"} else "medium"
        return value


class FlashcardSet(_Body):
    format: ClassVar[Format] = Format.FLASHCARDS

    topic: str = "General Topic"
    subtopic: str = ""
    flashcards: list[Flashcard] = Field(min_length=1)
    study_tips: list[str] = Field(default_factory=list)
    review_schedule: str = "Review in 1 day, 3 days, 7 days, 14 days"

    @field_validator("flashcards")
    @classmethod
    def _number_cards(cls, cards: list[Flashcard]) -> list[Flashcard]:
        return [card if card.id else card.model_copy(update={"id": index}) for index, card in enumerate(cards, start=1)]

    @property
    def total_cards(self) -> int:
        return len(self.flashcards)

    def render_text(self) -> str:
        lines = [f"# {self.topic}" + (f": {self.subtopic}" if self.subtopic else "")]
        for card in self.flashcards:
            lines.append(f"{card.id}. Q: {card.front}")
            lines.append(f"   A: {card.back}")
            if card.example:
                lines.append(f"   Example: {card.example}")
        if self.study_tips:
            lines.append("Study tips:")
            lines.extend(f"- {tip}" for tip in self.study_tips)
        return "\n".join(lines)


type CandidateBody = TextBody | VideoScript | FlashcardSet

BODY_TYPES: dict[Format, type[_Body]] = {
    Format.TEXT: TextBody,
    Format.VIDEO: VideoScript,
    Format.FLASHCARDS: FlashcardSet,
}
