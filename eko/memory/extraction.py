# eko/memory/extraction.py
"""
Digest extraction contract.

The extraction collaborator reads a batch of live entries and returns
candidate durable memories in three groups: facts about people, things the
assistant learned about itself, and goals it might voice later. Candidates
that fail validation are dropped one by one; only an unusable payload as a
whole is an `ExtractionError`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Literal, Optional, Protocol, Sequence, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from eko.errors import ExtractionError
from eko.logging_config import digest_logger as logger
from eko.memory.ttl import parse_ttl
from eko.models import LiveEntry
from eko.reflection.decision import extract_json


class ExtractedFact(BaseModel):
    content: str = Field(min_length=1)
    subjects: List[str] = Field(default_factory=list)
    ttl: Optional[str] = None

    @field_validator("ttl")
    @classmethod
    def _valid_ttl(cls, v: Optional[str]) -> Optional[str]:
        parse_ttl(v)
        return v or None


class ExtractedSelf(BaseModel):
    content: str = Field(min_length=1)
    category: Literal["context", "capability", "limitation", "preference", "relation"]


class ExtractedGoal(BaseModel):
    content: str = Field(min_length=1)
    category: Literal["capability_request", "understanding", "connection", "curiosity"]


@dataclass
class Extraction:
    facts: List[ExtractedFact] = field(default_factory=list)
    self_items: List[ExtractedSelf] = field(default_factory=list)
    goals: List[ExtractedGoal] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return len(self.facts) + len(self.self_items) + len(self.goals)


class Extractor(Protocol):
    def extract(self, entries: Sequence[LiveEntry]) -> Extraction: ...


def format_entries(entries: Sequence[LiveEntry]) -> str:
    return "\n".join(
        f"[{e.timestamp.strftime('%d/%m/%Y %H:%M')}] {e.author}: {e.content}"
        for e in entries
    )


def _validate_items(items: Any, model, label: str) -> list:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ExtractionError(f"'{label}' must be a list")
    out = []
    for item in items:
        try:
            out.append(model.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Dropping invalid {label} candidate {item!r}: {e.errors()[0].get('msg')}")
    return out


def parse_extraction(raw: Union[str, dict]) -> Extraction:
    try:
        data = extract_json(raw) if isinstance(raw, str) else raw
    except ValueError as e:
        raise ExtractionError(f"Unparseable extraction: {e}") from e
    if not isinstance(data, dict):
        raise ExtractionError("Extraction must be a JSON object")
    return Extraction(
        facts=_validate_items(data.get("facts"), ExtractedFact, "facts"),
        self_items=_validate_items(data.get("self"), ExtractedSelf, "self"),
        goals=_validate_items(data.get("goals"), ExtractedGoal, "goals"),
    )
