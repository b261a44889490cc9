# eko/reflection/decision.py
"""
Contract between the reflection engine and the reasoning collaborator.

Input is a `DecisionRequest` holding exactly one goal plus gathered context.
Output is a tagged union: `PassDecision` or `MessageDecision`. Anything that
does not validate is reported as `MalformedDecision`, which the engine turns
into an implicit pass.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator
from typing_extensions import Annotated

from eko.errors import MalformedDecision
from eko.models import MemoryRecord

TONES = ("playful", "helpful", "technical")

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_BARE_JSON = re.compile(r"\{[\s\S]*\}")


@dataclass
class ChatMessage:
    """A message as seen by the chat transport."""

    author: str
    content: str
    timestamp: datetime
    author_id: Optional[str] = None
    is_bot: bool = False


@dataclass
class DecisionRequest:
    goal: Optional[MemoryRecord]
    facts: List[MemoryRecord] = field(default_factory=list)
    self_items: List[MemoryRecord] = field(default_factory=list)
    recent_activity: List[ChatMessage] = field(default_factory=list)
    allow_pass: bool = False


class PassDecision(BaseModel):
    action: Literal["pass"]
    reason: str = "No reason provided"


class MessageDecision(BaseModel):
    action: Literal["message"]
    message: str = Field(min_length=1)
    reason: str = "No reason provided"
    tone: Optional[str] = None

    @field_validator("message")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must not be blank")
        return v.strip()

    @field_validator("tone")
    @classmethod
    def _known_tone(cls, v: Optional[str]) -> Optional[str]:
        return v if v in TONES else None


Decision = Annotated[Union[PassDecision, MessageDecision], Field(discriminator="action")]
_decision_adapter = TypeAdapter(Decision)


@dataclass
class DecisionOutcome:
    decision: Union[PassDecision, MessageDecision]
    input_tokens: int = 0
    output_tokens: int = 0


def extract_json(text: str) -> Any:
    """Pull a JSON object out of a model reply (fenced or bare)."""
    match = _FENCED_JSON.search(text) or _BARE_JSON.search(text)
    if not match:
        raise ValueError("No JSON object found in response")
    raw = match.group(1) if match.re is _FENCED_JSON else match.group(0)
    return json.loads(raw.strip())


def parse_decision(raw: Union[str, dict]) -> Union[PassDecision, MessageDecision]:
    """Validate a raw decision. Raises MalformedDecision on any contract violation."""
    try:
        data = extract_json(raw) if isinstance(raw, str) else raw
    except ValueError as e:
        raise MalformedDecision(f"Unparseable decision: {e}") from e
    if not isinstance(data, dict):
        raise MalformedDecision("Decision must be a JSON object")
    if data.get("reason") in (None, ""):
        data = {**data, "reason": "No reason provided"}
    try:
        return _decision_adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedDecision(f"Invalid decision: {e.errors()[0].get('msg')}") from e
