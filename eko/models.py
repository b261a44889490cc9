# eko/models.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

FACTS = "facts"
SELF = "self"
GOALS = "goals"
LIVE = "live"

PARTITIONS: Tuple[str, ...] = (FACTS, SELF, GOALS, LIVE)
DURABLE_PARTITIONS: Tuple[str, ...] = (FACTS, SELF, GOALS)

SELF_CATEGORIES = ("context", "capability", "limitation", "preference", "relation")
GOAL_CATEGORIES = ("capability_request", "understanding", "connection", "curiosity")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class MemoryRecord:
    """A single embedded memory in one partition.

    Records are immutable in spirit: an update is a delete followed by an
    insert, so `vector` always matches `content`.
    """

    content: str
    vector: List[float]
    partition: str
    subjects: Tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    category: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        if not self.content or not self.content.strip():
            raise ValueError("Memory content must be non-empty")
        if self.partition not in PARTITIONS:
            raise ValueError(f"Unknown partition: {self.partition}")
        if self.expires_at is not None and self.expires_at <= self.timestamp:
            raise ValueError("expires_at must be later than timestamp")
        self.subjects = tuple(self.subjects or ())

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        """Public JSON shape (vector omitted)."""
        return {
            "id": self.id,
            "partition": self.partition,
            "content": self.content,
            "subjects": list(self.subjects),
            "category": self.category,
            "timestamp": self.timestamp.isoformat(),
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "metadata": dict(self.metadata),
        }


@dataclass
class SearchHit:
    record: MemoryRecord
    score: float


@dataclass
class StoreResult:
    """Outcome of a deduplicated store."""

    action: str  # "inserted" | "updated"
    id: str
    replaced_id: Optional[str] = None
    score: Optional[float] = None


@dataclass
class LiveEntry:
    """Raw room message waiting for the next digest."""

    content: str
    author: str
    room: str
    timestamp: datetime = field(default_factory=utcnow)
    author_id: Optional[str] = None
    room_id: Optional[str] = None
    message_id: Optional[str] = None
    id: Optional[str] = None

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "author": self.author,
            "room": self.room,
            "author_id": self.author_id,
            "room_id": self.room_id,
            "message_id": self.message_id,
        }

    @classmethod
    def from_record(cls, record: MemoryRecord) -> "LiveEntry":
        meta = record.metadata or {}
        return cls(
            content=record.content,
            author=meta.get("author", "unknown"),
            room=meta.get("room", ""),
            timestamp=record.timestamp,
            author_id=meta.get("author_id"),
            room_id=meta.get("room_id"),
            message_id=meta.get("message_id"),
            id=record.id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "author": self.author,
            "room": self.room,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ReflectionRecord:
    """One decision cycle of the reflection engine."""

    action: str  # "pass" | "message"
    reason: str
    timestamp: datetime = field(default_factory=utcnow)
    message: Optional[str] = None
    tone: Optional[str] = None
    goal_id: Optional[str] = None
    room_id: Optional[str] = None
    rate_limited: bool = False
    dry_run: bool = False
    goals_count: int = 0
    facts_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        if self.action not in ("pass", "message"):
            raise ValueError(f"Invalid reflection action: {self.action}")
        if self.action == "message" and not self.message:
            raise ValueError("A message reflection requires message text")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "reason": self.reason,
            "message": self.message,
            "tone": self.tone,
            "goalId": self.goal_id,
            "roomId": self.room_id,
            "rateLimited": self.rate_limited,
            "dryRun": self.dry_run,
            "goalsCount": self.goals_count,
            "factsCount": self.facts_count,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "durationMs": self.duration_ms,
        }
