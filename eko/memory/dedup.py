# eko/memory/dedup.py
from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from eko.embeddings import Embedder
from eko.logging_config import memory_logger as logger
from eko.memory.ttl import compute_expires_at
from eko.models import FACTS, GOALS, SELF, MemoryRecord, StoreResult, utcnow
from eko.storage.sqlite_store import VectorMemoryStore

DEFAULT_THRESHOLD = 0.85


class Deduplicator:
    """Similarity-gated insert-or-replace for durable memories.

    When the nearest existing record scores at or above the threshold the new
    content is treated as an update of the same fact: the old record is
    replaced wholesale (subjects included). The threshold is kept high so two
    distinct facts about one subject are never merged; an occasional
    near-duplicate is the accepted cost.
    """

    def __init__(
        self,
        store: VectorMemoryStore,
        embedder: Embedder,
        threshold: float = DEFAULT_THRESHOLD,
        search_k: int = 5,
    ):
        if not 0 < threshold <= 1:
            raise ValueError("threshold must be in (0, 1]")
        self.store = store
        self.embedder = embedder
        self.threshold = threshold
        self.search_k = max(1, min(int(search_k), 5))

    def store_fact(
        self,
        content: str,
        subjects: Iterable[str] = (),
        ttl: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StoreResult:
        now = now or utcnow()
        # Parse before embedding so a bad TTL costs no embedding call
        expires_at = compute_expires_at(now, ttl)
        return self._store(
            FACTS,
            content,
            subjects=tuple(s.strip() for s in subjects if s and s.strip()),
            expires_at=expires_at,
            now=now,
        )

    def store_self(
        self, content: str, category: Optional[str] = None, now: Optional[datetime] = None
    ) -> StoreResult:
        return self._store(SELF, content, category=category, now=now or utcnow())

    def store_goal(
        self, content: str, category: Optional[str] = None, now: Optional[datetime] = None
    ) -> StoreResult:
        return self._store(GOALS, content, category=category, now=now or utcnow())

    def _store(
        self,
        partition: str,
        content: str,
        *,
        now: datetime,
        subjects: tuple = (),
        expires_at: Optional[datetime] = None,
        category: Optional[str] = None,
    ) -> StoreResult:
        if not content or not content.strip():
            raise ValueError("Cannot store empty content")
        content = content.strip()

        vector = self.embedder.embed(content)
        record = MemoryRecord(
            content=content,
            vector=vector,
            partition=partition,
            subjects=subjects,
            timestamp=now,
            expires_at=expires_at,
            category=category,
        )

        hits = self.store.search(partition, vector, k=self.search_k)
        if hits and hits[0].score >= self.threshold:
            old = hits[0]
            logger.info(
                f"Found similar in {partition} (score {old.score:.2f}): "
                f'"{old.record.content[:50]}" -> replacing'
            )
            new_id = self.store.replace(partition, old.record.id, record)
            return StoreResult(
                action="updated", id=new_id, replaced_id=old.record.id, score=old.score
            )

        new_id = self.store.store(partition, record)
        logger.info(f'Stored in {partition}: "{content[:50]}"')
        return StoreResult(
            action="inserted", id=new_id, score=hits[0].score if hits else None
        )
