# eko/memory/live.py
from __future__ import annotations

import hashlib
import uuid
from typing import Any, Dict, List, Optional, Sequence, Union

from eko.embeddings import Embedder
from eko.logging_config import memory_logger as logger
from eko.models import LIVE, LiveEntry, MemoryRecord, SearchHit
from eko.storage.sqlite_store import VectorMemoryStore

PREVIEW_CHARS = 100


def stable_id(key: str) -> str:
    """Deterministic UUID for a transport message id."""
    return str(uuid.UUID(hex=hashlib.md5(key.encode("utf-8")).hexdigest()))


class LiveBuffer:
    """Unfiltered rolling buffer of raw room messages in the `live` partition.

    Nothing is filtered at write time: short acknowledgements and other noise
    simply score low when the buffer is searched.
    """

    def __init__(self, store: VectorMemoryStore, embedder: Embedder, search_k: int = 10):
        self.store = store
        self.embedder = embedder
        self.search_k = search_k

    def append_message(self, entry: LiveEntry) -> str:
        """Embed and store an entry. Redelivery of the same message_id overwrites in place."""
        if entry.id is None:
            entry.id = (
                stable_id(entry.message_id)
                if entry.message_id
                else str(uuid.uuid4())
            )
        record = MemoryRecord(
            id=entry.id,
            content=entry.content,
            vector=self.embedder.embed(entry.content),
            partition=LIVE,
            timestamp=entry.timestamp,
            metadata=entry.to_metadata(),
        )
        self.store.store(LIVE, record)
        logger.debug(f'Live indexed: {entry.author}: "{entry.content[:40]}"')
        return entry.id

    def search_relevant(
        self, query: Union[str, Sequence[float]], k: Optional[int] = None
    ) -> List[SearchHit]:
        """Top-k entries for context injection. No threshold."""
        vector = self.embedder.embed(query) if isinstance(query, str) else list(query)
        return self.store.search(LIVE, vector, k=k or self.search_k)

    def entries(self) -> List[LiveEntry]:
        """All entries in ingestion order (oldest first)."""
        return [
            LiveEntry.from_record(r) for r in self.store.list(LIVE, newest_first=False)
        ]

    def count(self) -> int:
        return self.store.count(LIVE)

    def delete(self, entry_id: str) -> bool:
        return self.store.delete(LIVE, entry_id)

    def discard(self, entry_ids: Sequence[str]) -> int:
        """Remove digested entries, leaving anything appended since in place."""
        removed = self.store.delete_many(LIVE, entry_ids)
        logger.info(f"Removed {removed} digested messages from live buffer")
        return removed

    def clear(self) -> int:
        cleared = self.store.clear(LIVE)
        logger.info(f"Cleared {cleared} messages from live buffer")
        return cleared

    def stats(self) -> Dict[str, Any]:
        records = self.store.list(LIVE, newest_first=False)
        return {
            "count": len(records),
            "oldestTimestamp": records[0].timestamp.isoformat() if records else None,
            "newestTimestamp": records[-1].timestamp.isoformat() if records else None,
        }

    def preview(self, limit: int = 10) -> List[Dict[str, Any]]:
        out = []
        for record in self.store.list(LIVE, limit=limit):
            entry = LiveEntry.from_record(record).to_dict()
            content = entry["content"]
            if len(content) > PREVIEW_CHARS:
                entry["content"] = content[:PREVIEW_CHARS] + "..."
            out.append(entry)
        return out
