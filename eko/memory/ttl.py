# eko/memory/ttl.py
from __future__ import annotations

import re
import threading
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from eko.errors import InvalidTTL, StoreUnavailable
from eko.logging_config import memory_logger as logger
from eko.models import DURABLE_PARTITIONS, utcnow
from eko.storage.sqlite_store import VectorMemoryStore

_TTL_PATTERN = re.compile(r"^\s*(\d+)\s*([mhd])\s*$", re.IGNORECASE)

_UNITS = {
    "m": lambda n: timedelta(minutes=n),
    "h": lambda n: timedelta(hours=n),
    "d": lambda n: timedelta(days=n),
}


def parse_ttl(ttl: Optional[str]) -> Optional[timedelta]:
    """Parse "7d" / "12h" / "30m" into a duration. None or "" means permanent."""
    if ttl is None:
        return None
    if not isinstance(ttl, str):
        raise InvalidTTL(f"TTL must be a string, got {type(ttl).__name__}")
    if not ttl.strip():
        return None
    match = _TTL_PATTERN.match(ttl)
    if not match:
        raise InvalidTTL(f"Invalid TTL format: {ttl!r} (expected <integer><m|h|d>)")
    value = int(match.group(1))
    if value <= 0:
        raise InvalidTTL(f"TTL must be positive: {ttl!r}")
    return _UNITS[match.group(2).lower()](value)


def compute_expires_at(now: datetime, ttl: Optional[str]) -> Optional[datetime]:
    duration = parse_ttl(ttl)
    return now + duration if duration is not None else None


class TTLManager:
    """Purges expired records from the durable partitions.

    Purging is idempotent: a record that survives one extra cycle past its
    expiry is removed on the next one.
    """

    def __init__(
        self,
        store: VectorMemoryStore,
        partitions: Iterable[str] = DURABLE_PARTITIONS,
    ):
        self.store = store
        self.partitions = tuple(partitions)
        self._lock = threading.Lock()
        self.last_purge_at: Optional[datetime] = None
        self.total_purged = 0

    def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        removed: Dict[str, int] = {}
        with self._lock:
            for partition in self.partitions:
                try:
                    removed[partition] = self.store.delete_expired(partition, now=now)
                except StoreUnavailable as e:
                    logger.warning(f"TTL purge skipped for '{partition}': {e}")
                    removed[partition] = 0
            self.last_purge_at = now
            self.total_purged += sum(removed.values())

        if any(removed.values()):
            logger.info(f"Purged expired memories: {removed}")
        return removed

    def get_status(self) -> Dict[str, object]:
        return {
            "last_purge_at": self.last_purge_at.isoformat() if self.last_purge_at else None,
            "total_purged": self.total_purged,
            "partitions": list(self.partitions),
        }
