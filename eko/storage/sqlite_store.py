"""
SQLite-backed vector memory store.

One table holds every partition (facts, self, goals, live). Vectors are kept
as float32 BLOBs next to their metadata and ranked with numpy cosine
similarity at query time. A small settings table keeps durable key/value
state such as the last digest timestamp.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

import numpy as np

from eko.errors import StoreUnavailable
from eko.logging_config import memory_logger as logger
from eko.models import PARTITIONS, MemoryRecord, SearchHit, utcnow

DDL = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS memories (
  id TEXT PRIMARY KEY,
  partition TEXT NOT NULL,    -- 'facts' | 'self' | 'goals' | 'live'
  content TEXT NOT NULL,
  subjects TEXT NOT NULL,     -- JSON list[str]
  vector BLOB NOT NULL,       -- float32
  dim INTEGER NOT NULL,
  ts TEXT NOT NULL,           -- UTC, fixed-width ISO
  expires_at TEXT,            -- UTC, NULL for permanent
  category TEXT,
  meta TEXT NOT NULL          -- JSON
);
CREATE TABLE IF NOT EXISTS settings (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,        -- JSON
  updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_memories_partition_ts ON memories(partition, ts);
CREATE INDEX IF NOT EXISTS idx_memories_expires ON memories(partition, expires_at);
"""

TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# stays under SQLITE_MAX_VARIABLE_NUMBER on old builds (999)
DELETE_CHUNK = 500

SearchFilter = Union[Dict[str, Any], Callable[[MemoryRecord], bool]]


def to_db_ts(dt: datetime) -> str:
    """Serialize to a fixed-width UTC string so SQL comparisons are ordered."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(TS_FORMAT)


def from_db_ts(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return datetime.strptime(raw, TS_FORMAT).replace(tzinfo=timezone.utc)


def _check_partition(partition: str) -> None:
    if partition not in PARTITIONS:
        raise ValueError(f"Unknown partition: {partition}")


class VectorMemoryStore:
    """Partitioned vector store with store/search/delete/purge operations."""

    def __init__(self, path: str = "eko.db", timeout: float = 5.0):
        self.path = path
        self._lock = threading.RLock()
        try:
            self.conn = sqlite3.connect(path, check_same_thread=False, timeout=timeout)
            self.conn.row_factory = sqlite3.Row
            self.conn.executescript(DDL)
            self.conn.execute("PRAGMA synchronous=NORMAL")
            self.conn.commit()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open memory store at {path}: {e}") from e

    @contextmanager
    def _backend(self) -> Iterator[sqlite3.Connection]:
        """Serialize access and translate backend errors."""
        with self._lock:
            try:
                yield self.conn
            except sqlite3.Error as e:
                logger.error(f"Memory store failure: {e}")
                raise StoreUnavailable(str(e)) from e

    # ------------------ records ------------------

    def store(self, partition: str, record: MemoryRecord) -> str:
        """Persist record content, vector and metadata in one statement."""
        _check_partition(partition)
        record.partition = partition
        with self._backend() as conn:
            self._check_dimension(conn, partition, len(record.vector))
            with conn:
                self._insert(conn, record)
        return record.id

    def replace(self, partition: str, old_id: str, record: MemoryRecord) -> str:
        """Delete `old_id` and insert `record` in a single transaction."""
        _check_partition(partition)
        record.partition = partition
        with self._backend() as conn:
            self._check_dimension(conn, partition, len(record.vector))
            with conn:
                conn.execute(
                    "DELETE FROM memories WHERE partition=? AND id=?",
                    (partition, old_id),
                )
                self._insert(conn, record)
        return record.id

    def get(self, partition: str, record_id: str) -> Optional[MemoryRecord]:
        _check_partition(partition)
        with self._backend() as conn:
            row = conn.execute(
                "SELECT * FROM memories WHERE partition=? AND id=?",
                (partition, record_id),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def delete(self, partition: str, record_id: str) -> bool:
        _check_partition(partition)
        with self._backend() as conn:
            with conn:
                cur = conn.execute(
                    "DELETE FROM memories WHERE partition=? AND id=?",
                    (partition, record_id),
                )
        return cur.rowcount > 0

    def delete_many(self, partition: str, record_ids: Sequence[str]) -> int:
        """Delete all of `record_ids` in one transaction: either every row goes or none."""
        _check_partition(partition)
        ids = list(dict.fromkeys(record_ids))
        removed = 0
        with self._backend() as conn:
            with conn:
                for start in range(0, len(ids), DELETE_CHUNK):
                    chunk = ids[start:start + DELETE_CHUNK]
                    placeholders = ",".join("?" * len(chunk))
                    cur = conn.execute(
                        f"DELETE FROM memories WHERE partition=? AND id IN ({placeholders})",
                        (partition, *chunk),
                    )
                    removed += cur.rowcount
        return removed

    def delete_expired(self, partition: str, now: Optional[datetime] = None) -> int:
        """Remove records whose expiry is at or before `now`. Permanent records never match."""
        _check_partition(partition)
        cutoff = to_db_ts(now or utcnow())
        with self._backend() as conn:
            with conn:
                cur = conn.execute(
                    "DELETE FROM memories WHERE partition=? AND expires_at IS NOT NULL AND expires_at<=?",
                    (partition, cutoff),
                )
        return cur.rowcount

    def clear(self, partition: str) -> int:
        _check_partition(partition)
        with self._backend() as conn:
            with conn:
                cur = conn.execute("DELETE FROM memories WHERE partition=?", (partition,))
        return cur.rowcount

    def list(
        self, partition: str, limit: Optional[int] = None, newest_first: bool = True
    ) -> List[MemoryRecord]:
        _check_partition(partition)
        order = "DESC" if newest_first else "ASC"
        q = f"SELECT * FROM memories WHERE partition=? ORDER BY ts {order}, rowid {order}"
        args: List[Any] = [partition]
        if limit is not None:
            q += " LIMIT ?"
            args.append(int(limit))
        with self._backend() as conn:
            rows = list(conn.execute(q, args))
        return [self._row_to_record(r) for r in rows]

    def latest(self, partition: str) -> Optional[MemoryRecord]:
        records = self.list(partition, limit=1)
        return records[0] if records else None

    def count(self, partition: str) -> int:
        _check_partition(partition)
        with self._backend() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM memories WHERE partition=?", (partition,)
            ).fetchone()
        return int(row[0])

    def counts(self) -> Dict[str, int]:
        with self._backend() as conn:
            rows = list(
                conn.execute("SELECT partition, COUNT(*) FROM memories GROUP BY partition")
            )
        out = {p: 0 for p in PARTITIONS}
        for partition, n in rows:
            out[partition] = int(n)
        return out

    def search(
        self,
        partition: str,
        query_vector: List[float],
        k: int = 5,
        filter: Optional[SearchFilter] = None,
    ) -> List[SearchHit]:
        """Rank records of a partition by cosine similarity. No threshold applied."""
        _check_partition(partition)
        if k <= 0:
            return []
        with self._backend() as conn:
            rows = list(conn.execute("SELECT * FROM memories WHERE partition=?", (partition,)))
        records = [self._row_to_record(r) for r in rows]
        if filter is not None:
            records = [r for r in records if self._matches(r, filter)]
        if not records:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        matrix = np.vstack([np.asarray(r.vector, dtype=np.float32) for r in records])
        if matrix.shape[1] != query.shape[0]:
            raise ValueError(
                f"Query dimension {query.shape[0]} does not match partition dimension {matrix.shape[1]}"
            )

        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

        order = np.argsort(-scores, kind="stable")[:k]
        return [SearchHit(record=records[i], score=float(scores[i])) for i in order]

    # ------------------ settings -----------------

    def get_setting(self, key: str) -> Optional[Any]:
        with self._backend() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
        return json.loads(row[0]) if row else None

    def set_setting(self, key: str, value: Any) -> None:
        with self._backend() as conn:
            with conn:
                conn.execute(
                    "INSERT OR REPLACE INTO settings(key, value, updated_at) VALUES(?,?,?)",
                    (key, json.dumps(value), to_db_ts(utcnow())),
                )

    # ------------------ helpers ------------------

    def _check_dimension(self, conn: sqlite3.Connection, partition: str, dim: int) -> None:
        if dim == 0:
            raise ValueError("Cannot store an empty vector")
        row = conn.execute(
            "SELECT dim FROM memories WHERE partition=? LIMIT 1", (partition,)
        ).fetchone()
        if row and int(row[0]) != dim:
            raise ValueError(
                f"Vector dimension {dim} does not match partition '{partition}' dimension {row[0]}"
            )

    def _insert(self, conn: sqlite3.Connection, record: MemoryRecord) -> None:
        vec = np.asarray(record.vector, dtype=np.float32)
        conn.execute(
            """
            INSERT OR REPLACE INTO memories(id,partition,content,subjects,vector,dim,ts,expires_at,category,meta)
            VALUES(?,?,?,?,?,?,?,?,?,?)
            """,
            (
                record.id,
                record.partition,
                record.content,
                json.dumps(list(record.subjects), ensure_ascii=False),
                vec.tobytes(order="C"),
                int(vec.shape[0]),
                to_db_ts(record.timestamp),
                to_db_ts(record.expires_at) if record.expires_at else None,
                record.category,
                json.dumps(record.metadata or {}, ensure_ascii=False),
            ),
        )

    def _row_to_record(self, r: sqlite3.Row) -> MemoryRecord:
        try:
            subjects = json.loads(r["subjects"]) if r["subjects"] else []
        except json.JSONDecodeError:
            subjects = []
        try:
            meta = json.loads(r["meta"]) if r["meta"] else {}
        except json.JSONDecodeError:
            meta = {}
        return MemoryRecord(
            id=r["id"],
            partition=r["partition"],
            content=r["content"],
            subjects=tuple(subjects),
            vector=np.frombuffer(r["vector"], dtype=np.float32).tolist(),
            timestamp=from_db_ts(r["ts"]),
            expires_at=from_db_ts(r["expires_at"]),
            category=r["category"],
            metadata=meta,
        )

    @staticmethod
    def _matches(record: MemoryRecord, filter: SearchFilter) -> bool:
        if callable(filter):
            return bool(filter(record))
        for key, expected in filter.items():
            if key == "category":
                actual = record.category
            elif key == "subjects":
                actual = expected if expected in record.subjects else None
            else:
                actual = record.metadata.get(key)
            if actual != expected:
                return False
        return True

    def close(self) -> None:
        with self._lock:
            try:
                self.conn.close()
            except sqlite3.Error:
                pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
