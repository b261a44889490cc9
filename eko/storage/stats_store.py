# eko/storage/stats_store.py
from __future__ import annotations

import json
import sqlite3
import threading
from collections import deque
from datetime import date, datetime
from typing import Any, Deque, Dict, List, Optional
from zoneinfo import ZoneInfo

from eko.errors import StoreUnavailable
from eko.models import ReflectionRecord, utcnow
from eko.storage.sqlite_store import from_db_ts, to_db_ts

DDL = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS reflections (
  id TEXT PRIMARY KEY,
  ts TEXT NOT NULL,
  action TEXT NOT NULL,       -- 'pass' | 'message'
  rate_limited INTEGER NOT NULL,
  dry_run INTEGER NOT NULL,
  data TEXT NOT NULL          -- JSON: full ReflectionRecord
);
CREATE TABLE IF NOT EXISTS reflection_stats (
  id TEXT PRIMARY KEY,        -- always 'global'
  total INTEGER NOT NULL DEFAULT 0,
  message_count INTEGER NOT NULL DEFAULT 0,
  pass_count INTEGER NOT NULL DEFAULT 0,
  dry_run_count INTEGER NOT NULL DEFAULT 0,
  rate_limited_count INTEGER NOT NULL DEFAULT 0,
  total_input_tokens INTEGER NOT NULL DEFAULT 0,
  total_output_tokens INTEGER NOT NULL DEFAULT 0,
  total_duration_ms INTEGER NOT NULL DEFAULT 0,
  last_message_at TEXT,
  today TEXT,                 -- local date of today_count
  today_count INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_reflections_ts ON reflections(ts);
INSERT OR IGNORE INTO reflection_stats(id) VALUES('global');
"""

COUNTERS = (
    "total",
    "message_count",
    "pass_count",
    "dry_run_count",
    "rate_limited_count",
    "total_input_tokens",
    "total_output_tokens",
    "total_duration_ms",
)


def _record_from_json(raw: str) -> ReflectionRecord:
    d = json.loads(raw)
    return ReflectionRecord(
        id=d["id"],
        timestamp=datetime.fromisoformat(d["timestamp"]),
        action=d["action"],
        reason=d.get("reason", ""),
        message=d.get("message"),
        tone=d.get("tone"),
        goal_id=d.get("goalId"),
        room_id=d.get("roomId"),
        rate_limited=bool(d.get("rateLimited", False)),
        dry_run=bool(d.get("dryRun", False)),
        goals_count=int(d.get("goalsCount", 0)),
        facts_count=int(d.get("factsCount", 0)),
        input_tokens=int(d.get("inputTokens", 0)),
        output_tokens=int(d.get("outputTokens", 0)),
        duration_ms=int(d.get("durationMs", 0)),
    )


class StatsStore:
    """Append-only reflection log with running counters and the rate-limit window.

    History is bounded (newest first) and rehydrated from the log on startup.
    `today_count` is keyed by the local date in `tz` and resets at local
    midnight.
    """

    def __init__(self, path: str = "eko.db", tz: str = "Europe/Paris", history_size: int = 50):
        self.tz = ZoneInfo(tz)
        self.history_size = history_size
        self._lock = threading.RLock()
        try:
            self.conn = sqlite3.connect(path, check_same_thread=False, timeout=5.0)
            self.conn.row_factory = sqlite3.Row
            self.conn.executescript(DDL)
            self._migrate()
            self.conn.commit()
            rows = list(
                self.conn.execute(
                    "SELECT data FROM reflections ORDER BY ts DESC LIMIT ?",
                    (history_size,),
                )
            )
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open stats store at {path}: {e}") from e
        self._history: Deque[ReflectionRecord] = deque(
            (_record_from_json(r["data"]) for r in rows), maxlen=history_size
        )

    def _migrate(self) -> None:
        """Add counters introduced after a database was created."""
        columns = {r["name"] for r in self.conn.execute("PRAGMA table_info(reflection_stats)")}
        if "dry_run_count" not in columns:
            self.conn.execute(
                "ALTER TABLE reflection_stats ADD COLUMN dry_run_count INTEGER NOT NULL DEFAULT 0"
            )

    def local_date(self, now: Optional[datetime] = None) -> date:
        return (now or utcnow()).astimezone(self.tz).date()

    def record(self, reflection: ReflectionRecord) -> None:
        """Fold one reflection into the log, counters and rate window."""
        # every record lands in exactly one of message/dry_run/pass/rate_limited
        composed = reflection.action == "message" and not reflection.rate_limited
        delivered = composed and not reflection.dry_run
        rehearsed = composed and reflection.dry_run
        passed = reflection.action == "pass" and not reflection.rate_limited
        with self._lock:
            try:
                with self.conn:
                    self.conn.execute(
                        "INSERT INTO reflections(id, ts, action, rate_limited, dry_run, data) VALUES(?,?,?,?,?,?)",
                        (
                            reflection.id,
                            to_db_ts(reflection.timestamp),
                            reflection.action,
                            int(reflection.rate_limited),
                            int(reflection.dry_run),
                            json.dumps(reflection.to_dict(), ensure_ascii=False),
                        ),
                    )
                    self.conn.execute(
                        """
                        UPDATE reflection_stats SET
                          total = total + 1,
                          total_input_tokens = total_input_tokens + ?,
                          total_output_tokens = total_output_tokens + ?,
                          total_duration_ms = total_duration_ms + ?,
                          rate_limited_count = rate_limited_count + ?,
                          message_count = message_count + ?,
                          pass_count = pass_count + ?,
                          dry_run_count = dry_run_count + ?
                        WHERE id='global'
                        """,
                        (
                            reflection.input_tokens,
                            reflection.output_tokens,
                            reflection.duration_ms,
                            int(reflection.rate_limited),
                            int(delivered),
                            int(passed),
                            int(rehearsed),
                        ),
                    )
                    if delivered:
                        today = self.local_date(reflection.timestamp).isoformat()
                        self.conn.execute(
                            """
                            UPDATE reflection_stats SET
                              last_message_at = ?,
                              today_count = CASE WHEN today = ? THEN today_count + 1 ELSE 1 END,
                              today = ?
                            WHERE id='global'
                            """,
                            (to_db_ts(reflection.timestamp), today, today),
                        )
            except sqlite3.Error as e:
                raise StoreUnavailable(str(e)) from e
            self._history.appendleft(reflection)

    def _row(self) -> sqlite3.Row:
        with self._lock:
            try:
                return self.conn.execute(
                    "SELECT * FROM reflection_stats WHERE id='global'"
                ).fetchone()
            except sqlite3.Error as e:
                raise StoreUnavailable(str(e)) from e

    def last_message_at(self) -> Optional[datetime]:
        return from_db_ts(self._row()["last_message_at"])

    def today_count(self, now: Optional[datetime] = None) -> int:
        row = self._row()
        if row["today"] != self.local_date(now).isoformat():
            return 0
        return int(row["today_count"])

    def reset_cooldown(self) -> None:
        with self._lock:
            try:
                with self.conn:
                    self.conn.execute(
                        "UPDATE reflection_stats SET last_message_at = NULL WHERE id='global'"
                    )
            except sqlite3.Error as e:
                raise StoreUnavailable(str(e)) from e

    def history(self) -> List[ReflectionRecord]:
        with self._lock:
            return list(self._history)

    def snapshot(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Counters, history and rate window for the status surface."""
        row = self._row()
        last = from_db_ts(row["last_message_at"])
        out: Dict[str, Any] = {name: int(row[name]) for name in COUNTERS}
        out["last_message_at"] = last.isoformat() if last else None
        out["today_count"] = self.today_count(now)
        out["history"] = [r.to_dict() for r in self.history()]
        return out

    def close(self) -> None:
        with self._lock:
            try:
                self.conn.close()
            except sqlite3.Error:
                pass
