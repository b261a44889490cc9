# eko/memory/digest.py
"""
Periodic digest of the live buffer into durable memory.

A digest reads every buffered live entry, asks the extraction collaborator
for facts, self knowledge and goals, stores each through the deduplicator,
and only then drops the digested entries and persists `lastDigestAt`. Any
failure before that point leaves the buffer as it was, so the next run
retries the same entries (deduplication absorbs what was already stored).
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from eko.config import DigestConfig
from eko.errors import EkoError
from eko.logging_config import digest_logger as logger
from eko.memory.dedup import Deduplicator
from eko.memory.extraction import Extractor
from eko.memory.live import LiveBuffer
from eko.models import utcnow
from eko.scheduling import PeriodicJob, fixed_hours
from eko.storage.sqlite_store import VectorMemoryStore, from_db_ts, to_db_ts

LAST_DIGEST_KEY = "lastDigestAt"


@dataclass
class DigestResult:
    ok: bool
    skipped: bool = False
    busy: bool = False
    entries: int = 0
    facts: int = 0
    self_items: int = 0
    goals: int = 0
    updated: int = 0
    errors: List[str] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    started_at: Optional[datetime] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "skipped": self.skipped,
            "busy": self.busy,
            "entries": self.entries,
            "facts": self.facts,
            "self": self.self_items,
            "goals": self.goals,
            "updated": self.updated,
            "errors": list(self.errors),
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "durationMs": self.duration_ms,
        }


class DigestScheduler:
    def __init__(
        self,
        store: VectorMemoryStore,
        live: LiveBuffer,
        dedup: Deduplicator,
        extractor: Extractor,
        config: Optional[DigestConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.live = live
        self.dedup = dedup
        self.extractor = extractor
        self.config = config or DigestConfig()
        self.clock = clock
        self._lock = threading.Lock()
        self._job: Optional[PeriodicJob] = None
        self.last_result: Optional[DigestResult] = None
        self.last_error: Optional[str] = None
        self.runs = 0

    # ---------- persisted state ----------

    @property
    def last_digest_at(self) -> Optional[datetime]:
        return from_db_ts(self.store.get_setting(LAST_DIGEST_KEY))

    def needs_catch_up(self, now: Optional[datetime] = None) -> bool:
        last = self.last_digest_at
        if last is None:
            return True
        now = now or self.clock()
        return now - last > timedelta(hours=self.config.interval_hours)

    def catch_up(self, now: Optional[datetime] = None) -> Optional[DigestResult]:
        """Run once immediately if the last digest is missing or overdue."""
        now = now or self.clock()
        if not self.needs_catch_up(now):
            logger.info("No digest catch-up needed")
            return None
        last = self.last_digest_at
        logger.info(
            f"Digest catch-up (last: {last.isoformat() if last else 'never'})"
        )
        return self.run_digest(now)

    # ---------- digest cycle ----------

    def run_digest(self, now: Optional[datetime] = None) -> DigestResult:
        if not self._lock.acquire(blocking=False):
            logger.warning("Digest already running, skipping")
            return DigestResult(ok=False, busy=True)
        try:
            return self._run(now or self.clock())
        finally:
            self._lock.release()

    def _run(self, now: datetime) -> DigestResult:
        started = time.time()
        result = DigestResult(ok=True, started_at=now)

        try:
            entries = self.live.entries()
        except EkoError as e:
            return self._fail(result, f"Cannot read live buffer: {e}", started)

        result.entries = len(entries)
        if not entries:
            logger.info("Live buffer empty, nothing to digest")
            result.skipped = True
            return self._finish(result, started)

        logger.info(f"Digesting {len(entries)} live messages")
        try:
            extraction = self.extractor.extract(entries)
        except EkoError as e:
            return self._fail(result, f"Extraction failed: {e}", started)

        result.input_tokens = extraction.input_tokens
        result.output_tokens = extraction.output_tokens
        logger.info(
            f"Extracted {len(extraction.facts)} facts, {len(extraction.self_items)} self, "
            f"{len(extraction.goals)} goals"
        )

        stores = (
            [("facts", lambda f=f: self.dedup.store_fact(f.content, f.subjects, f.ttl, now=now))
             for f in extraction.facts]
            + [("self_items", lambda s=s: self.dedup.store_self(s.content, s.category, now=now))
               for s in extraction.self_items]
            + [("goals", lambda g=g: self.dedup.store_goal(g.content, g.category, now=now))
               for g in extraction.goals]
        )
        for counter, store_one in stores:
            try:
                outcome = store_one()
            except (EkoError, ValueError) as e:
                result.errors.append(f"{counter}: {e}")
                logger.warning(f"Failed to store digested {counter}: {e}")
                continue
            setattr(result, counter, getattr(result, counter) + 1)
            if outcome.action == "updated":
                result.updated += 1

        if result.errors:
            return self._fail(
                result,
                f"{len(result.errors)} store(s) failed, live buffer kept for retry",
                started,
            )

        try:
            self.live.discard([e.id for e in entries])
            self.store.set_setting(LAST_DIGEST_KEY, to_db_ts(now))
        except EkoError as e:
            return self._fail(result, f"Cannot finalize digest: {e}", started)

        self.last_error = None
        logger.info(
            f"Digest complete: {result.facts} facts, {result.self_items} self, "
            f"{result.goals} goals ({result.updated} updated)"
        )
        return self._finish(result, started)

    def _fail(self, result: DigestResult, message: str, started: float) -> DigestResult:
        result.ok = False
        if message not in result.errors:
            result.errors.append(message)
        self.last_error = message
        logger.error(f"Digest aborted: {message}")
        return self._finish(result, started)

    def _finish(self, result: DigestResult, started: float) -> DigestResult:
        result.duration_ms = int((time.time() - started) * 1000)
        self.runs += 1
        self.last_result = result
        return result

    # ---------- scheduling ----------

    def start(self) -> None:
        """Catch up if overdue, then fire at the configured local hours."""
        if not self.config.enabled:
            logger.info("Digest scheduler disabled")
            return
        if self._job is not None and self._job.is_running:
            return
        self._job = PeriodicJob(
            "digest",
            self.run_digest,
            fixed_hours(self.config.hours, self.config.timezone),
            clock=self.clock,
            on_start=self.catch_up,
        )
        self._job.start()
        logger.info(
            f"Digest scheduled at {', '.join(f'{h}h' for h in self.config.hours)} "
            f"({self.config.timezone})"
        )

    def stop(self) -> None:
        if self._job is not None:
            self._job.stop()
            self._job = None

    def status(self) -> Dict[str, Any]:
        last = self.last_digest_at
        return {
            "lastDigestAt": last.isoformat() if last else None,
            "nextRunAt": (
                self._job.next_run_at.isoformat()
                if self._job and self._job.next_run_at
                else None
            ),
            "running": self._lock.locked(),
            "runs": self.runs,
            "lastError": self.last_error,
            "lastResult": self.last_result.to_dict() if self.last_result else None,
        }
