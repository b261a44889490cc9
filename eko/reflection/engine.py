# eko/reflection/engine.py
"""
Proactive reflection engine.

One cycle per room: rate gate, gather one goal plus context, ask the
reasoning collaborator for a decision, then post (or not) and record the
outcome. Every cycle, denied or failed ones included, ends up as a
`ReflectionRecord` in the stats store.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from eko.config import ReflectionConfig
from eko.errors import LLMError, MalformedDecision, StoreUnavailable
from eko.logging_config import reflection_logger as logger
from eko.models import FACTS, GOALS, SELF, MemoryRecord, ReflectionRecord, utcnow
from eko.reflection.decision import (
    ChatMessage,
    DecisionOutcome,
    DecisionRequest,
    MessageDecision,
)
from eko.reflection.rate_limit import RateLimiter
from eko.scheduling import PeriodicJob, fixed_hours
from eko.storage.sqlite_store import VectorMemoryStore
from eko.storage.stats_store import StatsStore


class ReflectionState(str, Enum):
    IDLE = "idle"
    GATHERING = "gathering"
    THINKING = "thinking"
    DONE = "done"


PUBLIC_STATUS = {
    ReflectionState.IDLE: "idle",
    ReflectionState.GATHERING: "observing",
    ReflectionState.THINKING: "thinking",
    ReflectionState.DONE: "idle",
}


class EventSink(Protocol):
    def emit(self, event: str, payload: Dict[str, Any]) -> None: ...


class ChatGateway(Protocol):
    def last_message(self, room_id: str) -> Optional[ChatMessage]: ...

    def recent_messages(self, room_id: str, limit: int) -> List[ChatMessage]: ...

    def post_message(self, room_id: str, text: str) -> None: ...


class Reasoner(Protocol):
    def decide(self, request: DecisionRequest) -> DecisionOutcome: ...


class NullEventSink:
    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        pass


@dataclass
class TriggerResult:
    room_id: Optional[str]
    reflection: Optional[ReflectionRecord] = None
    skipped: Optional[str] = None  # "busy" | "no-room"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roomId": self.room_id,
            "skipped": self.skipped,
            "reflection": self.reflection.to_dict() if self.reflection else None,
        }


class ReflectionEngine:
    def __init__(
        self,
        store: VectorMemoryStore,
        reasoner: Reasoner,
        stats: StatsStore,
        chat: ChatGateway,
        events: Optional[EventSink] = None,
        config: Optional[ReflectionConfig] = None,
        limiter: Optional[RateLimiter] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.reasoner = reasoner
        self.stats = stats
        self.chat = chat
        self.events = events or NullEventSink()
        self.config = config or ReflectionConfig()
        self.limiter = limiter or RateLimiter(
            stats,
            cooldown_minutes=self.config.cooldown_minutes,
            max_per_day=self.config.max_per_day,
            assistant_id=self.config.assistant_id,
        )
        self.clock = clock

        self._state = ReflectionState.IDLE
        self._state_lock = threading.Lock()
        self._rooms_lock = threading.Lock()
        self._in_flight: Set[str] = set()
        # rooms reason in parallel; the rate window is global, so delivery is serialized
        self._delivery_lock = threading.Lock()
        self._job: Optional[PeriodicJob] = None

    # ---------- state ----------

    @property
    def state(self) -> ReflectionState:
        with self._state_lock:
            return self._state

    @property
    def public_status(self) -> str:
        return PUBLIC_STATUS[self.state]

    def _set_state(self, state: ReflectionState) -> None:
        with self._state_lock:
            previous = self._state
            self._state = state
        if PUBLIC_STATUS[previous] != PUBLIC_STATUS[state]:
            self.events.emit("eko:status", {"status": PUBLIC_STATUS[state]})

    def _progress(self, step: str, **payload: Any) -> None:
        self.events.emit("reflection:progress", {"step": step, **payload})

    # ---------- public API ----------

    def trigger(
        self,
        room_id: Optional[str] = None,
        *,
        manual: bool = False,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> TriggerResult:
        room_id = room_id or self.config.default_room
        if not room_id:
            logger.warning("Reflection trigger without a room and no default room configured")
            return TriggerResult(room_id=None, skipped="no-room")

        with self._rooms_lock:
            if room_id in self._in_flight:
                logger.info(f"Reflection already running for room {room_id}, skipping")
                return TriggerResult(room_id=room_id, skipped="busy")
            self._in_flight.add(room_id)

        now = now or self.clock()
        started = time.time()
        try:
            try:
                reflection = self._cycle(room_id, manual, dry_run, now, started)
            except Exception as e:
                logger.exception(f"Reflection cycle failed in {room_id}")
                reflection = self._complete(
                    ReflectionRecord(
                        action="pass",
                        reason=f"cycle failed: {e}",
                        timestamp=now,
                        room_id=room_id,
                        dry_run=dry_run,
                    ),
                    started,
                )
            return TriggerResult(room_id=room_id, reflection=reflection)
        finally:
            with self._rooms_lock:
                self._in_flight.discard(room_id)
            self._set_state(ReflectionState.IDLE)

    def run_scheduled(self) -> List[TriggerResult]:
        """Cron body: one cycle per configured room."""
        rooms = list(self.config.rooms) or (
            [self.config.default_room] if self.config.default_room else []
        )
        if not rooms:
            logger.warning("Scheduled reflection has no rooms configured")
        return [self.trigger(room) for room in rooms]

    def reset_cooldown(self) -> None:
        self.stats.reset_cooldown()
        logger.info("Reflection cooldown reset")

    def status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self.clock()
        with self._rooms_lock:
            in_flight = sorted(self._in_flight)
        return {
            "state": self.state.value,
            "status": self.public_status,
            "inFlight": in_flight,
            "rateLimit": self.limiter.get_status(now),
            "stats": self.stats.snapshot(now),
            "nextRunAt": (
                self._job.next_run_at.isoformat()
                if self._job and self._job.next_run_at
                else None
            ),
        }

    def start(self) -> None:
        if not self.config.enabled:
            logger.info("Reflection cron disabled")
            return
        if self._job is not None and self._job.is_running:
            return
        self._job = PeriodicJob(
            "reflection",
            self.run_scheduled,
            fixed_hours(self.config.cron_hours, self.config.timezone),
            clock=self.clock,
        )
        self._job.start()

    def stop(self) -> None:
        if self._job is not None:
            self._job.stop()
            self._job = None

    # ---------- cycle ----------

    def _cycle(
        self, room_id: str, manual: bool, dry_run: bool, now: datetime, started: float
    ) -> ReflectionRecord:
        def record(action: str, reason: str, announce: bool = True, **fields: Any) -> ReflectionRecord:
            return self._complete(
                ReflectionRecord(
                    action=action,
                    reason=reason,
                    timestamp=now,
                    room_id=room_id,
                    dry_run=dry_run,
                    **fields,
                ),
                started,
                announce=announce,
            )

        try:
            last = self.chat.last_message(room_id)
        except Exception as e:
            logger.error(f"Cannot read last message in {room_id}: {e}")
            return record("pass", f"chat unavailable: {e}", announce=False)

        allowed, gate_reason = self.limiter.check(last, manual=manual, now=now)
        if not allowed:
            logger.info(f"Reflection skipped in {room_id}: {gate_reason}")
            return record("pass", gate_reason, announce=False, rate_limited=True)

        self._set_state(ReflectionState.GATHERING)
        self._progress("gathering", roomId=room_id)

        try:
            goal = self.store.latest(GOALS)
            goals_count = self.store.count(GOALS)
        except StoreUnavailable as e:
            logger.warning(f"Cannot read goals: {e}")
            return record("pass", f"cannot read goals: {e}")

        if goal is None:
            logger.info("No pending goal, nothing to say")
            return record("pass", "no pending goal")

        facts = self._context(FACTS, goal, self.config.max_facts)
        self_items = self._context(SELF, goal, self.config.max_self)
        try:
            recent = self.chat.recent_messages(room_id, self.config.max_messages)
        except Exception as e:
            logger.warning(f"Skipping recent activity in {room_id}: {e}")
            recent = []
        self._progress(
            "context",
            roomId=room_id,
            goal=goal.content,
            goalsCount=goals_count,
            factsCount=len(facts),
            selfCount=len(self_items),
            messagesCount=len(recent),
        )

        self._set_state(ReflectionState.THINKING)
        self._progress("thinking", roomId=room_id)
        counts = {"goal_id": goal.id, "goals_count": goals_count, "facts_count": len(facts)}

        try:
            outcome = self.reasoner.decide(
                DecisionRequest(
                    goal=goal,
                    facts=facts,
                    self_items=self_items,
                    recent_activity=recent,
                    allow_pass=False,
                )
            )
        except MalformedDecision as e:
            logger.warning(f"Malformed decision treated as pass: {e}")
            return record("pass", f"malformed decision: {e}", **counts)
        except LLMError as e:
            logger.error(f"Reasoning failed: {e}")
            return record("pass", f"reasoning failed: {e}", **counts)

        tokens = {"input_tokens": outcome.input_tokens, "output_tokens": outcome.output_tokens}
        decision = outcome.decision
        if not isinstance(decision, MessageDecision):
            logger.info(f"Reflection decided to pass: {decision.reason}")
            return record("pass", decision.reason, **counts, **tokens)

        if dry_run:
            logger.info(f'Dry run, not sending: "{decision.message[:60]}"')
            return record(
                "message", decision.reason, message=decision.message, tone=decision.tone,
                **counts, **tokens,
            )

        # The window and the goal may have moved while reasoning. Re-check both,
        # post, consume and record without letting another room in between.
        with self._delivery_lock:
            allowed, gate_reason = self.limiter.check(None, manual=manual, now=now)
            if not allowed:
                logger.info(f"Reflection dropped in {room_id} before posting: {gate_reason}")
                return record("pass", gate_reason, rate_limited=True, **counts, **tokens)

            try:
                still_pending = self.store.get(GOALS, goal.id) is not None
            except StoreUnavailable as e:
                logger.warning(f"Cannot confirm goal {goal.id}: {e}")
                return record("pass", f"cannot read goals: {e}", **counts, **tokens)
            if not still_pending:
                logger.info(f'Goal already voiced elsewhere: "{goal.content[:60]}"')
                return record("pass", "goal already voiced", **counts, **tokens)

            try:
                self.chat.post_message(room_id, decision.message)
            except Exception as e:
                logger.error(f"Failed to post reflection message in {room_id}: {e}")
                return record("pass", f"post failed: {e}", **counts, **tokens)
            self._consume_goal(goal)
            logger.info(f'Reflection message sent in {room_id}: "{decision.message[:60]}"')

            return record(
                "message", decision.reason, message=decision.message, tone=decision.tone,
                **counts, **tokens,
            )

    def _context(self, partition: str, goal: MemoryRecord, k: int) -> List[MemoryRecord]:
        """Nearest records to the goal. Memory failures drop this part of the context."""
        try:
            return [hit.record for hit in self.store.search(partition, goal.vector, k=k)]
        except (StoreUnavailable, ValueError) as e:
            logger.warning(f"Skipping {partition} context: {e}")
            return []

    def _consume_goal(self, goal: MemoryRecord) -> None:
        try:
            if self.store.delete(GOALS, goal.id):
                logger.info(f'Goal consumed: "{goal.content[:60]}"')
        except StoreUnavailable as e:
            logger.warning(f"Could not delete consumed goal {goal.id}: {e}")

    def _complete(
        self, reflection: ReflectionRecord, started: float, announce: bool = True
    ) -> ReflectionRecord:
        reflection.duration_ms = int((time.time() - started) * 1000)
        try:
            self.stats.record(reflection)
        except StoreUnavailable as e:
            logger.error(f"Could not record reflection {reflection.id}: {e}")
        if announce:
            self._set_state(ReflectionState.DONE)
            self._progress("done", roomId=reflection.room_id, action=reflection.action)
        try:
            snapshot = self.stats.snapshot(reflection.timestamp)
        except StoreUnavailable:
            snapshot = None
        self.events.emit(
            "reflection:update", {"stats": snapshot, "latest": reflection.to_dict()}
        )
        return reflection
