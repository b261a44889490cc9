# eko/reflection/rate_limit.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from eko.models import utcnow
from eko.reflection.decision import ChatMessage
from eko.storage.stats_store import StatsStore


class RateLimiter:
    """Gates a reflection cycle before any reasoning call is made.

    Gates, in order:
      1. the room's last message was written by the assistant itself
      2. cooldown since the last delivered message (bypassed when manual)
      3. daily cap in the local timezone (never bypassed)

    The window lives in `StatsStore`, so it is global across rooms and
    survives restarts.
    """

    def __init__(
        self,
        stats: StatsStore,
        cooldown_minutes: int = 30,
        max_per_day: int = 5,
        assistant_id: str = "eko",
    ):
        self.stats = stats
        self.cooldown = timedelta(minutes=cooldown_minutes)
        self.max_per_day = max_per_day
        self.assistant_id = assistant_id

    def is_self(self, message: Optional[ChatMessage]) -> bool:
        if message is None:
            return False
        return message.author_id == self.assistant_id or (
            message.author_id is None and message.author == self.assistant_id
        )

    def check(
        self,
        last_message: Optional[ChatMessage] = None,
        *,
        manual: bool = False,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, str]:
        """
        Returns:
            (allowed: bool, reason: str)
        """
        now = now or utcnow()

        if self.is_self(last_message):
            return False, "last message in room is mine"

        if not manual:
            remaining = self.cooldown_remaining(now)
            if remaining > timedelta(0):
                return False, f"cooldown: {int(remaining.total_seconds() // 60)}min remaining"

        today = self.stats.today_count(now)
        if today >= self.max_per_day:
            return False, f"daily limit reached: {today}/{self.max_per_day}"

        return True, "allowed"

    def cooldown_remaining(self, now: Optional[datetime] = None) -> timedelta:
        last = self.stats.last_message_at()
        if last is None:
            return timedelta(0)
        return max(timedelta(0), last + self.cooldown - (now or utcnow()))

    def get_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        last = self.stats.last_message_at()
        remaining = self.cooldown_remaining(now)
        today = self.stats.today_count(now)
        return {
            "lastMessageAt": last.isoformat() if last else None,
            "cooldownMinutes": int(self.cooldown.total_seconds() // 60),
            "cooldownRemainingSeconds": int(remaining.total_seconds()),
            "todayCount": today,
            "maxPerDay": self.max_per_day,
            "canSend": remaining == timedelta(0) and today < self.max_per_day,
        }
