from datetime import timedelta

from conftest import T0
from eko.models import ReflectionRecord
from eko.reflection.decision import ChatMessage
from eko.reflection.rate_limit import RateLimiter


def _sent(stats, ts):
    stats.record(ReflectionRecord(action="message", reason="r", message="hi", timestamp=ts))


def _human():
    return ChatMessage(author="alice", content="hey", timestamp=T0, author_id="u-alice")


def test_allows_when_window_is_empty(stats):
    allowed, reason = RateLimiter(stats).check(_human(), now=T0)
    assert allowed is True
    assert reason == "allowed"


def test_self_last_message_denied(stats):
    limiter = RateLimiter(stats, assistant_id="eko")
    mine = ChatMessage(author="Eko", content="hello!", timestamp=T0, author_id="eko")

    allowed, reason = limiter.check(mine, manual=True, now=T0)
    assert allowed is False
    assert "mine" in reason


def test_cooldown_denies_then_allows(stats):
    limiter = RateLimiter(stats, cooldown_minutes=30)
    _sent(stats, T0)

    allowed, reason = limiter.check(_human(), now=T0 + timedelta(minutes=10))
    assert allowed is False
    assert reason.startswith("cooldown")

    allowed, _ = limiter.check(_human(), now=T0 + timedelta(minutes=31))
    assert allowed is True


def test_manual_bypasses_cooldown_only(stats):
    limiter = RateLimiter(stats, cooldown_minutes=30, max_per_day=2)
    _sent(stats, T0)
    assert limiter.check(_human(), manual=True, now=T0 + timedelta(minutes=1))[0] is True

    _sent(stats, T0 + timedelta(minutes=2))
    allowed, reason = limiter.check(_human(), manual=True, now=T0 + timedelta(minutes=3))
    assert allowed is False
    assert reason.startswith("daily limit")


def test_status(stats):
    limiter = RateLimiter(stats, cooldown_minutes=30, max_per_day=5)
    _sent(stats, T0)

    status = limiter.get_status(T0 + timedelta(minutes=20))
    assert status["cooldownRemainingSeconds"] == 600
    assert status["todayCount"] == 1
    assert status["canSend"] is False
