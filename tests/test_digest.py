import threading
from datetime import timedelta

import pytest

from conftest import T0, FakeExtractor, unit, blend
from eko.config import DigestConfig
from eko.errors import ExtractionError, ReasoningTimeout, StoreUnavailable
from eko.memory.dedup import Deduplicator
from eko.memory.digest import LAST_DIGEST_KEY, DigestScheduler
from eko.memory.extraction import ExtractedFact, ExtractedGoal, ExtractedSelf, Extraction
from eko.memory.live import LiveBuffer
from eko.models import FACTS, GOALS, SELF, LiveEntry
from eko.storage.sqlite_store import to_db_ts


def _extraction():
    return Extraction(
        facts=[ExtractedFact(content="Alice is going to Rome", subjects=["alice", "rome"], ttl="7d")],
        self_items=[ExtractedSelf(content="People here enjoy puns", category="context")],
        goals=[ExtractedGoal(content="Who is Max?", category="curiosity")],
        input_tokens=300,
        output_tokens=80,
    )


def _make(store, embedder, clock, extractor, interval_hours=4.0):
    live = LiveBuffer(store, embedder)
    dedup = Deduplicator(store, embedder)
    digest = DigestScheduler(
        store,
        live,
        dedup,
        extractor,
        config=DigestConfig(interval_hours=interval_hours),
        clock=clock,
    )
    return digest, live


def _fill(live, *texts):
    for i, text in enumerate(texts):
        live.append_message(
            LiveEntry(content=text, author="alice", room="general", timestamp=T0 - timedelta(minutes=10 - i))
        )


def test_empty_buffer_is_a_noop(store, embedder, clock):
    extractor = FakeExtractor(_extraction())
    digest, _ = _make(store, embedder, clock, extractor)

    result = digest.run_digest()

    assert result.ok and result.skipped
    assert extractor.calls == 0
    assert store.count(FACTS) == 0
    assert digest.last_digest_at is None


def test_successful_digest_stores_clears_and_persists(store, embedder, clock):
    extractor = FakeExtractor(_extraction())
    digest, live = _make(store, embedder, clock, extractor)
    _fill(live, "I'm off to Rome next week", "Max says hi")

    result = digest.run_digest()

    assert result.ok
    assert (result.facts, result.self_items, result.goals) == (1, 1, 1)
    assert result.input_tokens == 300
    assert [len(b) for b in extractor.batches] == [2]
    assert store.count(FACTS) == store.count(SELF) == store.count(GOALS) == 1
    assert store.list(FACTS)[0].expires_at == T0 + timedelta(days=7)
    assert store.list(GOALS)[0].category == "curiosity"
    assert live.count() == 0
    assert digest.last_digest_at == T0


@pytest.mark.parametrize("failure", [ExtractionError("bad json"), ReasoningTimeout("15s")])
def test_extraction_failure_leaves_buffer_untouched(store, embedder, clock, failure):
    digest, live = _make(store, embedder, clock, FakeExtractor(failure))
    _fill(live, "one", "two", "three")

    result = digest.run_digest()

    assert not result.ok
    assert live.count() == 3
    assert store.count(FACTS) == 0
    assert digest.last_digest_at is None
    assert digest.last_error is not None


def test_store_failure_keeps_buffer_for_retry(store, embedder, clock, monkeypatch):
    extractor = FakeExtractor(_extraction())
    digest, live = _make(store, embedder, clock, extractor)
    _fill(live, "hello")

    def broken(*args, **kwargs):
        raise StoreUnavailable("disk full")

    monkeypatch.setattr(digest.dedup, "store_goal", broken)
    result = digest.run_digest()

    assert not result.ok
    assert result.facts == 1 and result.goals == 0
    assert live.count() == 1
    assert digest.last_digest_at is None

    # Retry after recovery: the already stored fact deduplicates instead of doubling
    monkeypatch.undo()
    clock.advance(hours=1)
    assert digest.run_digest().ok
    assert store.count(FACTS) == 1
    assert live.count() == 0


def test_repeated_digest_updates_rather_than_duplicates(store, embedder, clock):
    embedder.set("X broke a shoulder", unit(0))
    embedder.set("X broke a shoulder on Jan 10", blend(0, 1, 0.3))
    extractor = FakeExtractor(Extraction(facts=[ExtractedFact(content="X broke a shoulder", subjects=["x", "injury"])]))
    digest, live = _make(store, embedder, clock, extractor)

    _fill(live, "X broke his shoulder")
    digest.run_digest()
    extractor.result = Extraction(
        facts=[ExtractedFact(content="X broke a shoulder on Jan 10", subjects=["x", "injury"])]
    )
    _fill(live, "it was on Jan 10")
    result = digest.run_digest()

    assert result.updated == 1
    assert [r.content for r in store.list(FACTS)] == ["X broke a shoulder on Jan 10"]


def test_overlapping_run_is_rejected(store, embedder, clock):
    entered = threading.Event()
    release = threading.Event()

    class SlowExtractor(FakeExtractor):
        def extract(self, entries):
            entered.set()
            release.wait(5)
            return super().extract(entries)

    digest, live = _make(store, embedder, clock, SlowExtractor(Extraction()))
    _fill(live, "hello")

    worker = threading.Thread(target=digest.run_digest)
    worker.start()
    assert entered.wait(5)
    try:
        second = digest.run_digest()
    finally:
        release.set()
        worker.join(5)

    assert second.busy and not second.ok


def test_catch_up_when_never_run(store, embedder, clock):
    extractor = FakeExtractor(Extraction())
    digest, live = _make(store, embedder, clock, extractor)
    _fill(live, "hello")

    assert digest.needs_catch_up()
    assert digest.catch_up() is not None
    assert extractor.calls == 1


def test_restart_after_interval_fires_exactly_one_catch_up(store, embedder, clock):
    store.set_setting(LAST_DIGEST_KEY, to_db_ts(T0))
    clock.now = T0 + timedelta(hours=5)
    extractor = FakeExtractor(Extraction())
    digest, live = _make(store, embedder, clock, extractor)
    _fill(live, "something happened")

    first = digest.catch_up()
    second = digest.catch_up()

    assert first is not None and first.ok
    assert second is None
    assert extractor.calls == 1
    assert digest.last_digest_at == T0 + timedelta(hours=5)


def test_restart_inside_interval_does_not_catch_up(store, embedder, clock):
    store.set_setting(LAST_DIGEST_KEY, to_db_ts(T0))
    clock.now = T0 + timedelta(hours=3)
    extractor = FakeExtractor(Extraction())
    digest, live = _make(store, embedder, clock, extractor)
    _fill(live, "something happened")

    assert digest.catch_up() is None
    assert extractor.calls == 0


def test_status_reports_last_result(store, embedder, clock):
    digest, live = _make(store, embedder, clock, FakeExtractor(_extraction()))
    _fill(live, "hello")
    digest.run_digest()

    status = digest.status()
    assert status["lastDigestAt"] == T0.isoformat()
    assert status["lastResult"]["facts"] == 1
    assert status["runs"] == 1
    assert status["lastError"] is None
