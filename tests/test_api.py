from datetime import timedelta

import pytest

fastapi = pytest.importorskip("fastapi")
from fastapi.testclient import TestClient  # noqa: E402

from conftest import T0, FakeExtractor, FakeReasoner, unit  # noqa: E402
from eko.api.app import create_app  # noqa: E402
from eko.config import EkoConfig  # noqa: E402
from eko.errors import StoreUnavailable  # noqa: E402
from eko.memory.extraction import ExtractedFact, Extraction  # noqa: E402
from eko.models import FACTS, GOALS  # noqa: E402
from eko.reflection.decision import MessageDecision  # noqa: E402
from eko.runtime import EkoRuntime  # noqa: E402


@pytest.fixture()
def runtime(store, stats, embedder, chat, sink, clock):
    config = EkoConfig()
    config.reflection.default_room = "general"
    reasoner = FakeReasoner(MessageDecision(action="message", message="Who is Max?", reason="new name"))
    extractor = FakeExtractor(
        Extraction(facts=[ExtractedFact(content="Max is Alice's cousin", subjects=["max", "alice"])])
    )
    return EkoRuntime(
        store, stats, embedder, reasoner, extractor, chat=chat, events=sink, config=config, clock=clock
    )


@pytest.fixture()
def client(runtime):
    return TestClient(create_app(runtime))


def test_health_and_endpoints(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.json()["counts"]["facts"] == 0

    data = client.get("/endpoints").json()
    assert isinstance(data, dict) and data["items"]


def test_live_ingest_preview_and_digest(client, runtime):
    r = client.post("/live", json={"content": "Max is my cousin", "author": "alice", "room": "general"})
    assert r.status_code == 200 and r.json()["success"] is True

    live = client.get("/live").json()
    assert live["count"] == 1
    assert live["preview"][0]["content"] == "Max is my cousin"
    assert client.get("/live/stats").json()["count"] == 1

    digest = client.post("/digest").json()
    assert digest["success"] is True
    assert digest["result"]["facts"] == 1
    assert client.get("/live").json()["count"] == 0
    assert client.get("/memory/counts").json()["facts"] == 1


def test_live_delete_one_and_clear(client, runtime):
    entry_id = client.post("/live", json={"content": "hello", "author": "bob", "room": "general"}).json()["id"]
    client.post("/live", json={"content": "again", "author": "bob", "room": "general"})

    assert client.delete(f"/live/{entry_id}").status_code == 200
    assert client.delete(f"/live/{entry_id}").status_code == 404
    assert client.delete("/live").json()["cleared"] == 1


def test_memory_list_get_delete(client, runtime):
    result = runtime.dedup.store_fact("Alice lives in Lyon", ["alice"], now=T0)

    listed = client.get("/memory/facts").json()
    assert listed["count"] == 1
    assert listed["items"][0]["content"] == "Alice lives in Lyon"
    assert client.get(f"/memory/facts/{result.id}").json()["subjects"] == ["alice"]

    assert client.delete(f"/memory/facts/{result.id}").status_code == 200
    assert client.get(f"/memory/facts/{result.id}").status_code == 404


def test_unknown_partition_is_404(client):
    assert client.get("/memory/dreams").status_code == 404
    assert client.delete("/memory/dreams/abc").status_code == 404


def test_purge_endpoint(client, runtime, clock):
    runtime.dedup.store_fact("Carol is in Rome this week", ["carol"], "7d", now=T0)
    clock.advance(days=8)
    assert client.post("/memory/purge").json()["removed"]["facts"] == 1


def test_reflection_trigger_status_and_reset(client, runtime, chat, embedder):
    embedder.set("Who is Max?", unit(0))
    runtime.dedup.store_goal("Who is Max?", "curiosity", now=T0 - timedelta(hours=1))
    chat.say("general", "alice", "Max is coming over", author_id="u-alice")

    dry = client.post("/reflection/trigger", json={"dryRun": True}).json()
    assert dry["reflection"]["action"] == "message"
    assert dry["reflection"]["dryRun"] is True
    assert runtime.store.count(GOALS) == 1

    runtime.reflection.reasoner.outcomes.append(
        MessageDecision(action="message", message="Who is Max?", reason="new name")
    )
    real = client.post("/reflection/trigger", json={"roomId": "general"}).json()
    assert real["reflection"]["action"] == "message"
    assert chat.posted == [("general", "Who is Max?")]

    status = client.get("/reflection/status").json()
    assert status["stats"]["message_count"] == 1
    assert status["rateLimit"]["todayCount"] == 1

    assert client.post("/reflection/reset-cooldown").json()["success"] is True
    assert client.get("/reflection/status").json()["rateLimit"]["lastMessageAt"] is None
    assert client.get("/reflection/state").json() == {"state": "idle", "status": "idle"}


def test_trigger_without_room_is_400(client, runtime):
    runtime.reflection.config.default_room = None
    assert client.post("/reflection/trigger").status_code == 400


def test_store_unavailable_maps_to_503(client, runtime, monkeypatch):
    def down():
        raise StoreUnavailable("database is locked")

    monkeypatch.setattr(runtime.store, "counts", down)
    r = client.get("/memory/counts")
    assert r.status_code == 503
    assert "unavailable" in r.json()["detail"]


def test_facts_partition_constant_matches_route(client):
    assert client.get(f"/memory/{FACTS}").status_code == 200


def test_trigger_with_chat_down_still_answers(client, runtime, chat, monkeypatch):
    def down(room_id):
        raise ConnectionError("transport down")

    monkeypatch.setattr(chat, "last_message", down)
    r = client.post("/reflection/trigger", json={"roomId": "general"})

    assert r.status_code == 200
    assert r.json()["reflection"]["action"] == "pass"
    assert client.get("/reflection/status").json()["stats"]["total"] == 1
