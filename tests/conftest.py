import contextlib
import hashlib
import re
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Ensure project root is on sys.path so `import eko` works when running plain `pytest`
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from eko.errors import EmbeddingFailure  # noqa: E402
from eko.memory.extraction import Extraction  # noqa: E402
from eko.reflection.decision import ChatMessage, DecisionOutcome  # noqa: E402

DIM = 16
T0 = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def unit(i: int, dim: int = DIM) -> List[float]:
    v = [0.0] * dim
    v[i] = 1.0
    return v


def blend(i: int, j: int, weight: float, dim: int = DIM) -> List[float]:
    """Unit-ish vector on axis i tilted toward axis j (cosine to unit(i) is 1/sqrt(1+w^2))."""
    v = [0.0] * dim
    v[i] = 1.0
    v[j] = weight
    return v


class FakeEmbedder:
    """Deterministic embedder: explicit vectors when registered, hashed bag of words otherwise."""

    def __init__(self, dimensions: int = DIM):
        self.dimensions = dimensions
        self.vectors: Dict[str, List[float]] = {}
        self.calls: List[str] = []
        self.fail = False

    def set(self, text: str, vector: List[float]) -> None:
        self.vectors[text] = list(vector)

    def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingFailure("embedding backend down")
        if text in self.vectors:
            return list(self.vectors[text])
        v = [0.0] * self.dimensions
        for word in re.findall(r"\w+", text.lower()):
            idx = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimensions
            v[idx] += 1.0
        if not any(v):
            v[0] = 1.0
        return v

    def embed_many(self, texts):
        return [self.embed(t) for t in texts]


class FakeReasoner:
    """Returns queued outcomes (or raises queued exceptions) and counts calls."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    def decide(self, request):
        self.requests.append(request)
        item = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(item, Exception):
            raise item
        if item is None:
            from eko.reflection.decision import PassDecision

            item = PassDecision(action="pass", reason="nothing to add")
        return DecisionOutcome(decision=item, input_tokens=100, output_tokens=20)

    @property
    def calls(self) -> int:
        return len(self.requests)


class FakeExtractor:
    def __init__(self, result=None):
        self.result = result if result is not None else Extraction()
        self.batches = []

    def extract(self, entries):
        self.batches.append(list(entries))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result

    @property
    def calls(self) -> int:
        return len(self.batches)


class FakeChat:
    def __init__(self):
        self.rooms: Dict[str, List[ChatMessage]] = {}
        self.posted: List[tuple] = []
        self.fail_post = False

    def say(self, room_id: str, author: str, content: str, ts: Optional[datetime] = None, author_id=None):
        self.rooms.setdefault(room_id, []).append(
            ChatMessage(author=author, content=content, timestamp=ts or T0, author_id=author_id)
        )

    def last_message(self, room_id):
        msgs = self.rooms.get(room_id) or []
        return msgs[-1] if msgs else None

    def recent_messages(self, room_id, limit):
        return list(self.rooms.get(room_id, []))[-limit:]

    def post_message(self, room_id, text):
        if self.fail_post:
            raise ConnectionError("chat transport down")
        self.posted.append((room_id, text))
        self.say(room_id, "eko", text, author_id="eko")


class RecordingSink:
    def __init__(self):
        self.events: List[tuple] = []

    def emit(self, event, payload):
        self.events.append((event, payload))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# Shared DB-grounded fixtures


@pytest.fixture()
def db_path(tmp_path):
    return str(tmp_path / "eko_test.sqlite")


@pytest.fixture()
def store(db_path):
    from eko.storage.sqlite_store import VectorMemoryStore

    s = VectorMemoryStore(db_path)
    yield s
    with contextlib.suppress(Exception):
        s.close()


@pytest.fixture()
def stats(db_path):
    from eko.storage.stats_store import StatsStore

    s = StatsStore(db_path, tz="Europe/Paris")
    yield s
    with contextlib.suppress(Exception):
        s.close()


@pytest.fixture()
def embedder():
    return FakeEmbedder()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def chat():
    return FakeChat()


@pytest.fixture()
def sink():
    return RecordingSink()
