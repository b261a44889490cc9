import json
from types import SimpleNamespace

import httpx
import openai
import pytest

from conftest import T0, unit
from eko.config import EmbeddingConfig, LLMConfig
from eko.embeddings import OpenAIEmbedder
from eko.errors import EmbeddingFailure, LLMError, MalformedDecision, ReasoningTimeout
from eko.llm_client import ReasoningClient, render_decision_prompt
from eko.models import GOALS, LiveEntry, MemoryRecord
from eko.reflection.decision import ChatMessage, DecisionRequest, MessageDecision


class FakeCompletions:
    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=reply), finish_reason="stop")],
            usage=SimpleNamespace(prompt_tokens=120, completion_tokens=30),
        )


def _client(*replies):
    completions = FakeCompletions(*replies)
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return ReasoningClient(LLMConfig(api_key="test"), client=fake), completions


def _request():
    goal = MemoryRecord("Who is Max?", unit(0), GOALS, category="curiosity")
    return DecisionRequest(
        goal=goal,
        recent_activity=[ChatMessage(author="alice", content="Max says hi", timestamp=T0)],
    )


def _timeout():
    return openai.APITimeoutError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))


def test_decide_parses_message_and_tokens():
    client, completions = _client(
        json.dumps({"action": "message", "message": "Who is Max, by the way?", "reason": "new name", "tone": "playful"})
    )

    outcome = client.decide(_request())

    assert isinstance(outcome.decision, MessageDecision)
    assert outcome.input_tokens == 120 and outcome.output_tokens == 30
    call = completions.calls[0]
    assert call["response_format"] == {"type": "json_object"}
    assert call["timeout"] == 15.0
    assert "Who is Max?" in call["messages"][1]["content"]
    assert client.get_usage_stats()["request_count"] == 1


def test_decide_malformed_reply_raises():
    client, _ = _client('{"action": "message"}')
    with pytest.raises(MalformedDecision):
        client.decide(_request())


def test_extract_returns_candidates_with_tokens():
    client, completions = _client(
        json.dumps(
            {
                "facts": [{"content": "Max is Alice's cousin", "subjects": ["max", "alice"], "ttl": None}],
                "self": [],
                "goals": [{"content": "Where does Max live?", "category": "curiosity"}],
            }
        )
    )
    entries = [LiveEntry(content="Max is my cousin", author="alice", room="general", timestamp=T0)]

    extraction = client.extract(entries)

    assert [f.content for f in extraction.facts] == ["Max is Alice's cousin"]
    assert len(extraction.goals) == 1
    assert extraction.input_tokens == 120
    assert "alice: Max is my cousin" in completions.calls[0]["messages"][1]["content"]


def test_timeout_maps_to_reasoning_timeout(monkeypatch):
    # Skip tenacity backoff sleeps
    monkeypatch.setattr(ReasoningClient._make_request.retry, "sleep", lambda s: None)
    client, completions = _client(_timeout(), _timeout(), _timeout())

    with pytest.raises(ReasoningTimeout):
        client.decide(_request())
    assert len(completions.calls) == 3


def test_other_api_errors_map_to_llm_error():
    client, _ = _client(openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com")))
    with pytest.raises(LLMError):
        client.decide(_request())


def test_missing_api_key_rejected():
    with pytest.raises(LLMError):
        ReasoningClient(LLMConfig(api_key=""))


def test_render_prompt_handles_empty_context():
    text = render_decision_prompt(DecisionRequest(goal=None))
    assert "(none)" in text
    assert "(no recent messages)" in text


class FakeEmbeddings:
    def __init__(self, reply):
        self.reply = reply

    def create(self, **kwargs):
        if isinstance(self.reply, Exception):
            raise self.reply
        data = [SimpleNamespace(index=i, embedding=[float(i), 1.0]) for i in range(len(kwargs["input"]))]
        return SimpleNamespace(data=list(reversed(data)))


def test_embedder_orders_by_index():
    embedder = OpenAIEmbedder(EmbeddingConfig(api_key="k"), client=SimpleNamespace(embeddings=FakeEmbeddings(None)))
    assert embedder.embed_many(["a", "b"]) == [[0.0, 1.0], [1.0, 1.0]]


def test_embedder_failures_surface_as_embedding_failure():
    err = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com"))
    embedder = OpenAIEmbedder(EmbeddingConfig(api_key="k"), client=SimpleNamespace(embeddings=FakeEmbeddings(err)))
    with pytest.raises(EmbeddingFailure):
        embedder.embed("hello")
    with pytest.raises(EmbeddingFailure):
        embedder.embed("   ")
