#!/usr/bin/env python3
"""
Reasoning client: structured decisions and digest extraction over the OpenAI API,
with retry logic, timeouts and usage tracking.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import openai
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import LLMConfig
from .errors import LLMError, RateLimitError, ReasoningTimeout
from .logging_config import llm_logger as logger
from .memory.extraction import Extraction, format_entries, parse_extraction
from .models import LiveEntry
from .reflection.decision import DecisionOutcome, DecisionRequest, parse_decision


DECISION_SYSTEM_PROMPT = """You are Eko, a small assistant living in a group chat.
Nobody called you: you are looking at the room on your own initiative.

You carry one open curiosity (the goal below). Ask it now, naturally, like a
curious colleague would ("By the way, who is X?"). It does not need to fit the
conversation perfectly. Use the facts and self-knowledge only as background.

Adapt your tone: light chat -> playful, help requests -> helpful,
technical talk -> technical.

Answer with JSON only:
{"action": "message", "message": "...", "reason": "...", "tone": "playful" | "helpful" | "technical"}"""

OPEN_MODE_ADDENDUM = """
If nothing worth saying comes to mind, answer {"action": "pass", "reason": "..."}."""

EXTRACTION_SYSTEM_PROMPT = """You analyse group-chat messages for a small assistant named Eko.

Extract three kinds of durable information:
1. facts: facts about the humans (relations, life events, trips, preferences, where they live).
   Skip greetings, small talk, very temporary states and general world knowledge.
   Each fact has "content", "subjects" (lowercase tags) and "ttl":
   "7d" one-off event, "30d" medium term, "90d" long term, null permanent.
2. self: what Eko learns about itself. "category" is one of
   context, capability, limitation, preference, relation.
3. goals: subtle, emergent aspirations or curiosities Eko could voice later
   (e.g. an unknown person is mentioned -> "Who is Max?"). "category" is one of
   capability_request, understanding, connection, curiosity.
   Only produce a goal when it is genuinely grounded in the conversation.

Answer with JSON only: {"facts": [...], "self": [...], "goals": [...]}"""


@dataclass
class LLMResponse:
    """Structured response from the LLM."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int
    finish_reason: str
    response_time_ms: int


def render_decision_prompt(request: DecisionRequest) -> str:
    activity = "\n".join(
        f"[{m.timestamp.strftime('%H:%M')}] {m.author}: {m.content}"
        for m in request.recent_activity
    ) or "(no recent messages)"
    facts = "\n".join(
        f"- {f.content} (subjects: {', '.join(f.subjects)})" for f in request.facts
    ) or "(no relevant facts)"
    self_items = "\n".join(
        f"- ({s.category or 'general'}) {s.content}" for s in request.self_items
    ) or "(no self knowledge)"
    goal = (
        f"[{request.goal.id}] ({request.goal.category or 'general'}) {request.goal.content}"
        if request.goal
        else "(none)"
    )
    return (
        f"## Your curiosity\n{goal}\n\n"
        f"## Recent room activity\n{activity}\n\n"
        f"## Facts you know\n{facts}\n\n"
        f"## What you know about yourself\n{self_items}"
    )


class ReasoningClient:
    """OpenAI-backed reasoning collaborator for reflection decisions and digests."""

    def __init__(self, config: Optional[LLMConfig] = None, client=None):
        self.config = config or LLMConfig()
        if client is None:
            if not self.config.api_key:
                raise LLMError("OPENAI_API_KEY not set; cannot run reasoning")
            client = openai.OpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                max_retries=0,
            )
        self.client = client

        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.request_count = 0

        logger.info(f"Initialized reasoning client with model: {self.config.model}")

    # ------------------ public API ------------------

    def decide(self, request: DecisionRequest) -> DecisionOutcome:
        """Ask for a pass/message decision. Contract violations raise MalformedDecision."""
        system = DECISION_SYSTEM_PROMPT + (OPEN_MODE_ADDENDUM if request.allow_pass else "")
        response = self.chat(
            system=system,
            user=render_decision_prompt(request),
            max_tokens=self.config.decision_max_tokens,
        )
        logger.debug(f"Decision raw response: {response.content[:500]}")
        decision = parse_decision(response.content)
        return DecisionOutcome(
            decision=decision,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        )

    def extract(self, entries: Sequence[LiveEntry]) -> Extraction:
        user = f"Messages to analyse:\n\n{format_entries(entries)}"
        logger.info(
            f"Digest prompt: {len(EXTRACTION_SYSTEM_PROMPT) + len(user)} chars "
            f"for {len(entries)} messages"
        )
        response = self.chat(system=EXTRACTION_SYSTEM_PROMPT, user=user)
        if response.finish_reason == "length":
            logger.warning("Extraction response was truncated (max_tokens reached)")
        extraction = parse_extraction(response.content)
        extraction.input_tokens = response.input_tokens
        extraction.output_tokens = response.output_tokens
        return extraction

    def chat(
        self,
        system: str,
        user: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """Send a JSON-mode chat completion with retry logic."""
        start_time = time.time()
        try:
            response = self._make_request(
                system=system,
                user=user,
                temperature=self.config.temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.config.max_tokens,
            )
        except RetryError as e:
            cause = e.last_attempt.exception()
            if isinstance(cause, openai.APITimeoutError):
                raise ReasoningTimeout(f"Request timed out after {self.config.timeout}s") from cause
            raise RateLimitError(f"Rate limit exceeded: {cause}") from cause
        except openai.APITimeoutError as e:
            logger.warning(f"Request timeout: {e}")
            raise ReasoningTimeout(f"Request timed out after {self.config.timeout}s") from e
        except openai.RateLimitError as e:
            logger.warning(f"Rate limit exceeded: {e}")
            raise RateLimitError(f"Rate limit exceeded: {e}") from e
        except openai.OpenAIError as e:
            logger.error(f"LLM request failed: {e}")
            raise LLMError(f"LLM request failed: {e}") from e

        response_time_ms = int((time.time() - start_time) * 1000)
        choice = response.choices[0]
        usage = response.usage
        input_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
        output_tokens = int(getattr(usage, "completion_tokens", 0) or 0)

        self.total_input_tokens += input_tokens
        self.total_output_tokens += output_tokens
        self.request_count += 1

        logger.info(
            f"LLM request completed in {response_time_ms}ms, "
            f"finish_reason: {choice.finish_reason}"
        )
        return LLMResponse(
            content=(choice.message.content or "").strip(),
            model=self.config.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            finish_reason=choice.finish_reason or "",
            response_time_ms=response_time_ms,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type((openai.RateLimitError, openai.APITimeoutError)),
    )
    def _make_request(self, system: str, user: str, temperature: float, max_tokens: int) -> Any:
        """Make the actual API request."""
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]

        logger.debug(f"Making LLM request: model={self.config.model}, temp={temperature}")

        return self.client.chat.completions.create(
            model=self.config.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
            timeout=self.config.timeout,
        )

    def get_usage_stats(self) -> Dict[str, Any]:
        return {
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "request_count": self.request_count,
            "model": self.config.model,
        }
