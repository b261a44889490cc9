# eko/runtime.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from eko.config import EkoConfig, get_config
from eko.embeddings import Embedder, OpenAIEmbedder
from eko.errors import EkoError
from eko.llm_client import ReasoningClient
from eko.logging_config import get_logger, setup_logging
from eko.memory.dedup import Deduplicator
from eko.memory.digest import DigestScheduler
from eko.memory.extraction import Extractor
from eko.memory.live import LiveBuffer
from eko.memory.ttl import TTLManager
from eko.models import FACTS, LiveEntry, utcnow
from eko.reflection.decision import ChatMessage
from eko.reflection.engine import ChatGateway, EventSink, Reasoner, ReflectionEngine
from eko.scheduling import PeriodicJob, every
from eko.storage.sqlite_store import VectorMemoryStore
from eko.storage.stats_store import StatsStore

logger = get_logger("runtime")


class NullChatGateway:
    """Gateway used when no chat transport is attached (admin API only)."""

    def last_message(self, room_id: str) -> Optional[ChatMessage]:
        return None

    def recent_messages(self, room_id: str, limit: int) -> List[ChatMessage]:
        return []

    def post_message(self, room_id: str, text: str) -> None:
        logger.warning(f"No chat transport attached, dropping message for {room_id}")


class EkoRuntime:
    """
    Wires the memory and reflection components together and owns their jobs:
    - digest (startup catch-up, then fixed local hours)
    - reflection cron
    - hourly TTL purge
    """

    def __init__(
        self,
        store: VectorMemoryStore,
        stats: StatsStore,
        embedder: Embedder,
        reasoner: Reasoner,
        extractor: Extractor,
        chat: Optional[ChatGateway] = None,
        events: Optional[EventSink] = None,
        config: Optional[EkoConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or EkoConfig()
        self.store = store
        self.stats = stats
        self.embedder = embedder
        self.clock = clock

        mem = self.config.memory
        self.dedup = Deduplicator(
            store, embedder, threshold=mem.dedup_threshold, search_k=mem.dedup_search_k
        )
        self.live = LiveBuffer(store, embedder, search_k=mem.live_search_k)
        self.ttl = TTLManager(store)
        self.digest = DigestScheduler(
            store, self.live, self.dedup, extractor, config=self.config.digest, clock=clock
        )
        self.reflection = ReflectionEngine(
            store,
            reasoner,
            stats,
            chat or NullChatGateway(),
            events=events,
            config=self.config.reflection,
            clock=clock,
        )
        self._purge_job: Optional[PeriodicJob] = None

    @classmethod
    def from_config(
        cls,
        config: Optional[EkoConfig] = None,
        chat: Optional[ChatGateway] = None,
        events: Optional[EventSink] = None,
    ) -> "EkoRuntime":
        config = config or get_config()
        setup_logging(config.logging.level, config.logging.log_file)
        store = VectorMemoryStore(config.memory.db_path)
        stats = StatsStore(
            config.memory.db_path,
            tz=config.reflection.timezone,
            history_size=config.reflection.history_size,
        )
        client = ReasoningClient(config.llm)
        return cls(
            store=store,
            stats=stats,
            embedder=OpenAIEmbedder(config.embedding),
            reasoner=client,
            extractor=client,
            chat=chat,
            events=events,
            config=config,
        )

    # ---------- lifecycle ----------

    def start(self) -> None:
        self.digest.start()
        self.reflection.start()
        if self._purge_job is None:
            self._purge_job = PeriodicJob(
                "ttl-purge",
                self.purge_expired,
                every(timedelta(hours=self.config.memory.purge_interval_hours)),
                clock=self.clock,
                on_start=self.purge_expired,
            )
            self._purge_job.start()
        logger.info("Eko runtime started")

    def stop(self) -> None:
        self.digest.stop()
        self.reflection.stop()
        if self._purge_job is not None:
            self._purge_job.stop()
            self._purge_job = None
        logger.info("Eko runtime stopped")

    def close(self) -> None:
        self.stop()
        self.stats.close()
        self.store.close()

    # ---------- operations ----------

    def append_live_message(
        self,
        content: str,
        author: str,
        room: str,
        timestamp: Optional[datetime] = None,
        message_id: Optional[str] = None,
        author_id: Optional[str] = None,
        room_id: Optional[str] = None,
    ) -> Optional[str]:
        """Buffer a room message. Never raises: the reply path must not block on memory."""
        try:
            entry = LiveEntry(
                content=content,
                author=author,
                room=room,
                timestamp=timestamp or self.clock(),
                author_id=author_id,
                room_id=room_id,
                message_id=message_id,
            )
            return self.live.append_message(entry)
        except (EkoError, ValueError) as e:
            logger.warning(f"Live indexing failed for message from {author}: {e}")
            return None

    def relevant_context(self, query: str, k: Optional[int] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Live and fact hits for a reply, empty on any memory failure."""
        empty: Dict[str, List[Dict[str, Any]]] = {"live": [], "facts": []}
        if not query or not query.strip():
            return empty
        try:
            vector = self.embedder.embed(query)
            live_hits = self.live.search_relevant(vector, k=k)
            fact_hits = self.store.search(FACTS, vector, k=k or self.config.reflection.max_facts)
        except (EkoError, ValueError) as e:
            logger.warning(f"Context retrieval degraded: {e}")
            return empty
        return {
            "live": [{**LiveEntry.from_record(h.record).to_dict(), "score": h.score} for h in live_hits],
            "facts": [{**h.record.to_dict(), "score": h.score} for h in fact_hits],
        }

    def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        return self.ttl.purge_expired(now or self.clock())
