#!/usr/bin/env python3
"""
Centralized configuration management for Eko.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv


def _hours(raw: str) -> Tuple[int, ...]:
    return tuple(sorted({int(h) for h in raw.replace(" ", "").split(",") if h}))


@dataclass
class EmbeddingConfig:
    """Configuration for the embedding model."""

    api_key: str = ""
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    timeout: float = 15.0
    max_retries: int = 3
    base_url: Optional[str] = None


@dataclass
class LLMConfig:
    """Configuration for the reasoning client."""

    api_key: str = ""
    model: str = "gpt-4o-mini"
    max_tokens: int = 2048
    decision_max_tokens: int = 500
    temperature: float = 0.4
    timeout: float = 15.0
    max_retries: int = 3
    base_url: Optional[str] = None


@dataclass
class MemoryConfig:
    """Configuration for the vector memory store."""

    db_path: str = "eko.db"
    dedup_threshold: float = 0.85
    dedup_search_k: int = 5
    live_search_k: int = 10
    purge_interval_hours: int = 1


@dataclass
class DigestConfig:
    """Configuration for the live-buffer digest."""

    hours: Tuple[int, ...] = (2, 6, 10, 14, 18, 22)
    timezone: str = "Europe/Paris"
    interval_hours: float = 4.0
    enabled: bool = True


@dataclass
class ReflectionConfig:
    """Configuration for the proactive reflection engine."""

    cooldown_minutes: int = 30
    max_per_day: int = 5
    cron_hours: Tuple[int, ...] = (0, 3, 6, 9, 12, 15, 18, 21)
    timezone: str = "Europe/Paris"
    history_size: int = 50
    max_messages: int = 30
    max_facts: int = 10
    max_self: int = 20
    default_room: Optional[str] = None
    rooms: Tuple[str, ...] = ()
    assistant_id: str = "eko"
    enabled: bool = True


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    level: str = "INFO"
    log_file: Optional[str] = None


@dataclass
class EkoConfig:
    """Master configuration for Eko."""

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    digest: DigestConfig = field(default_factory=DigestConfig)
    reflection: ReflectionConfig = field(default_factory=ReflectionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls) -> "EkoConfig":
        """Load configuration from environment variables (and a .env file)."""
        load_dotenv()
        config = cls()

        api_key = os.getenv("OPENAI_API_KEY", "")
        base_url = os.getenv("OPENAI_BASE_URL") or None

        config.embedding.api_key = api_key
        config.embedding.base_url = base_url
        config.embedding.model = os.getenv("EKO_EMBEDDING_MODEL", config.embedding.model)
        config.embedding.dimensions = int(
            os.getenv("EKO_EMBEDDING_DIMENSIONS", str(config.embedding.dimensions))
        )
        config.embedding.timeout = float(
            os.getenv("EKO_EMBEDDING_TIMEOUT", str(config.embedding.timeout))
        )

        config.llm.api_key = api_key
        config.llm.base_url = base_url
        config.llm.model = os.getenv("EKO_LLM_MODEL", config.llm.model)
        config.llm.max_tokens = int(os.getenv("EKO_MAX_TOKENS", str(config.llm.max_tokens)))
        config.llm.temperature = float(
            os.getenv("EKO_TEMPERATURE", str(config.llm.temperature))
        )
        config.llm.timeout = float(os.getenv("EKO_LLM_TIMEOUT", str(config.llm.timeout)))
        config.llm.max_retries = int(
            os.getenv("EKO_MAX_RETRIES", str(config.llm.max_retries))
        )

        config.memory.db_path = os.getenv("EKO_DB_PATH", config.memory.db_path)
        config.memory.dedup_threshold = float(
            os.getenv("EKO_DEDUP_THRESHOLD", str(config.memory.dedup_threshold))
        )

        digest_hours = os.getenv("EKO_DIGEST_HOURS")
        if digest_hours:
            config.digest.hours = _hours(digest_hours)
        config.digest.timezone = os.getenv("EKO_TIMEZONE", config.digest.timezone)
        config.digest.interval_hours = float(
            os.getenv("EKO_DIGEST_INTERVAL_HOURS", str(config.digest.interval_hours))
        )
        config.digest.enabled = (
            os.getenv("EKO_DIGEST_ENABLED", "true").lower() == "true"
        )

        config.reflection.cooldown_minutes = int(
            os.getenv("EKO_COOLDOWN_MINUTES", str(config.reflection.cooldown_minutes))
        )
        config.reflection.max_per_day = int(
            os.getenv("EKO_MAX_PER_DAY", str(config.reflection.max_per_day))
        )
        cron_hours = os.getenv("EKO_REFLECTION_HOURS")
        if cron_hours:
            config.reflection.cron_hours = _hours(cron_hours)
        config.reflection.timezone = config.digest.timezone
        config.reflection.default_room = os.getenv("EKO_DEFAULT_ROOM") or None
        rooms = os.getenv("EKO_ROOMS", "")
        config.reflection.rooms = tuple(r for r in rooms.replace(" ", "").split(",") if r)
        config.reflection.assistant_id = os.getenv(
            "EKO_ASSISTANT_ID", config.reflection.assistant_id
        )
        config.reflection.enabled = (
            os.getenv("EKO_REFLECTION_ENABLED", "true").lower() == "true"
        )

        config.logging.level = os.getenv("EKO_LOG_LEVEL", "INFO")
        config.logging.log_file = os.getenv("EKO_LOG_FILE")

        return config

    def validate(self) -> None:
        """Validate configuration values."""
        errors = []

        if not 0 < self.memory.dedup_threshold <= 1:
            errors.append("Dedup threshold must be in (0, 1]")

        if not 0 <= self.llm.temperature <= 2:
            errors.append("LLM temperature must be between 0 and 2")

        if self.reflection.cooldown_minutes < 0:
            errors.append("Reflection cooldown must be >= 0 minutes")

        if self.reflection.max_per_day < 0:
            errors.append("Reflection max_per_day must be >= 0")

        for name, hours in (
            ("digest", self.digest.hours),
            ("reflection", self.reflection.cron_hours),
        ):
            if not hours or any(h < 0 or h > 23 for h in hours):
                errors.append(f"{name} hours must be a non-empty list within 0-23")

        if self.digest.interval_hours <= 0:
            errors.append("Digest interval must be positive")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


# Global configuration instance
_config: Optional[EkoConfig] = None


def get_config() -> EkoConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = EkoConfig.from_env()
        _config.validate()
    return _config


def set_config(config: EkoConfig) -> None:
    """Set the global configuration instance."""
    global _config
    config.validate()
    _config = config
