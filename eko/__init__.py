# Eko long-term memory and proactive reflection core
__all__ = [
    "api",
    "config",
    "embeddings",
    "llm_client",
    "memory",
    "reflection",
    "runtime",
    "scheduling",
    "storage",
]
