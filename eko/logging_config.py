#!/usr/bin/env python3
"""
Logging setup for the Eko service.

Everything logs under the `eko` logger tree (`eko.memory`, `eko.digest`,
`eko.reflection`, `eko.llm`, `eko.api`, ...). The service runs for days, so
the optional log file rotates instead of growing forever.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(threadName)s] %(message)s"

# HTTP client chatter from the OpenAI SDK drowns out cycle outcomes at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "openai")

MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def setup_logging(
    level: Union[str, int] = "INFO",
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
    quiet_third_party: bool = True,
) -> logging.Logger:
    """Configure the `eko` logger tree. Safe to call more than once."""
    root = logging.getLogger("eko")
    root.setLevel(_resolve_level(level))
    root.propagate = False

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(format_string or DEFAULT_FORMAT)

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(formatter)
    root.addHandler(stream)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"
        )
        rotating.setFormatter(formatter)
        root.addHandler(rotating)

    if quiet_third_party:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(logging.WARNING, root.level))

    return root


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"eko.{name}")


memory_logger = get_logger("memory")
digest_logger = get_logger("digest")
reflection_logger = get_logger("reflection")
llm_logger = get_logger("llm")
api_logger = get_logger("api")
