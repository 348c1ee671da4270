from __future__ import annotations

import logging
import os
from typing import Iterable

# chatty per-request loggers pulled in by handlers
NOISY_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: str | None = None, quiet: Iterable[str] = NOISY_LOGGERS) -> None:
    """
    Set up root logging for a pipeline run. ``level`` falls back to the
    LOG_LEVEL env var, then INFO. Loggers named in ``quiet`` are held at
    WARNING so per-request lines do not drown the stage transitions.
    """
    level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
    )
    for name in quiet:
        logging.getLogger(name).setLevel(max(logging.WARNING, logging.getLevelName(level)))
