from __future__ import annotations

from .retry import retry_logic, with_retries, DEFAULT_RETRIABLE

__all__ = [
    "retry_logic",
    "with_retries",
    "DEFAULT_RETRIABLE",
]
