"""Async stage implementations used throughout the pipeline."""

from __future__ import annotations

from .batcher import Batcher
from .pool import WorkerPool

__all__ = [
    "Batcher",
    "WorkerPool",
]
