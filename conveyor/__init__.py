"""Public package exports for the :mod:`conveyor` library."""

from __future__ import annotations

__all__ = [
    "backpressure",
    "channel",
    "config",
    "constants",
    "core",
    "crawl",
    "errors",
    "frontier",
    "logging_setup",
    "models",
    "ratelimit",
    "supervisor",
    "telemetry",
    "workers",
]
