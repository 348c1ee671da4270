"""Engine configuration and environment-based loading."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal, Optional

from dotenv import load_dotenv

from conveyor.errors import ConfigError
from conveyor.models import FailurePolicy, ShutdownMode


RateStrategy = Literal["sliding", "reserving"]


@dataclass
class EngineConfig:
    """Construction parameters shared by every pipeline component."""
    # Channels
    capacity: int = 100

    # Batcher
    batch_size: int = 50
    batch_timeout: float = 1.0

    # Rate limiter
    rate_limit: int = 10
    rate_window: float = 1.0
    rate_strategy: RateStrategy = "sliding"

    # Worker pool
    worker_count: int = 4
    failure_policy: FailurePolicy = FailurePolicy.DROP
    max_attempts: Optional[int] = None  # None: unbounded requeue
    shutdown_mode: ShutdownMode = ShutdownMode.CLOSE

    # Handler retries (0 disables the wrapper)
    retry_max: int = 0
    retry_backoff: float = 2.0

    # Crawl frontier
    max_keys: int = 1000

    def validate(self) -> "EngineConfig":
        """Raise :class:`ConfigError` on the first invalid field."""
        if self.capacity < 0:
            raise ConfigError(f"capacity must be >= 0, got {self.capacity}")
        if self.batch_size <= 0:
            raise ConfigError(f"batch_size must be positive, got {self.batch_size}")
        if self.batch_timeout <= 0:
            raise ConfigError(f"batch_timeout must be positive, got {self.batch_timeout}")
        if self.rate_limit <= 0:
            raise ConfigError(f"rate_limit must be positive, got {self.rate_limit}")
        if self.rate_window <= 0:
            raise ConfigError(f"rate_window must be positive, got {self.rate_window}")
        if self.rate_strategy not in ("sliding", "reserving"):
            raise ConfigError(f"unknown rate_strategy {self.rate_strategy!r}")
        if self.worker_count <= 0:
            raise ConfigError(f"worker_count must be positive, got {self.worker_count}")
        if self.max_attempts is not None and self.max_attempts <= 0:
            raise ConfigError(f"max_attempts must be positive, got {self.max_attempts}")
        if self.retry_max < 0:
            raise ConfigError(f"retry_max must be >= 0, got {self.retry_max}")
        if self.max_keys <= 0:
            raise ConfigError(f"max_keys must be positive, got {self.max_keys}")
        return self


def _enum_env(name: str, enum_cls, default):
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return enum_cls(raw.strip().lower())
    except ValueError:
        raise ConfigError(f"{name}={raw!r} is not one of "
                          f"{[m.value for m in enum_cls]}") from None


def load_config() -> EngineConfig:
    """Load environment variables and build a validated :class:`EngineConfig`.

    A ``.env`` file in the working directory is honored. Every variable is
    optional; unset knobs keep the dataclass defaults.
    """
    load_dotenv()
    defaults = EngineConfig()

    try:
        capacity = int(os.getenv("CONVEYOR_CAPACITY", str(defaults.capacity)))
        batch_size = int(os.getenv("CONVEYOR_BATCH_SIZE", str(defaults.batch_size)))
        batch_timeout = float(os.getenv("CONVEYOR_BATCH_TIMEOUT", str(defaults.batch_timeout)))
        rate_limit = int(os.getenv("CONVEYOR_RATE_LIMIT", str(defaults.rate_limit)))
        rate_window = float(os.getenv("CONVEYOR_RATE_WINDOW", str(defaults.rate_window)))
        worker_count = int(os.getenv("CONVEYOR_WORKERS", str(defaults.worker_count)))
        max_keys = int(os.getenv("CONVEYOR_MAX_KEYS", str(defaults.max_keys)))
        max_attempts_env = os.getenv("CONVEYOR_MAX_ATTEMPTS")
        max_attempts = int(max_attempts_env) if max_attempts_env else None
        retry_max = int(os.getenv("CONVEYOR_RETRY_MAX", str(defaults.retry_max)))
        retry_backoff = float(os.getenv("CONVEYOR_RETRY_BACKOFF", str(defaults.retry_backoff)))
    except ValueError as exc:
        raise ConfigError(f"invalid numeric environment setting: {exc}") from exc

    rate_strategy = os.getenv("CONVEYOR_RATE_STRATEGY", defaults.rate_strategy).lower()

    return EngineConfig(
        capacity=capacity,
        batch_size=batch_size,
        batch_timeout=batch_timeout,
        rate_limit=rate_limit,
        rate_window=rate_window,
        rate_strategy=rate_strategy,  # type: ignore[arg-type]
        worker_count=worker_count,
        failure_policy=_enum_env("CONVEYOR_FAILURE_POLICY", FailurePolicy,
                                 defaults.failure_policy),
        max_attempts=max_attempts,
        shutdown_mode=_enum_env("CONVEYOR_SHUTDOWN_MODE", ShutdownMode,
                                defaults.shutdown_mode),
        retry_max=retry_max,
        retry_backoff=retry_backoff,
        max_keys=max_keys,
    ).validate()
