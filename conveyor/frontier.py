"""Deduplicating crawl frontier shared by concurrent workers.

The seen-set and the pending channel are only ever mutated together, inside
one critical section, so two workers discovering the same key cannot both
enqueue it.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, FrozenSet, Hashable, Iterable, Optional, Set

from conveyor.channel import BoundedChannel
from conveyor.errors import ConfigError
from conveyor.telemetry.metrics import Metrics

logger = logging.getLogger(__name__)

Normalizer = Callable[[Hashable], Hashable]


class SharedFrontier:
    """Seen-set plus work channel with a cap on the total number of admitted keys."""

    def __init__(
        self,
        seeds: Iterable[Hashable] = (),
        *,
        max_keys: int,
        normalize: Optional[Normalizer] = None,
        metrics: Optional[Metrics] = None,
        name: str = "frontier",
    ) -> None:
        """Create the frontier and admit ``seeds``.

        Duplicate seeds collapse to one entry. More distinct seeds than
        ``max_keys`` is a configuration error rather than a silent truncation.
        """
        if max_keys <= 0:
            raise ConfigError(f"max_keys must be positive, got {max_keys}")
        self.max_keys = max_keys
        self.name = name
        self._normalize = normalize
        self._metrics = metrics
        self._seen: Set[Hashable] = set()
        self._lock = asyncio.Lock()
        # unbounded: max_keys is the bound, and workers feed their own input
        self._channel: BoundedChannel[Hashable] = BoundedChannel(0, name=name)

        unique = []
        for seed in seeds:
            key = self._key(seed)
            if key not in self._seen:
                self._seen.add(key)
                unique.append(key)
        if len(unique) > max_keys:
            raise ConfigError(
                f"{len(unique)} distinct seeds exceed max_keys={max_keys}"
            )
        for key in unique:
            self._channel.put_nowait(key)
        if self._metrics is not None and unique:
            self._metrics.inc("keys_admitted", len(unique))
        logger.debug("%s: seeded with %d keys", name, len(unique))

    def _key(self, key: Hashable) -> Hashable:
        return self._normalize(key) if self._normalize is not None else key

    @property
    def channel(self) -> BoundedChannel[Hashable]:
        """Channel the crawl workers consume."""
        return self._channel

    @property
    def seen_count(self) -> int:
        return len(self._seen)

    @property
    def remaining(self) -> int:
        """How many more keys may still be admitted."""
        return self.max_keys - len(self._seen)

    def __contains__(self, key: Hashable) -> bool:
        return self._key(key) in self._seen

    def snapshot(self) -> FrozenSet[Hashable]:
        """Return a read-only copy of every key ever admitted."""
        return frozenset(self._seen)

    async def try_admit(self, key: Hashable) -> bool:
        """Admit ``key`` unless it was seen before or the cap is reached.

        Check-seen, check-cap, mark-seen and enqueue run as one step.
        """
        key = self._key(key)
        async with self._lock:
            if key in self._seen or len(self._seen) >= self.max_keys:
                admitted = False
            else:
                self._seen.add(key)
                self._channel.put_nowait(key)
                admitted = True
        if self._metrics is not None:
            self._metrics.inc("keys_admitted" if admitted else "keys_rejected", 1)
        return admitted

    async def admit_many(self, keys: Iterable[Hashable]) -> int:
        """Try to admit each key in order; return how many were admitted."""
        count = 0
        for key in keys:
            if await self.try_admit(key):
                count += 1
        return count

    def mark_done(self) -> None:
        self._channel.mark_done()

    def __repr__(self) -> str:
        return f"<SharedFrontier '{self.name}' seen={len(self._seen)}/{self.max_keys}>"
