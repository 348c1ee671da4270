"""Exception taxonomy shared by every pipeline component."""

from __future__ import annotations

from typing import Any


class ConveyorError(Exception):
    """Base class for all errors raised by :mod:`conveyor`."""


class ConfigError(ConveyorError, ValueError):
    """Invalid construction parameters. Raised synchronously, never retried."""


class InvariantError(ConveyorError, RuntimeError):
    """Internal bookkeeping was violated; indicates a caller bug."""


class ChannelClosedError(ConveyorError):
    """Raised when putting into a closed channel."""


class ChannelFullError(ConveyorError):
    """Raised by ``put_nowait`` when a bounded channel is at capacity."""


class HandlerError(ConveyorError):
    """A user handler failed on one item.

    The original exception is available as ``__cause__``.
    """

    def __init__(self, item: Any, attempt: int, stage: str) -> None:
        self.item = item
        self.attempt = attempt
        self.stage = stage
        super().__init__(f"handler failed in {stage} (attempt {attempt})")


# Errors that must terminate a stage instead of being absorbed by policy.
FATAL_ERRORS = (ConfigError, InvariantError)
