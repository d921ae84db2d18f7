"""Exponential backoff used between failed poll cycles."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..core.config import EngineSettings


@dataclass(slots=True)
class ExponentialBackoff:
    """Non-decreasing delay sequence capped at ``maximum``."""

    initial: float
    maximum: float
    multiplier: float = 2.0
    _next: float = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.initial <= 0:
            raise ValueError("initial delay must be positive")
        if self.maximum < self.initial:
            raise ValueError("maximum delay must not be lower than the initial delay")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")
        self._next = self.initial

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> ExponentialBackoff:
        """Build the policy configured under ``[engine]``."""
        return cls(
            initial=settings.backoff_initial_seconds,
            maximum=settings.backoff_max_seconds,
            multiplier=settings.backoff_multiplier,
        )

    def next_delay(self) -> float:
        """Return the delay for this failure and grow the next one."""
        delay = self._next
        self._next = min(self._next * self.multiplier, self.maximum)
        return delay

    def reset(self) -> None:
        """Start over from the initial delay after a success."""
        self._next = self.initial


__all__ = ["ExponentialBackoff"]
