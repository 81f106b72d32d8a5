"""Backoff curves and per-task spawn cooldown."""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass

from taskloom.logging import get_logger

logger = get_logger("retry_backoff")


class RetryBackoffCalculator:
    """Calculate backoff delays for repeated failures."""

    @staticmethod
    def calculate_delay(
        attempt: int,
        strategy: str,
        base_seconds: float,
        max_seconds: float,
        jitter: bool = True,
    ) -> float:
        """Calculate backoff delay.

        Args:
            attempt: Consecutive failure number (1-based)
            strategy: Backoff strategy (exponential, linear, fixed)
            base_seconds: Base delay in seconds
            max_seconds: Maximum delay cap in seconds
            jitter: Apply ±10% jitter

        Returns:
            Delay in seconds
        """
        attempt = max(1, attempt)
        if strategy == "exponential":
            delay = base_seconds * (2 ** (attempt - 1))
        elif strategy == "linear":
            delay = base_seconds * attempt
        elif strategy == "fixed":
            delay = base_seconds
        else:
            raise ValueError(f"Unknown backoff strategy: {strategy}")

        delay = min(delay, max_seconds)

        if jitter:
            spread = delay * 0.1
            delay = delay + random.uniform(-spread, spread)

        return float(max(0.0, delay))


@dataclass
class CooldownEntry:
    failures: int
    until: float
    last_error: str | None = None


class SpawnCooldown:
    """Tracks consecutive spawn failures per task and when each may be retried.

    Held in daemon memory only; a restart forgets all cooldowns.
    """

    def __init__(
        self,
        strategy: str = "exponential",
        base_seconds: float = 10,
        max_seconds: float = 600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.strategy = strategy
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self._clock = clock
        self._entries: dict[str, CooldownEntry] = {}

    def record_failure(self, task_id: str, error: str | None = None) -> float:
        """Count a failed spawn and return the cooldown delay in seconds."""
        entry = self._entries.get(task_id)
        failures = entry.failures + 1 if entry else 1
        delay = RetryBackoffCalculator.calculate_delay(
            failures, self.strategy, self.base_seconds, self.max_seconds, jitter=False
        )
        self._entries[task_id] = CooldownEntry(
            failures=failures, until=self._clock() + delay, last_error=error
        )
        logger.warning(
            f"Spawn for '{task_id}' failed {failures} time(s); cooling down {delay:.0f}s",
            extra={"task_id": task_id},
        )
        return delay

    def record_success(self, task_id: str) -> None:
        self._entries.pop(task_id, None)

    def is_cooling(self, task_id: str) -> bool:
        entry = self._entries.get(task_id)
        return entry is not None and self._clock() < entry.until

    def failures(self, task_id: str) -> int:
        entry = self._entries.get(task_id)
        return entry.failures if entry else 0

    def forget_except(self, task_ids: set[str]) -> None:
        """Drop entries for tasks no longer eligible (e.g. no longer Open)."""
        for task_id in list(self._entries):
            if task_id not in task_ids:
                del self._entries[task_id]

    def snapshot(self) -> dict[str, dict[str, object]]:
        now = self._clock()
        return {
            task_id: {
                "failures": entry.failures,
                "remaining_seconds": max(0.0, round(entry.until - now, 1)),
                "last_error": entry.last_error,
            }
            for task_id, entry in self._entries.items()
        }

    def reconfigure(self, strategy: str, base_seconds: float, max_seconds: float) -> None:
        self.strategy = strategy
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
