"""Failure circuit breaker — the only fatal-halt condition in the core."""

from __future__ import annotations

import structlog

log = structlog.get_logger()


class FailureCircuitBreaker:
    """Counts consecutive cycle failures and trips at a threshold.

    A single success resets the count. Once tripped it stays tripped; the
    orchestrator that owns it must be rebuilt to resume.
    """

    def __init__(self, max_consecutive_failures: int = 5) -> None:
        if max_consecutive_failures < 1:
            raise ValueError(f"max_consecutive_failures must be >= 1, got {max_consecutive_failures}")
        self._max = max_consecutive_failures
        self._consecutive_failures = 0
        self._tripped = False

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def max_consecutive_failures(self) -> int:
        return self._max

    @property
    def tripped(self) -> bool:
        return self._tripped

    def record_failure(self) -> bool:
        """Count one failed cycle. Returns True if the breaker is now tripped."""
        self._consecutive_failures += 1
        if self._consecutive_failures >= self._max and not self._tripped:
            self._tripped = True
            log.error("breaker.tripped", consecutive_failures=self._consecutive_failures, limit=self._max)
        return self._tripped

    def record_success(self) -> None:
        if self._consecutive_failures:
            log.info("breaker.reset", previous_failures=self._consecutive_failures)
        self._consecutive_failures = 0
