"""SourceManager: Health tracking and backoff for price sources.

Every adapter outcome of a fan-out is reported here. A failing source (adapter
error, normalization error or timeout) is benched for a period that doubles
with each failure in a row, up to a ceiling. Rate-limited sources are benched
for at least the ``Retry-After`` they reported. One success clears the bench.

.. code-block:: python

    >>> manager = SourceManager(["defillama", "zero_x"])
    >>> manager.record_failure("zero_x", reason="timeout")
    1.0
    >>> manager.record_failure("zero_x", reason="timeout")
    2.0
    >>> manager.is_source_active("zero_x")
    False
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace


@dataclass
class SourceHealth:
    """Outcome history of one source.

    :ivar failure_streak: Failures since the last success.
    :ivar benched_until: Unix timestamp before which the source is skipped.
    :ivar failures: Failures since tracking began.
    :ivar successes: Successes since tracking began.
    :ivar last_error: Reason of the most recent failure.
    :ivar last_success_at: Unix timestamp of the most recent success.
    """

    failure_streak: int = 0
    benched_until: float = 0.0
    failures: int = 0
    successes: int = 0
    last_error: str | None = None
    last_success_at: float | None = None

    def is_benched(self, now: float) -> bool:
        return now < self.benched_until


class SourceManager:
    """Bench failing sources so fan-outs skip them for a while.

    Sources are registered on their first outcome, so adapters added after
    construction need no setup.

    :ivar base_backoff_seconds: Bench duration after a first failure.
    :ivar max_backoff_seconds: Longest bench a failure streak can earn.
    """

    DEFAULT_BASE_BACKOFF_SECONDS = 1.0
    DEFAULT_MAX_BACKOFF_SECONDS = 60.0

    def __init__(
        self,
        sources: list[str] | None = None,
        base_backoff_seconds: float = DEFAULT_BASE_BACKOFF_SECONDS,
        max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
    ) -> None:
        """Create a manager with the given bench bounds.

        :param sources: Source ids to track from the start.
        :param base_backoff_seconds: Bench duration after a first failure.
        :param max_backoff_seconds: Ceiling for the doubling bench duration.
        :raises ValueError: If backoff values are invalid.
        """
        if base_backoff_seconds < 0 or max_backoff_seconds < base_backoff_seconds:
            raise ValueError("backoff must satisfy 0 <= base <= max")
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._health: dict[str, SourceHealth] = {}
        for source in sources or []:
            self._health[source] = SourceHealth()

    def _track(self, source: str) -> SourceHealth:
        return self._health.setdefault(source, SourceHealth())

    def record_failure(
        self,
        source: str,
        *,
        reason: str | None = None,
        retry_after: float | None = None,
    ) -> float:
        """Bench a source after a failed fetch.

        :param source: Source id that failed.
        :param reason: Short failure kind (e.g., "timeout", "rate_limited").
        :param retry_after: Minimum bench duration requested by the source.
        :returns: Seconds the source stays benched.
        """
        health = self._track(source)
        health.failure_streak += 1
        health.failures += 1
        health.last_error = reason

        bench = self.base_backoff_seconds * 2 ** (health.failure_streak - 1)
        bench = min(bench, self.max_backoff_seconds)
        if retry_after is not None and retry_after > bench:
            bench = retry_after
        health.benched_until = time.time() + bench
        return float(bench)

    def record_success(self, source: str) -> None:
        """Clear a source's bench and failure streak."""
        health = self._track(source)
        health.failure_streak = 0
        health.benched_until = 0.0
        health.successes += 1
        health.last_success_at = time.time()

    def filter_active(self, sources: list[str]) -> list[str]:
        """Drop benched sources, keeping input order."""
        now = time.time()
        return [s for s in sources if not self._track(s).is_benched(now)]

    def is_source_active(self, source: str) -> bool:
        return not self._track(source).is_benched(time.time())

    def backoff_remaining(self, source: str) -> float:
        """Seconds until a source is queried again (0 when active or unknown)."""
        health = self._health.get(source)
        if health is None:
            return 0.0
        return max(0.0, health.benched_until - time.time())

    def health(self, source: str) -> SourceHealth | None:
        """Return a source's health record, or None if it never reported."""
        return self._health.get(source)

    def snapshot(self) -> dict[str, SourceHealth]:
        """Return copies of every tracked source's health."""
        return {source: replace(health) for source, health in self._health.items()}
