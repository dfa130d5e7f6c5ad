"""PriceCache: Per-pair estimate cache with freshness windows.

Each pair has at most one entry. An entry is Fresh while the age of its
estimate (``now - as_of``) is within the pair policy's ``fresh_window``,
Stale until ``stale_window`` and expired afterwards. Expired entries are
evicted when looked up; there is no size-based eviction.

Writes are monotonic: an estimate older than the cached one is ignored, so
a slow refresh can never overwrite the result of a faster one.

Entries can be exported to and imported from an opaque JSON blob keyed by
the pair hash, so that an external store can persist them.
"""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .EstimatorConfig import EstimatorConfig
from .PriceEstimate import PriceEstimate
from .PriceObservation import PriceObservation
from .TokenPair import TokenPair

logger = logging.getLogger(__name__)


def _pair_hash(pair: TokenPair) -> str:
    return "0x" + pair.compute_pair_hash().hex().removeprefix("0x")


class Freshness(str, Enum):
    """Freshness of a cache entry at lookup time."""

    FRESH = "fresh"
    STALE = "stale"
    EXPIRED = "expired"


@dataclass
class CacheEntry:
    """Cached estimate of a pair.

    :ivar estimate: Most recent estimate.
    :ivar observations: Bounded history of observations, most recent last.
    :ivar fresh_until: Unix timestamp when the estimate stops being Fresh.
    :ivar expires_at: Unix timestamp when the entry is evicted.
    """

    estimate: PriceEstimate
    observations: deque[PriceObservation]
    fresh_until: float
    expires_at: float

    def freshness(self, now: float) -> Freshness:
        """Classify the entry at the given time."""
        if now < self.fresh_until:
            return Freshness.FRESH
        if now < self.expires_at:
            return Freshness.STALE
        return Freshness.EXPIRED


@dataclass(frozen=True)
class CacheLookup:
    """Result of :meth:`PriceCache.lookup`.

    :ivar entry: Cache entry, or None if absent or expired.
    :ivar freshness: Freshness of the entry (EXPIRED when absent).
    """

    entry: CacheEntry | None
    freshness: Freshness

    @property
    def estimate(self) -> PriceEstimate | None:
        return self.entry.estimate if self.entry is not None else None


class PriceCache:
    """Estimate cache keyed by token pair.

    :ivar config: Configuration providing per-pair windows and history size.
    """

    def __init__(self, config: EstimatorConfig | None = None) -> None:
        self.config = config or EstimatorConfig()
        self._entries: dict[TokenPair, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, pair: object) -> bool:
        return pair in self._entries

    def lookup(self, pair: TokenPair, now: float | None = None) -> CacheLookup:
        """Look up a pair and classify its freshness.

        Expired entries are evicted.

        :param pair: Token pair.
        :param now: Current Unix timestamp (default: time.time()).
        :returns: Lookup result.
        """
        if now is None:
            now = time.time()
        entry = self._entries.get(pair)
        if entry is None:
            return CacheLookup(None, Freshness.EXPIRED)

        freshness = entry.freshness(now)
        if freshness == Freshness.EXPIRED:
            del self._entries[pair]
            logger.debug(f"{pair}: cache entry expired")
            return CacheLookup(None, Freshness.EXPIRED)
        return CacheLookup(entry, freshness)

    def get(self, pair: TokenPair, now: float | None = None) -> CacheEntry | None:
        """Get the entry of a pair, or None if absent or expired."""
        return self.lookup(pair, now).entry

    def put(
        self,
        pair: TokenPair,
        estimate: PriceEstimate,
        observations: Iterable[PriceObservation] | None = None,
        now: float | None = None,
    ) -> bool:
        """Store an estimate unless a newer one is already cached.

        Unavailable estimates are never stored. An estimate with the same
        ``as_of`` as the cached one replaces it.

        :param pair: Token pair.
        :param estimate: Estimate to store.
        :param observations: Observations to append to the history
            (default: the estimate's observations).
        :param now: Current Unix timestamp (default: time.time()).
        :returns: True if the estimate was stored.
        :raises ValueError: If the estimate belongs to another pair.
        """
        if estimate.token_pair != pair:
            raise ValueError(f"Estimate for {estimate.token_pair} cannot be cached as {pair}")
        if not estimate.is_available:
            return False
        if now is None:
            now = time.time()

        existing = self.lookup(pair, now).entry
        if existing is not None and estimate.as_of < existing.estimate.as_of:
            logger.debug(
                f"{pair}: ignoring cache write as_of={estimate.as_of:.3f}, "
                f"cached as_of={existing.estimate.as_of:.3f}"
            )
            return False

        history: deque[PriceObservation] = deque(
            existing.observations if existing is not None else (),
            maxlen=self.config.max_history,
        )
        history.extend(estimate.observations if observations is None else observations)

        policy = self.config.policy_for(pair)
        self._entries[pair] = CacheEntry(
            estimate=estimate,
            observations=history,
            fresh_until=estimate.as_of + policy.fresh_window,
            expires_at=estimate.as_of + policy.stale_window,
        )
        return True

    def invalidate(self, pair: TokenPair) -> bool:
        """Drop the entry of a pair.

        :returns: True if an entry was dropped.
        """
        return self._entries.pop(pair, None) is not None

    def invalidate_source(self, source_id: str) -> int:
        """Drop every entry whose estimate used a source.

        :param source_id: Source name.
        :returns: Number of entries dropped.
        """
        affected = [
            pair for pair, entry in self._entries.items()
            if source_id in entry.estimate.contributing_sources
        ]
        for pair in affected:
            del self._entries[pair]
        if affected:
            logger.info(f"[{source_id}] invalidated {len(affected)} cached estimates")
        return len(affected)

    def clear(self) -> None:
        """Drop all entries."""
        self._entries.clear()

    def export_entry(self, pair: TokenPair) -> str | None:
        """Serialize the entry of a pair to a JSON blob.

        :param pair: Token pair.
        :returns: JSON string, or None if the pair has no live entry.
        """
        entry = self.get(pair)
        if entry is None:
            return None
        return json.dumps(
            {
                "pair_hash": _pair_hash(pair),
                "pair": pair.pair_id,
                "estimate": entry.estimate.to_dict(),
                "history": [o.to_dict() for o in entry.observations],
            }
        )

    def import_entry(self, pair: TokenPair, blob: str, now: float | None = None) -> bool:
        """Load an entry exported with :meth:`export_entry`.

        The usual monotonic and expiry rules apply.

        :param pair: Token pair the blob was exported for.
        :param blob: JSON string.
        :param now: Current Unix timestamp (default: time.time()).
        :returns: True if the entry was stored.
        :raises ValueError: If the blob is invalid or belongs to another pair.
        """
        try:
            data = json.loads(blob)
            if data["pair_hash"] != _pair_hash(pair):
                raise ValueError(f"Blob pair {data.get('pair')} does not match {pair.pair_id}")
            estimate = PriceEstimate.from_dict(data["estimate"], pair)
            history = [PriceObservation.from_dict(o, pair) for o in data.get("history", [])]
        except (KeyError, TypeError, ArithmeticError, json.JSONDecodeError) as e:
            raise ValueError(f"Invalid cache blob for {pair}: {e}") from e

        if now is None:
            now = time.time()
        policy = self.config.policy_for(pair)
        if now >= estimate.as_of + policy.stale_window:
            return False

        existing = self.get(pair, now)
        if existing is not None and estimate.as_of < existing.estimate.as_of:
            return False
        self._entries.pop(pair, None)
        return self.put(pair, estimate, history, now=now)
