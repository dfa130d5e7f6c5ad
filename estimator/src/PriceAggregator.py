"""PriceAggregator: Concurrent fan-out and reconciliation of price observations.

Algorithm:
    1. Query every applicable source that is not in backoff, concurrently
    2. Normalize each answer; failures only affect their own source
    3. Calculate the median across all observations
    4. Exclude outliers (relative deviation > outlier_tolerance from the median)
    5. Price = weighted mean of the retained observations, where
       weight = source reliability x confidence x recency factor
    6. agreement_score = 1 - (max - min) / min over the contributing prices
    7. Fresh if enough sources agree closely enough, otherwise Degraded

If no strict majority survives the outlier filter, the unfiltered median is
used, every source contributes and the estimate is Degraded.

.. code-block:: python

    >>> observations = [obs("a", "100"), obs("b", "101"), obs("c", "99"), obs("d", "1000")]
    >>> estimate = reconcile(pair, observations, PairPolicy())
    >>> sorted(estimate.contributing_sources)
    ['a', 'b', 'c']
    >>> estimate.price
    Decimal('100')
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from statistics import median as _median
from typing import TYPE_CHECKING, Iterable, Mapping

from .EstimatorConfig import EstimatorConfig, PairPolicy
from .Normalizer import NormalizationError, normalize
from .PriceEstimate import EstimateStatus, PriceEstimate
from .PriceObservation import PriceObservation
from .SourceManager import SourceManager
from .adapters.base import AdapterError, RateLimited, UnsupportedPair

if TYPE_CHECKING:
    from .TokenPair import TokenPair
    from .adapters.base import SourceAdapter

logger = logging.getLogger(__name__)


class NoObservations(Exception):
    """Raised when a cycle produced no valid observation.

    :ivar pair: Pair that could not be priced.
    :ivar failures: Dict mapping source names to the error each one raised.
    :ivar pending: Source calls still running when the deadline elapsed.
    """

    def __init__(
        self,
        pair: TokenPair,
        failures: dict[str, BaseException],
        pending: dict[str, asyncio.Task] | None = None,
    ):
        self.pair = pair
        self.failures = failures
        self.pending = pending or {}
        details = ", ".join(f"{s}: {e}" for s, e in failures.items()) or "no applicable sources"
        super().__init__(f"No observations for {pair} ({details})")


@dataclass
class AggregationResult:
    """Result of one aggregation cycle.

    :ivar estimate: Reconciled estimate.
    :ivar failures: Dict mapping failed sources to their errors.
    :ivar pending: Source calls still running when the deadline elapsed.
    """

    estimate: PriceEstimate
    failures: dict[str, BaseException] = field(default_factory=dict)
    pending: dict[str, asyncio.Task] = field(default_factory=dict)

    @property
    def observations(self) -> tuple[PriceObservation, ...]:
        """All observations of the cycle, including excluded outliers."""
        return self.estimate.observations

    @property
    def dropped(self) -> dict[str, Decimal]:
        """Observations excluded as outliers, keyed by source."""
        return {
            o.source_id: o.price
            for o in self.observations
            if o.source_id not in self.estimate.contributing_sources
        }


def _to_decimal(value: float) -> Decimal:
    return Decimal(str(value))


def agreement_score(prices: Iterable[Decimal]) -> Decimal:
    """Compute how closely prices agree.

    The score is 1 minus the maximum pairwise relative deviation
    ``|a - b| / min(a, b)``, clamped to [0, 1].

    :param prices: Positive prices.
    :returns: Agreement in [0, 1]; 1 for a single price.
    """
    prices = list(prices)
    if len(prices) < 2:
        return Decimal(1)
    low, high = min(prices), max(prices)
    deviation = (high - low) / low
    return max(Decimal(0), Decimal(1) - min(deviation, Decimal(1)))


def reconcile(
    pair: TokenPair,
    observations: Iterable[PriceObservation],
    policy: PairPolicy,
    *,
    weights: Mapping[str, Decimal] | None = None,
    recency_half_life: float = 30.0,
    now: float | None = None,
) -> PriceEstimate:
    """Reconcile observations of one pair into an estimate.

    :param pair: Pair the observations refer to.
    :param observations: Valid observations, at most one per source.
    :param policy: Tolerance and Fresh criteria of the pair's class.
    :param weights: Reliability weight per source id (default: 1 each).
    :param recency_half_life: Seconds behind the newest observation at which
        an observation weighs half.
    :param now: Current Unix timestamp (default: time.time()).
    :returns: Estimate with status Fresh or Degraded.
    :raises ValueError: If no observations are given.
    """
    observations = tuple(observations)
    if not observations:
        raise ValueError(f"Cannot reconcile {pair} without observations")
    if now is None:
        now = time.time()
    weights = weights or {}

    # Outlier filter around the median of all observations
    initial_median = _median(o.price for o in observations)
    retained = [
        o for o in observations
        if abs(o.price - initial_median) / initial_median <= policy.outlier_tolerance
    ]

    no_majority = len(retained) * 2 <= len(observations)
    if no_majority:
        contributing = list(observations)
        price = initial_median
        logger.debug(
            f"{pair}: no majority within {policy.outlier_tolerance} of median "
            f"{initial_median}, using unfiltered median"
        )
    else:
        contributing = retained
        newest = max(o.observed_at for o in contributing)
        half_life = _to_decimal(recency_half_life)
        # Weighted mean expressed as offsets from the retained median
        reference = _median(o.price for o in contributing)
        weighted_offset = Decimal(0)
        total_weight = Decimal(0)
        for o in contributing:
            age = _to_decimal(max(0.0, newest - o.observed_at))
            recency = half_life / (half_life + age)
            weight = weights.get(o.source_id, Decimal(1)) * o.confidence_hint * recency
            weighted_offset += (o.price - reference) * weight
            total_weight += weight
        price = reference
        if weighted_offset and total_weight > 0:
            price = reference + weighted_offset / total_weight

    agreement = agreement_score(o.price for o in contributing)
    fresh = (
        not no_majority
        and len(contributing) >= max(2, policy.min_sources_for_fresh)
        and agreement >= policy.agreement_threshold
    )

    as_of = max(o.observed_at for o in contributing)
    return PriceEstimate(
        token_pair=pair,
        price=price,
        as_of=as_of,
        staleness=max(0.0, now - as_of),
        agreement_score=agreement,
        contributing_sources=frozenset(o.source_id for o in contributing),
        status=EstimateStatus.FRESH if fresh else EstimateStatus.DEGRADED,
        observations=observations,
    )


class PriceAggregator:
    """Fans a pair out to all applicable adapters and reconciles the answers.

    :ivar adapters: Dict mapping source names to adapter instances.
    :ivar config: Estimator configuration (policies, weights, grace period).
    :ivar source_manager: Per-source backoff tracking.
    """

    def __init__(
        self,
        adapters: Iterable[SourceAdapter],
        config: EstimatorConfig | None = None,
        source_manager: SourceManager | None = None,
    ) -> None:
        """Initialize the aggregator.

        :param adapters: Adapter instances, one per source.
        :param config: Estimator configuration (default: EstimatorConfig()).
        :param source_manager: Backoff tracker (default: a new SourceManager).
        :raises ValueError: If two adapters share a name.
        """
        self.adapters: dict[str, SourceAdapter] = {}
        for adapter in adapters:
            if adapter.name in self.adapters:
                raise ValueError(f"Duplicate adapter '{adapter.name}'")
            self.adapters[adapter.name] = adapter
        self.config = config or EstimatorConfig()
        self.source_manager = source_manager or SourceManager(list(self.adapters))

    def weights(self) -> dict[str, Decimal]:
        """Return the reliability weight of every configured source."""
        return {
            name: self.config.weight_for(name, adapter.source_class)
            for name, adapter in self.adapters.items()
        }

    def applicable_sources(self, pair: TokenPair) -> list[str]:
        """Get the sources that support a pair and are not in backoff."""
        supported = [name for name, a in self.adapters.items() if a.supports_pair(pair)]
        return self.source_manager.filter_active(supported)

    def reconcile(
        self,
        pair: TokenPair,
        observations: Iterable[PriceObservation],
        now: float | None = None,
    ) -> PriceEstimate:
        """Reconcile observations using the configured policy and weights."""
        return reconcile(
            pair,
            observations,
            self.config.policy_for(pair),
            weights=self.weights(),
            recency_half_life=self.config.recency_half_life,
            now=now,
        )

    async def _observe(
        self,
        adapter: SourceAdapter,
        pair: TokenPair,
        deadline: float,
    ) -> PriceObservation:
        """Fetch and normalize one source, recording the outcome.

        :raises AdapterError: If the adapter fails.
        :raises NormalizationError: If its quote cannot be normalized.
        """
        source = adapter.name
        try:
            raw = await adapter.fetch(pair, deadline)
            observation = normalize(raw, source, requested_pair=pair)
        except RateLimited as e:
            backoff = self.source_manager.record_failure(
                source, reason=e.kind, retry_after=e.retry_after
            )
            logger.warning(f"[{source}] Rate limited for {pair}, backoff {backoff:.1f}s")
            raise
        except UnsupportedPair as e:
            # Not a source failure, the source stays available for other pairs
            logger.debug(f"[{source}] {e}")
            raise
        except AdapterError as e:
            backoff = self.source_manager.record_failure(source, reason=e.kind)
            logger.warning(f"[{source}] {e.kind} for {pair}: {e} (backoff {backoff:.1f}s)")
            raise
        except NormalizationError as e:
            backoff = self.source_manager.record_failure(source, reason="normalization")
            logger.warning(f"[{source}] Invalid quote for {pair}: {e} (backoff {backoff:.1f}s)")
            raise
        except Exception as e:  # Misbehaving adapter
            backoff = self.source_manager.record_failure(source, reason="error")
            logger.warning(
                f"[{source}] Unexpected error for {pair}: {e!r} (backoff {backoff:.1f}s)"
            )
            raise

        self.source_manager.record_success(source)
        logger.debug(f"[{source}] {pair}: {observation.price} ({observation.latency:.2f}s)")
        return observation

    @staticmethod
    def collect(
        tasks: Mapping[str, asyncio.Task],
    ) -> tuple[list[PriceObservation], dict[str, BaseException]]:
        """Split finished source tasks into observations and failures.

        Unfinished tasks are ignored.

        :param tasks: Dict mapping source names to their tasks.
        :returns: Tuple of (observations, failures by source).
        """
        observations: list[PriceObservation] = []
        failures: dict[str, BaseException] = {}
        for source, task in tasks.items():
            if not task.done():
                continue
            if task.cancelled():
                failures[source] = asyncio.CancelledError()
                continue
            exc = task.exception()
            if exc is not None:
                failures[source] = exc
            else:
                observations.append(task.result())
        return observations, failures

    def _log_result(self, result: AggregationResult) -> None:
        estimate = result.estimate
        used = [
            f"{o.source_id}={o.price:.6g}"
            for o in estimate.observations
            if o.source_id in estimate.contributing_sources
        ]
        log_msg = (
            f"{estimate.token_pair}: {estimate.price:.6g} "
            f"({estimate.status.value}, agreement {estimate.agreement_score:.4f}, "
            f"from [{', '.join(used)}]"
        )
        if result.dropped:
            dropped = [f"{s}={p:.6g}" for s, p in result.dropped.items()]
            log_msg += f", dropped: [{', '.join(dropped)}]"
        if result.failures:
            log_msg += f", failed: [{', '.join(result.failures)}]"
        if result.pending:
            log_msg += f", pending: [{', '.join(result.pending)}]"
        log_msg += ")"
        logger.info(log_msg)

    async def aggregate(self, pair: TokenPair, deadline: float) -> AggregationResult:
        """Query all applicable sources and reconcile their answers.

        Source calls still running at the deadline are not cancelled; they
        are returned in :attr:`AggregationResult.pending` and may finish up to
        ``late_result_grace`` seconds later.

        :param pair: Pair to estimate.
        :param deadline: Absolute event loop time (``loop.time()``) to answer by.
        :returns: Aggregation result with the reconciled estimate.
        :raises NoObservations: If no valid observation arrived in time.
        """
        loop = asyncio.get_running_loop()
        sources = self.applicable_sources(pair)
        if not sources:
            logger.warning(f"{pair}: no applicable sources (all unsupported or in backoff)")
            raise NoObservations(pair, {})

        adapter_deadline = deadline + self.config.late_result_grace
        tasks = {
            source: asyncio.create_task(
                self._observe(self.adapters[source], pair, adapter_deadline),
                name=f"{source}:{pair.pair_id}",
            )
            for source in sources
        }

        try:
            await asyncio.wait(tasks.values(), timeout=max(0.0, deadline - loop.time()))
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            raise

        observations, failures = self.collect(tasks)
        pending = {s: t for s, t in tasks.items() if not t.done()}
        if not observations:
            logger.warning(
                f"{pair}: no observations "
                f"(failed: {list(failures)}, pending: {list(pending)})"
            )
            raise NoObservations(pair, failures, pending)

        result = AggregationResult(
            estimate=self.reconcile(pair, observations),
            failures=failures,
            pending=pending,
        )
        self._log_result(result)
        return result
