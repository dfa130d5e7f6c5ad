"""PriceEstimator: Main entry point for price and swap estimates.

This module serves estimates from the cache when they are fresh enough, and
otherwise refreshes them from all applicable sources within a bounded wait.

Architecture:
    - Fresh cache entries are returned as is, without querying any source
    - At most one refresh runs per pair; concurrent callers share it
    - Callers wait at most max_wait; a timeout never cancels the refresh
    - Stale entries are served while a refresh is in flight, or when the
      refresh fails
    - Source calls that miss the deadline keep running and their results
      are reconciled into the cache when they arrive
    - Only token resolution errors reach callers; every source problem
      degrades into a Stale or Unavailable estimate
"""

from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import Iterable

from .EstimatorConfig import EstimatorConfig, parse_slippage
from .PriceAggregator import NoObservations, PriceAggregator
from .PriceCache import Freshness, PriceCache
from .PriceEstimate import PriceEstimate, SwapEstimate, SwapRequest, TradeType
from .PriceObservation import PriceObservation
from .SourceManager import SourceManager
from .TokenPair import TokenPair
from .TokenResolver import DEFAULT_TOKENS, StaticTokenResolver, TokenResolver
from .adapters.base import SourceAdapter

logger = logging.getLogger(__name__)


class PriceEstimator:
    """Estimator facade combining adapters, aggregation and caching.

    :ivar config: Estimator configuration.
    :ivar aggregator: Fan-out and reconciliation engine.
    :ivar cache: Per-pair estimate cache.
    :ivar resolver: Token identity resolver used by :meth:`estimate_tokens`.

    .. code-block:: python

        >>> estimator = PriceEstimator([get_adapter("defillama"), get_adapter("coingecko")])
        >>> estimate = await estimator.estimate(pair, max_wait=3.0)
        >>> estimate.status
        <EstimateStatus.FRESH: 'fresh'>
    """

    def __init__(
        self,
        adapters: Iterable[SourceAdapter],
        config: EstimatorConfig | None = None,
        resolver: TokenResolver | None = None,
        cache: PriceCache | None = None,
        source_manager: SourceManager | None = None,
    ) -> None:
        """Initialize the estimator.

        :param adapters: Adapter instances, one per source.
        :param config: Estimator configuration (default: EstimatorConfig()).
        :param resolver: Token resolver (default: static well-known tokens).
        :param cache: Estimate cache (default: a new PriceCache).
        :param source_manager: Backoff tracker (default: a new SourceManager).
        """
        self.config = config or EstimatorConfig()
        self.aggregator = PriceAggregator(adapters, self.config, source_manager)
        self.cache = cache or PriceCache(self.config)
        self.resolver = resolver or StaticTokenResolver(DEFAULT_TOKENS)

        self._refreshes: dict[TokenPair, asyncio.Task[PriceEstimate | None]] = {}
        self._background: set[asyncio.Task] = set()

        logger.info(
            f"PriceEstimator initialized: sources={list(self.aggregator.adapters)}, "
            f"max_wait={self.config.default_max_wait}s, "
            f"late_result_grace={self.config.late_result_grace}s"
        )

    def is_refreshing(self, pair: TokenPair) -> bool:
        """Check if a refresh is in flight for a pair."""
        return pair in self._refreshes

    async def estimate(self, pair: TokenPair, max_wait: float | None = None) -> PriceEstimate:
        """Estimate the price of a pair.

        :param pair: Pair to estimate.
        :param max_wait: Maximum seconds to wait for sources
            (default: config.default_max_wait).
        :returns: Estimate; Unavailable when no data could be obtained.
        :raises ValueError: If max_wait is negative.
        """
        if max_wait is None:
            max_wait = self.config.default_max_wait
        if max_wait < 0:
            raise ValueError("max_wait must not be negative")

        now = time.time()
        lookup = self.cache.lookup(pair, now)
        if lookup.freshness == Freshness.FRESH:
            logger.debug(f"{pair}: cache hit")
            return lookup.entry.estimate

        if lookup.entry is not None and self.is_refreshing(pair):
            logger.debug(f"{pair}: refresh in flight, serving stale estimate")
            return lookup.entry.estimate.as_stale(now)

        task = self._refreshes.get(pair)
        if task is None:
            task = self._start_refresh(pair, max_wait)
        else:
            logger.debug(f"{pair}: joining in-flight refresh")

        try:
            estimate = await asyncio.wait_for(asyncio.shield(task), timeout=max_wait)
        except asyncio.TimeoutError:
            logger.debug(f"{pair}: refresh did not finish within {max_wait}s")
            estimate = None
        except Exception:
            # Already logged by the refresh task's done callback
            estimate = None

        if estimate is not None:
            return estimate
        return self._fallback(pair)

    def _fallback(self, pair: TokenPair) -> PriceEstimate:
        """Serve the cached estimate, or Unavailable if there is none."""
        now = time.time()
        lookup = self.cache.lookup(pair, now)
        if lookup.entry is None:
            logger.warning(f"{pair}: no estimate available")
            return PriceEstimate.unavailable(pair, now)
        if lookup.freshness == Freshness.FRESH:
            return lookup.entry.estimate
        logger.info(f"{pair}: serving stale estimate as of {lookup.entry.estimate.as_of:.0f}")
        return lookup.entry.estimate.as_stale(now)

    def _start_refresh(self, pair: TokenPair, max_wait: float) -> asyncio.Task[PriceEstimate | None]:
        deadline = asyncio.get_running_loop().time() + max_wait
        task = asyncio.create_task(self._refresh(pair, deadline), name=f"refresh:{pair.pair_id}")
        self._refreshes[pair] = task

        def _done(t: asyncio.Task) -> None:
            if self._refreshes.get(pair) is t:
                del self._refreshes[pair]
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"{pair}: refresh failed: {t.exception()!r}")

        task.add_done_callback(_done)
        return task

    async def _refresh(self, pair: TokenPair, deadline: float) -> PriceEstimate | None:
        """Run one aggregation cycle and store its result.

        :returns: The newest cached estimate, or None if no source answered.
        """
        try:
            result = await self.aggregator.aggregate(pair, deadline)
        except NoObservations as e:
            if e.pending:
                self._absorb_late(pair, [], e.pending)
            return None

        if result.pending:
            self._absorb_late(pair, list(result.observations), result.pending)

        if self.cache.put(pair, result.estimate):
            return result.estimate
        # A newer estimate was cached in the meantime
        entry = self.cache.get(pair)
        return entry.estimate if entry is not None else result.estimate

    def _absorb_late(
        self,
        pair: TokenPair,
        observations: list[PriceObservation],
        pending: dict[str, asyncio.Task],
    ) -> None:
        task = asyncio.create_task(self._reconcile_late(pair, observations, pending))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _reconcile_late(
        self,
        pair: TokenPair,
        observations: list[PriceObservation],
        pending: dict[str, asyncio.Task],
    ) -> None:
        """Wait for late source calls and re-reconcile with their results."""
        # Source calls are bounded by their own deadline
        try:
            await asyncio.wait(pending.values())
        except asyncio.CancelledError:
            for task in pending.values():
                task.cancel()
            raise
        late, _ = self.aggregator.collect(pending)
        if not late:
            return

        estimate = self.aggregator.reconcile(pair, observations + late)
        if self.cache.put(pair, estimate, late):
            logger.info(
                f"{pair}: absorbed late results from {[o.source_id for o in late]}, "
                f"price {estimate.price:.6g} ({estimate.status.value})"
            )

    def invalidate(self, pair: TokenPair) -> bool:
        """Drop the cached estimate of a pair.

        :returns: True if an entry was dropped.
        """
        return self.cache.invalidate(pair)

    def invalidate_source(self, source_id: str) -> int:
        """Drop every cached estimate a source contributed to.

        :returns: Number of entries dropped.
        """
        return self.cache.invalidate_source(source_id)

    async def resolve_pair(
        self,
        chain_id: int,
        base: str,
        quote: str,
        quote_chain_id: int | None = None,
    ) -> TokenPair:
        """Resolve token references into a pair.

        Resolvers may block on JSON-RPC calls, so they run in the default
        executor and never stall estimates served from the event loop.

        :param chain_id: Chain of the base token.
        :param base: Base token address or symbol.
        :param quote: Quote token address or symbol.
        :param quote_chain_id: Chain of the quote token (default: chain_id).
        :raises UnknownToken: If either token cannot be resolved.
        :raises ValueError: If both references resolve to the same token.
        """
        if quote_chain_id is None:
            quote_chain_id = chain_id
        loop = asyncio.get_running_loop()
        base_token, quote_token = await asyncio.gather(
            loop.run_in_executor(None, self.resolver.resolve, chain_id, base),
            loop.run_in_executor(None, self.resolver.resolve, quote_chain_id, quote),
        )
        return TokenPair(base_token, quote_token)

    async def estimate_tokens(
        self,
        chain_id: int,
        base: str,
        quote: str,
        max_wait: float | None = None,
        *,
        quote_chain_id: int | None = None,
    ) -> PriceEstimate:
        """Estimate a pair given by token addresses or symbols.

        :param chain_id: Chain of the base token.
        :param base: Base token address or symbol.
        :param quote: Quote token address or symbol.
        :param max_wait: Maximum seconds to wait for sources.
        :param quote_chain_id: Chain of the quote token, for cross-chain
            pairs (default: chain_id).
        :returns: Estimate for the resolved pair.
        :raises UnknownToken: If either token cannot be resolved.
        :raises ValueError: If both references resolve to the same token.
        """
        pair = await self.resolve_pair(chain_id, base, quote, quote_chain_id)
        return await self.estimate(pair, max_wait)

    async def estimate_swap(
        self,
        pair: TokenPair,
        amount: int,
        max_wait: float | None = None,
        *,
        trade_type: TradeType = TradeType.EXACT_IN,
        slippage: Decimal | str | None = None,
    ) -> SwapEstimate:
        """Estimate the unknown side of a swap.

        :param pair: Pair to swap (base in, quote out).
        :param amount: Raw base units to sell for exact-in swaps, raw quote
            units to buy for exact-out swaps.
        :param max_wait: Maximum seconds to wait for sources.
        :param trade_type: Which side of the swap ``amount`` fixes.
        :param slippage: Slippage tolerance in percent; adds amount_limit.
        :returns: Swap estimate; the estimated side is None when no price is
            available.
        :raises ValueError: If amount is negative or slippage is out of range.
        """
        if amount < 0:
            raise ValueError("amount must not be negative")
        if slippage is not None:
            slippage = parse_slippage(slippage)
        estimate = await self.estimate(pair, max_wait)
        return SwapEstimate.from_estimate(estimate, amount, trade_type, slippage)

    async def estimate_swaps(
        self,
        requests: Iterable[SwapRequest],
        max_wait: float | None = None,
    ) -> list[SwapEstimate]:
        """Estimate a batch of swaps concurrently.

        Requests for the same pair share a single refresh.

        :param requests: Swaps to estimate.
        :param max_wait: Maximum seconds to wait for sources, for the whole batch.
        :returns: One swap estimate per request, in request order.
        :raises ValueError: If any request has a negative amount or an
            out-of-range slippage; nothing is fetched in that case.
        """
        requests = list(requests)
        for request in requests:
            if request.amount < 0:
                raise ValueError(f"{request.token_pair}: amount must not be negative")
            if request.slippage is not None:
                parse_slippage(request.slippage)

        return list(await asyncio.gather(*(
            self.estimate_swap(
                r.token_pair,
                r.amount,
                max_wait,
                trade_type=r.trade_type,
                slippage=r.slippage,
            )
            for r in requests
        )))

    async def aclose(self) -> None:
        """Cancel background work and close the shared HTTP client."""
        tasks = [*self._refreshes.values(), *self._background]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._refreshes.clear()
        self._background.clear()
        await SourceAdapter.close_shared_client()

    async def __aenter__(self) -> PriceEstimator:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
