"""Tests for the PriceEstimator facade."""

import asyncio
import time
from decimal import Decimal

import pytest

from conftest import (
    DAI,
    USDC,
    USDT,
    WETH,
    CrossChainAdapter,
    FakeAdapter,
    make_observation,
)
from estimator.src.EstimatorConfig import EstimatorConfig
from estimator.src.PriceEstimate import EstimateStatus, PriceEstimate, SwapRequest, TradeType
from estimator.src.PriceEstimator import PriceEstimator
from estimator.src.TokenPair import TokenDescriptor, TokenPair
from estimator.src.TokenResolver import DEFAULT_TOKENS, StaticTokenResolver, UnknownToken
from estimator.src.adapters.base import MalformedResponse, TransportError, UnsupportedPair

BASE_USDC = TokenDescriptor(8453, "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", 6, "USDC")


class PartialListingAdapter(FakeAdapter):
    """Adapter that does not list some tokens."""

    def __init__(self, name: str, price: str = "100", unlisted: tuple = ()) -> None:
        super().__init__(name, price)
        self.unlisted = set(unlisted)

    async def _fetch_quote(self, pair: TokenPair, requested_at: float):
        if {pair.base, pair.quote} & self.unlisted:
            self.calls += 1
            raise UnsupportedPair(self.name, pair, "not listed")
        return await super()._fetch_quote(pair, requested_at)


class SlowResolver(StaticTokenResolver):
    """Resolver blocking like a JSON-RPC lookup."""

    def resolve(self, chain_id: int, address_or_symbol: str) -> TokenDescriptor:
        time.sleep(0.3)
        return super().resolve(chain_id, address_or_symbol)


def make_config(**kwargs) -> EstimatorConfig:
    kwargs.setdefault("late_result_grace", 0.1)
    return EstimatorConfig(**kwargs)


def cached_estimate(pair: TokenPair, price: str, age: float) -> PriceEstimate:
    as_of = time.time() - age
    return PriceEstimate(
        token_pair=pair,
        price=Decimal(price),
        as_of=as_of,
        staleness=0.0,
        agreement_score=Decimal(1),
        contributing_sources=frozenset({"a", "b"}),
        status=EstimateStatus.FRESH,
        observations=(
            make_observation("a", price, pair=pair, observed_at=as_of),
            make_observation("b", price, pair=pair, observed_at=as_of),
        ),
    )


class TestBoundedLatency:
    """Test that estimate never waits longer than max_wait."""

    @pytest.mark.asyncio
    async def test_slow_sources_do_not_block(self, weth_usdc: TokenPair) -> None:
        """A hanging source yields Unavailable within max_wait."""
        slow = FakeAdapter("slow", delay=5.0)
        async with PriceEstimator([slow], make_config()) as estimator:
            start = time.monotonic()
            estimate = await estimator.estimate(weth_usdc, max_wait=0.2)
            elapsed = time.monotonic() - start

        assert elapsed < 0.5
        assert estimate.status == EstimateStatus.UNAVAILABLE
        assert estimate.contributing_sources == frozenset()
        assert estimate.price is None

    @pytest.mark.asyncio
    async def test_partial_answers_within_deadline(self, weth_usdc: TokenPair) -> None:
        """Fast sources are used even if another source is still running."""
        adapters = [FakeAdapter("fast", "100"), FakeAdapter("slow", "100", delay=5.0)]
        async with PriceEstimator(adapters, make_config()) as estimator:
            start = time.monotonic()
            estimate = await estimator.estimate(weth_usdc, max_wait=0.2)
            elapsed = time.monotonic() - start

        assert elapsed < 0.5
        assert estimate.contributing_sources == frozenset({"fast"})
        assert estimate.status == EstimateStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_negative_max_wait(self, weth_usdc: TokenPair) -> None:
        """Negative waits are rejected."""
        async with PriceEstimator([FakeAdapter("a")], make_config()) as estimator:
            with pytest.raises(ValueError):
                await estimator.estimate(weth_usdc, max_wait=-1)


class TestCaching:
    """Test cache usage by the facade."""

    @pytest.mark.asyncio
    async def test_idempotent_within_fresh_window(self, weth_usdc: TokenPair) -> None:
        """Two calls within the fresh window return the same estimate without refetching."""
        a, b = FakeAdapter("a", "100"), FakeAdapter("b", "100.1")
        async with PriceEstimator([a, b], make_config()) as estimator:
            first = await estimator.estimate(weth_usdc, max_wait=1.0)
            second = await estimator.estimate(weth_usdc, max_wait=1.0)

        assert second is first
        assert a.calls == 1
        assert b.calls == 1
        assert first.status == EstimateStatus.FRESH

    @pytest.mark.asyncio
    async def test_invalidate_forces_refetch(self, weth_usdc: TokenPair) -> None:
        """Invalidation makes the next call query sources again."""
        a = FakeAdapter("a", "100")
        async with PriceEstimator([a], make_config()) as estimator:
            await estimator.estimate(weth_usdc, max_wait=1.0)
            assert estimator.invalidate(weth_usdc)
            await estimator.estimate(weth_usdc, max_wait=1.0)

        assert a.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_source(self, weth_usdc: TokenPair) -> None:
        """Source invalidation drops estimates that source contributed to."""
        a = FakeAdapter("a", "100")
        async with PriceEstimator([a], make_config()) as estimator:
            await estimator.estimate(weth_usdc, max_wait=1.0)
            assert estimator.invalidate_source("other") == 0
            assert estimator.invalidate_source("a") == 1
            await estimator.estimate(weth_usdc, max_wait=1.0)

        assert a.calls == 2


class TestFallbacks:
    """Test degraded operation when sources fail."""

    @pytest.mark.asyncio
    async def test_single_source_degraded(self, weth_usdc: TokenPair) -> None:
        """A single answering source gives Degraded."""
        adapters = [FakeAdapter("a", "100"), FakeAdapter("b", error=TransportError("b", "down"))]
        async with PriceEstimator(adapters, make_config()) as estimator:
            estimate = await estimator.estimate(weth_usdc, max_wait=1.0)

        assert estimate.status == EstimateStatus.DEGRADED
        assert estimate.contributing_sources == frozenset({"a"})

    @pytest.mark.asyncio
    async def test_zero_observations_unavailable(self, weth_usdc: TokenPair) -> None:
        """No observations and no cache entry gives Unavailable."""
        adapters = [FakeAdapter("a", error=MalformedResponse("a", "bad"))]
        async with PriceEstimator(adapters, make_config()) as estimator:
            estimate = await estimator.estimate(weth_usdc, max_wait=1.0)

        assert estimate.status == EstimateStatus.UNAVAILABLE
        assert estimate.contributing_sources == frozenset()

    @pytest.mark.asyncio
    async def test_zero_observations_serves_stale(self, weth_usdc: TokenPair) -> None:
        """No observations with a stale cache entry gives Stale."""
        adapters = [FakeAdapter("a", error=TransportError("a", "down"))]
        async with PriceEstimator(adapters, make_config()) as estimator:
            estimator.cache.put(weth_usdc, cached_estimate(weth_usdc, "99", age=20.0))
            estimate = await estimator.estimate(weth_usdc, max_wait=1.0)

        assert estimate.status == EstimateStatus.STALE
        assert estimate.price == Decimal("99")
        assert estimate.staleness == pytest.approx(20.0, abs=1.0)
        assert adapters[0].calls == 1

    @pytest.mark.asyncio
    async def test_no_sources_at_all(self, weth_usdc: TokenPair) -> None:
        """An estimator without adapters answers Unavailable."""
        async with PriceEstimator([], make_config()) as estimator:
            estimate = await estimator.estimate(weth_usdc, max_wait=0.1)
        assert estimate.status == EstimateStatus.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_stale_served_while_refresh_in_flight(self, weth_usdc: TokenPair) -> None:
        """A second caller gets the stale entry immediately during a refresh."""
        slow = FakeAdapter("slow", "101", delay=0.3)
        async with PriceEstimator([slow], make_config()) as estimator:
            estimator.cache.put(weth_usdc, cached_estimate(weth_usdc, "99", age=20.0))

            first = asyncio.create_task(estimator.estimate(weth_usdc, max_wait=1.0))
            await asyncio.sleep(0.05)
            assert estimator.is_refreshing(weth_usdc)

            start = time.monotonic()
            second = await estimator.estimate(weth_usdc, max_wait=1.0)
            assert time.monotonic() - start < 0.1

            refreshed = await first

        assert second.status == EstimateStatus.STALE
        assert second.price == Decimal("99")
        assert refreshed.price == Decimal("101")
        assert slow.calls == 1


class TestCoalescing:
    """Test request coalescing."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fan_out(self, weth_usdc: TokenPair) -> None:
        """Concurrent calls for one pair query each source once."""
        a = FakeAdapter("a", "100", delay=0.1)
        b = FakeAdapter("b", "100", delay=0.1)
        async with PriceEstimator([a, b], make_config()) as estimator:
            results = await asyncio.gather(
                *(estimator.estimate(weth_usdc, max_wait=1.0) for _ in range(5))
            )

        assert a.calls == 1
        assert b.calls == 1
        assert all(r is results[0] for r in results)

    @pytest.mark.asyncio
    async def test_caller_timeout_does_not_cancel_refresh(self, weth_usdc: TokenPair) -> None:
        """A caller giving up early leaves the shared refresh running."""
        a = FakeAdapter("a", "100", delay=0.2)
        async with PriceEstimator([a], make_config()) as estimator:
            impatient = asyncio.create_task(estimator.estimate(weth_usdc, max_wait=1.0))
            await asyncio.sleep(0.01)
            quick = await estimator.estimate(weth_usdc, max_wait=0.05)
            patient = await impatient

        assert quick.status == EstimateStatus.UNAVAILABLE
        assert patient.price == Decimal("100")
        assert a.calls == 1

    @pytest.mark.asyncio
    async def test_different_pairs_not_coalesced(self, weth_usdc: TokenPair) -> None:
        """Each pair gets its own refresh."""
        a = FakeAdapter("a", "100", delay=0.05)
        async with PriceEstimator([a], make_config()) as estimator:
            await asyncio.gather(
                estimator.estimate(weth_usdc, max_wait=1.0),
                estimator.estimate(weth_usdc.inverted(), max_wait=1.0),
            )
        assert a.calls == 2


class TestLateResults:
    """Test absorption of results arriving after the deadline."""

    @pytest.mark.asyncio
    async def test_late_result_reconciled_into_cache(self, weth_usdc: TokenPair) -> None:
        """A source answering after the deadline updates the cached estimate."""
        fast = FakeAdapter("fast", "100")
        slow = FakeAdapter("slow", "100.2", delay=0.3)
        async with PriceEstimator([fast, slow], make_config(late_result_grace=1.0)) as estimator:
            estimate = await estimator.estimate(weth_usdc, max_wait=0.1)
            assert estimate.contributing_sources == frozenset({"fast"})

            await asyncio.sleep(0.5)
            entry = estimator.cache.get(weth_usdc)

        assert entry is not None
        assert entry.estimate.contributing_sources == frozenset({"fast", "slow"})
        assert entry.estimate.status == EstimateStatus.FRESH
        assert slow.calls == 1


class TestStablecoinScenario:
    """End-to-end stablecoin reconciliation."""

    @pytest.mark.asyncio
    async def test_two_close_sources_fresh(self) -> None:
        """1.00 and 1.002 for USDC/USDT give Fresh at about 1.001."""
        pair = TokenPair(USDC, USDT)
        adapters = [FakeAdapter("a", "1.00"), FakeAdapter("b", "1.002")]
        async with PriceEstimator(adapters, make_config()) as estimator:
            estimate = await estimator.estimate(pair, max_wait=1.0)

        assert estimate.status == EstimateStatus.FRESH
        assert estimate.agreement_score == Decimal("0.998")
        assert abs(estimate.price - Decimal("1.001")) < Decimal("0.0001")


class TestTokensAndSwaps:
    """Test resolution and swap estimates."""

    @pytest.mark.asyncio
    async def test_estimate_tokens_by_symbol(self) -> None:
        """Symbols resolve through the default token list."""
        async with PriceEstimator([FakeAdapter("a", "3000")], make_config()) as estimator:
            estimate = await estimator.estimate_tokens(1, "weth", "USDC", max_wait=1.0)

        assert estimate.token_pair == TokenPair(WETH, USDC)
        assert estimate.price == Decimal("3000")

    @pytest.mark.asyncio
    async def test_unknown_token_propagates(self) -> None:
        """Unknown tokens are the one error reaching callers."""
        a = FakeAdapter("a")
        async with PriceEstimator([a], make_config()) as estimator:
            with pytest.raises(UnknownToken):
                await estimator.estimate_tokens(1, "NOPE", "USDC")
        assert a.calls == 0

    @pytest.mark.asyncio
    async def test_estimate_swap(self, weth_usdc: TokenPair) -> None:
        """Swap output is amount_in times price in raw quote units."""
        async with PriceEstimator([FakeAdapter("a", "3000")], make_config()) as estimator:
            swap = await estimator.estimate_swap(weth_usdc, 2 * 10**18, max_wait=1.0)

        assert swap.amount_out == 6000 * 10**6
        assert swap.amount_in == 2 * 10**18
        assert swap.estimate.price == Decimal("3000")

    @pytest.mark.asyncio
    async def test_estimate_swap_rounds_down(self, weth_usdc: TokenPair) -> None:
        """Fractional raw output units are truncated."""
        async with PriceEstimator([FakeAdapter("a", "3000.0000015")], make_config()) as estimator:
            swap = await estimator.estimate_swap(weth_usdc, 10**18, max_wait=1.0)

        assert swap.amount_out == 3_000_000_001

    @pytest.mark.asyncio
    async def test_estimate_swap_unavailable(self, weth_usdc: TokenPair) -> None:
        """Without a price there is no output amount."""
        adapters = [FakeAdapter("a", error=TransportError("a", "down"))]
        async with PriceEstimator(adapters, make_config()) as estimator:
            swap = await estimator.estimate_swap(weth_usdc, 10**18, max_wait=1.0)

        assert swap.amount_out is None
        assert swap.estimate.status == EstimateStatus.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_estimate_swap_negative(self, weth_usdc: TokenPair) -> None:
        """Negative input amounts are rejected."""
        async with PriceEstimator([FakeAdapter("a")], make_config()) as estimator:
            with pytest.raises(ValueError):
                await estimator.estimate_swap(weth_usdc, -1)


class TestUnsupportedPairs:
    """Test sources that cannot price every pair."""

    @pytest.mark.asyncio
    async def test_unlisted_token_keeps_source_available(self, weth_usdc: TokenPair) -> None:
        """A source not listing one pair still answers for the next."""
        partial = PartialListingAdapter("a", "3000", unlisted=(DAI,))
        adapters = [partial, FakeAdapter("b", "3000")]
        async with PriceEstimator(adapters, make_config()) as estimator:
            weth_dai = await estimator.estimate(TokenPair(WETH, DAI), max_wait=1.0)
            weth_usdc_estimate = await estimator.estimate(weth_usdc, max_wait=1.0)
            source_manager = estimator.aggregator.source_manager

        assert weth_dai.status == EstimateStatus.DEGRADED
        assert weth_dai.contributing_sources == frozenset({"b"})
        assert weth_usdc_estimate.status == EstimateStatus.FRESH
        assert weth_usdc_estimate.contributing_sources == frozenset({"a", "b"})
        assert source_manager.is_source_active("a")
        assert partial.calls == 2


class TestCrossChain:
    """Test pairs whose tokens live on different chains."""

    @pytest.mark.asyncio
    async def test_estimate_tokens_across_chains(self) -> None:
        """Only cross-chain capable sources are asked."""
        same_chain = FakeAdapter("same", "3000")
        adapters = [CrossChainAdapter("x", "3000"), same_chain]
        async with PriceEstimator(adapters, make_config()) as estimator:
            estimate = await estimator.estimate_tokens(
                1, "WETH", "USDC", max_wait=1.0, quote_chain_id=8453
            )

        assert estimate.token_pair == TokenPair(WETH, BASE_USDC)
        assert estimate.token_pair.is_cross_chain
        assert estimate.contributing_sources == frozenset({"x"})
        assert estimate.price == Decimal("3000")
        assert same_chain.calls == 0

    @pytest.mark.asyncio
    async def test_unknown_quote_chain_token(self) -> None:
        """Quote tokens are resolved on the quote chain."""
        async with PriceEstimator([CrossChainAdapter("x")], make_config()) as estimator:
            with pytest.raises(UnknownToken):
                await estimator.estimate_tokens(1, "WETH", "DAI", quote_chain_id=8453)


class TestResolution:
    """Test that token resolution does not stall the event loop."""

    @pytest.mark.asyncio
    async def test_slow_resolver_runs_off_loop(self, weth_usdc: TokenPair) -> None:
        """Estimates for resolved pairs are served while a lookup blocks."""
        resolver = SlowResolver(DEFAULT_TOKENS)
        adapters = [FakeAdapter("a", "3000")]
        async with PriceEstimator(adapters, make_config(), resolver=resolver) as estimator:
            start = time.monotonic()
            resolving = asyncio.create_task(
                estimator.estimate_tokens(1, "WETH", "USDT", max_wait=1.0)
            )
            await asyncio.sleep(0)
            estimate = await estimator.estimate(weth_usdc, max_wait=1.0)
            elapsed = time.monotonic() - start

            assert elapsed < 0.2
            assert estimate.price == Decimal("3000")
            resolved = await resolving

        assert resolved.token_pair == TokenPair(WETH, USDT)

    @pytest.mark.asyncio
    async def test_resolve_pair(self) -> None:
        """Both references resolve, the quote on its own chain."""
        async with PriceEstimator([FakeAdapter("a")], make_config()) as estimator:
            pair = await estimator.resolve_pair(1, "weth", "usdc", quote_chain_id=8453)
            with pytest.raises(ValueError):
                await estimator.resolve_pair(1, "USDC", USDC.address)

        assert pair == TokenPair(WETH, BASE_USDC)


class TestTradeTypes:
    """Test exact-out swaps, slippage limits and batches."""

    @pytest.mark.asyncio
    async def test_exact_out(self, weth_usdc: TokenPair) -> None:
        """Exact-out swaps estimate the input, rounded up."""
        async with PriceEstimator([FakeAdapter("a", "3000")], make_config()) as estimator:
            swap = await estimator.estimate_swap(
                weth_usdc, 1000 * 10**6, max_wait=1.0, trade_type=TradeType.EXACT_OUT
            )

        assert swap.trade_type == TradeType.EXACT_OUT
        assert swap.amount_out == 1000 * 10**6
        # 1/3 WETH
        assert swap.amount_in == 333_333_333_333_333_334

    @pytest.mark.asyncio
    async def test_slippage_limits(self, weth_usdc: TokenPair) -> None:
        """Slippage yields a minimum output or a maximum input."""
        async with PriceEstimator([FakeAdapter("a", "3000")], make_config()) as estimator:
            sell = await estimator.estimate_swap(weth_usdc, 10**18, max_wait=1.0, slippage="2")
            buy = await estimator.estimate_swap(
                weth_usdc, 3000 * 10**6, max_wait=1.0,
                trade_type=TradeType.EXACT_OUT, slippage="2",
            )

        assert sell.amount_out == 3000 * 10**6
        assert sell.amount_limit == 2940 * 10**6
        assert buy.amount_in == 10**18
        assert buy.amount_limit == 102 * 10**16

    @pytest.mark.asyncio
    async def test_invalid_slippage(self, weth_usdc: TokenPair) -> None:
        """Slippage outside 0 to 100 percent is rejected before fetching."""
        a = FakeAdapter("a")
        async with PriceEstimator([a], make_config()) as estimator:
            with pytest.raises(ValueError):
                await estimator.estimate_swap(weth_usdc, 10**18, slippage="101")
            with pytest.raises(ValueError):
                await estimator.estimate_swap(weth_usdc, 10**18, slippage="-0.5")
        assert a.calls == 0

    @pytest.mark.asyncio
    async def test_batch(self, weth_usdc: TokenPair, usdc_usdt: TokenPair) -> None:
        """Batches keep request order and share one refresh per pair."""
        a = FakeAdapter("a", "2", delay=0.05)
        requests = [
            SwapRequest(weth_usdc, 10**18),
            SwapRequest(usdc_usdt, 10**6),
            SwapRequest(weth_usdc, 4 * 10**6, TradeType.EXACT_OUT, Decimal("1")),
        ]
        async with PriceEstimator([a], make_config()) as estimator:
            swaps = await estimator.estimate_swaps(requests, max_wait=1.0)

        assert [s.token_pair for s in swaps] == [weth_usdc, usdc_usdt, weth_usdc]
        assert swaps[0].amount_out == 2 * 10**6
        assert swaps[1].amount_out == 2 * 10**6
        assert swaps[2].amount_in == 2 * 10**18
        assert swaps[2].amount_limit == 202 * 10**16
        assert a.calls == 2

    @pytest.mark.asyncio
    async def test_batch_rejects_invalid_request(self, weth_usdc: TokenPair) -> None:
        """A bad request fails the batch before any source is asked."""
        a = FakeAdapter("a")
        requests = [SwapRequest(weth_usdc, 10**18), SwapRequest(weth_usdc, -1)]
        async with PriceEstimator([a], make_config()) as estimator:
            with pytest.raises(ValueError):
                await estimator.estimate_swaps(requests)
        assert a.calls == 0
