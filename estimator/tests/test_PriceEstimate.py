"""Tests for PriceEstimate and SwapEstimate."""

from decimal import Decimal

import pytest

from conftest import make_observation
from estimator.src.PriceEstimate import EstimateStatus, PriceEstimate, SwapEstimate, TradeType
from estimator.src.TokenPair import TokenPair

NOW = 1_700_000_000.0


def make_estimate(pair: TokenPair, price: str) -> PriceEstimate:
    return PriceEstimate(
        token_pair=pair,
        price=Decimal(price),
        as_of=NOW,
        staleness=0.0,
        agreement_score=Decimal(1),
        contributing_sources=frozenset({"a"}),
        status=EstimateStatus.DEGRADED,
        observations=(make_observation("a", price, pair=pair),),
    )


class TestSwapEstimate:
    """Test conversion of prices into swap amounts."""

    def test_exact_in_min_output(self, usdc_usdt: TokenPair) -> None:
        """Exact-in limits are the output reduced by the slippage."""
        swap = SwapEstimate.from_estimate(make_estimate(usdc_usdt, "1"), 1000, slippage="2")
        assert swap.amount_out == 1000
        assert swap.amount_limit == 980

    def test_exact_out_max_input(self, usdc_usdt: TokenPair) -> None:
        """Exact-out limits are the input increased by the slippage."""
        swap = SwapEstimate.from_estimate(
            make_estimate(usdc_usdt, "1"), 1000, TradeType.EXACT_OUT, slippage="2"
        )
        assert swap.amount_in == 1000
        assert swap.amount_limit == 1020

    def test_limits_round_down(self, usdc_usdt: TokenPair) -> None:
        """Fractional limits are truncated."""
        estimate = make_estimate(usdc_usdt, "1")
        assert SwapEstimate.from_estimate(estimate, 999, slippage="0.5").amount_limit == 994
        swap = SwapEstimate.from_estimate(estimate, 999, TradeType.EXACT_OUT, slippage="0.5")
        assert swap.amount_limit == 1003

    def test_exact_out_rounds_up(self, usdc_usdt: TokenPair) -> None:
        """Estimated inputs never undershoot the requested output."""
        swap = SwapEstimate.from_estimate(
            make_estimate(usdc_usdt, "3"), 1000, trade_type=TradeType.EXACT_OUT
        )
        assert swap.amount_in == 334
        assert swap.amount_limit is None

    def test_decimals_scaling(self, weth_usdc: TokenPair) -> None:
        """Amounts are scaled between the tokens' decimals."""
        estimate = make_estimate(weth_usdc, "2500.5")
        assert SwapEstimate.from_estimate(estimate, 10**18).amount_out == 2_500_500_000
        swap = SwapEstimate.from_estimate(estimate, 2_500_500_000, TradeType.EXACT_OUT)
        assert swap.amount_in == 10**18

    def test_slippage_bounds(self, usdc_usdt: TokenPair) -> None:
        """Slippage is a percentage between 0 and 100 inclusive."""
        estimate = make_estimate(usdc_usdt, "1")
        assert SwapEstimate.from_estimate(estimate, 1000, slippage="0").amount_limit == 1000
        assert SwapEstimate.from_estimate(estimate, 1000, slippage="100").amount_limit == 0
        with pytest.raises(ValueError):
            SwapEstimate.from_estimate(estimate, 1000, slippage="100.1")
        with pytest.raises(ValueError):
            SwapEstimate.from_estimate(estimate, 1000, slippage="-1")

    def test_negative_amount(self, usdc_usdt: TokenPair) -> None:
        """Negative amounts are rejected."""
        with pytest.raises(ValueError):
            SwapEstimate.from_estimate(make_estimate(usdc_usdt, "1"), -1)

    def test_unavailable(self, usdc_usdt: TokenPair) -> None:
        """Without a price only the given side is known."""
        estimate = PriceEstimate.unavailable(usdc_usdt, NOW)
        swap = SwapEstimate.from_estimate(estimate, 500, TradeType.EXACT_OUT, slippage="1")

        assert swap.amount_in is None
        assert swap.amount_out == 500
        assert swap.amount_limit is None
        assert swap.slippage == Decimal("1")

    def test_to_dict(self, usdc_usdt: TokenPair) -> None:
        """Amounts serialize as strings next to the price estimate."""
        swap = SwapEstimate.from_estimate(
            make_estimate(usdc_usdt, "1"), 1000, TradeType.EXACT_OUT, slippage="2"
        )
        result = swap.to_dict()

        assert result["price"] == "1"
        assert result["trade_type"] == "exact_out"
        assert result["amount_in"] == "1000"
        assert result["amount_out"] == "1000"
        assert result["slippage"] == "2"
        assert result["amount_limit"] == "1020"

    def test_to_dict_without_slippage(self, usdc_usdt: TokenPair) -> None:
        """Limits are only reported when slippage was requested."""
        result = SwapEstimate.from_estimate(make_estimate(usdc_usdt, "1"), 1000).to_dict()
        assert result["trade_type"] == "exact_in"
        assert "amount_limit" not in result
