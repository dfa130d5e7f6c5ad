"""Unit tests for the Normalizer."""

from decimal import Decimal

import pytest

from conftest import DAI, USDC, WETH
from estimator.src.Normalizer import InvalidPrice, MismatchedPair, normalize
from estimator.src.PriceObservation import QuoteConvention, RawQuote
from estimator.src.TokenPair import TokenPair

PAIR = TokenPair(WETH, USDC)


def raw(convention: QuoteConvention, values: dict, **kwargs) -> RawQuote:
    defaults = {
        "base_key": PAIR.base.key,
        "quote_key": PAIR.quote.key,
        "requested_at": 1000.0,
        "retrieved_at": 1000.25,
    }
    defaults.update(kwargs)
    return RawQuote(convention=convention, values=values, **defaults)


class TestConventions:
    """Test price computation per quote convention."""

    def test_direct(self) -> None:
        """Direct prices pass through unchanged."""
        obs = normalize(raw(QuoteConvention.DIRECT, {"price": Decimal("3000.5")}), "a",
                        requested_pair=PAIR, now=2000.0)
        assert obs.price == Decimal("3000.5")
        assert obs.source_id == "a"
        assert obs.token_pair == PAIR

    def test_usd_prices(self) -> None:
        """USD prices are divided base over quote."""
        quote = raw(QuoteConvention.USD_PRICES,
                    {"base_usd": Decimal("3000"), "quote_usd": Decimal("0.9990")})
        obs = normalize(quote, "a", requested_pair=PAIR, now=2000.0)
        assert obs.price == Decimal("3000") / Decimal("0.9990")

    def test_amounts_scaled_by_decimals(self) -> None:
        """Raw amounts are scaled by each side's decimals."""
        quote = raw(QuoteConvention.AMOUNTS,
                    {"amount_in": 10**18, "amount_out": 3_000_000_000})
        obs = normalize(quote, "zero_x", requested_pair=PAIR, now=2000.0)
        assert obs.price == Decimal("3000")

    def test_reserves_scaled_by_decimals(self) -> None:
        """Reserves give quote per base after scaling."""
        quote = raw(QuoteConvention.RESERVES,
                    {"reserve_base": 2 * 10**18, "reserve_quote": 5_000 * 10**6})
        obs = normalize(quote, "uniswap_v2", requested_pair=PAIR, now=2000.0)
        assert obs.price == Decimal("2500")

    def test_same_decimals(self) -> None:
        """Pairs with equal decimals need no scaling."""
        pair = TokenPair(WETH, DAI)
        quote = raw(QuoteConvention.AMOUNTS, {"amount_in": 10**18, "amount_out": 2 * 10**21},
                    base_key=WETH.key, quote_key=DAI.key)
        assert normalize(quote, "a", requested_pair=pair, now=2000.0).price == Decimal("2000")


class TestMismatchedPair:
    """Test echoed token identity checks."""

    def test_reversed_pair_rejected(self) -> None:
        """A quote for the reversed pair must not be accepted."""
        quote = raw(QuoteConvention.DIRECT, {"price": Decimal("1")},
                    base_key=PAIR.quote.key, quote_key=PAIR.base.key)
        with pytest.raises(MismatchedPair) as exc_info:
            normalize(quote, "a", requested_pair=PAIR)
        assert exc_info.value.expected == PAIR

    def test_other_token_rejected(self) -> None:
        """A quote for another token must not be accepted."""
        quote = raw(QuoteConvention.DIRECT, {"price": Decimal("1")}, quote_key=DAI.key)
        with pytest.raises(MismatchedPair):
            normalize(quote, "a", requested_pair=PAIR)


class TestInvalidPrice:
    """Test rejection of unusable values."""

    @pytest.mark.parametrize("price", [Decimal("0"), Decimal("-1"), Decimal("NaN"),
                                       Decimal("Infinity")])
    def test_non_positive_or_non_finite(self, price: Decimal) -> None:
        """Zero, negative, NaN and infinite prices are invalid."""
        with pytest.raises(InvalidPrice):
            normalize(raw(QuoteConvention.DIRECT, {"price": price}), "a", requested_pair=PAIR)

    def test_missing_field(self) -> None:
        """Missing convention fields are invalid."""
        with pytest.raises(InvalidPrice, match="Missing field 'quote_usd'"):
            normalize(raw(QuoteConvention.USD_PRICES, {"base_usd": Decimal("1")}), "a",
                      requested_pair=PAIR)

    def test_zero_denominator(self) -> None:
        """A zero quote price cannot be divided by."""
        quote = raw(QuoteConvention.USD_PRICES,
                    {"base_usd": Decimal("3000"), "quote_usd": Decimal("0")})
        with pytest.raises(InvalidPrice):
            normalize(quote, "a", requested_pair=PAIR)

    def test_non_numeric(self) -> None:
        """Non-numeric values are invalid."""
        with pytest.raises(InvalidPrice, match="not a number"):
            normalize(raw(QuoteConvention.DIRECT, {"price": "abc"}), "a", requested_pair=PAIR)


class TestObservationMetadata:
    """Test timestamps, latency and confidence."""

    def test_latency(self) -> None:
        """Latency is the time between request and response."""
        obs = normalize(raw(QuoteConvention.DIRECT, {"price": Decimal("1")}), "a",
                        requested_pair=PAIR, now=2000.0)
        assert obs.latency == pytest.approx(0.25)
        assert obs.observed_at == 1000.25

    def test_future_timestamp_clamped(self) -> None:
        """Observations cannot be newer than now."""
        obs = normalize(raw(QuoteConvention.DIRECT, {"price": Decimal("1")}), "a",
                        requested_pair=PAIR, now=500.0)
        assert obs.observed_at == 500.0

    def test_confidence_default(self) -> None:
        """Confidence defaults to 1."""
        obs = normalize(raw(QuoteConvention.DIRECT, {"price": Decimal("1")}), "a",
                        requested_pair=PAIR, now=2000.0)
        assert obs.confidence_hint == Decimal(1)

    def test_confidence_clamped(self) -> None:
        """Provider confidence is clamped to [0, 1]."""
        high = raw(QuoteConvention.DIRECT, {"price": Decimal("1")}, confidence=Decimal("1.5"))
        low = raw(QuoteConvention.DIRECT, {"price": Decimal("1")}, confidence=Decimal("-0.2"))
        assert normalize(high, "a", requested_pair=PAIR, now=2000.0).confidence_hint == 1
        assert normalize(low, "a", requested_pair=PAIR, now=2000.0).confidence_hint == 0
