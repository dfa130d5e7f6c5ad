"""Normalizer: Converts provider RawQuotes into PriceObservations.

All prices are expressed as quote units per one base unit, independent of the
provider convention. Raw token amounts are scaled by the descriptors' decimals.

.. code-block:: python

    >>> raw = RawQuote(pair.base.key, pair.quote.key, QuoteConvention.AMOUNTS,
    ...                {"amount_in": 10**18, "amount_out": 3_000_000_000},
    ...                requested_at=0.0, retrieved_at=0.2)
    >>> normalize(raw, "zero_x", requested_pair=pair).price
    Decimal('3000')
"""

from __future__ import annotations

import time
from decimal import Decimal, InvalidOperation

from .PriceObservation import PriceObservation, QuoteConvention, RawQuote
from .TokenPair import TokenPair


class NormalizationError(Exception):
    """Base exception for quotes that cannot be turned into observations."""

    pass


class MismatchedPair(NormalizationError):
    """Raised when a quote answers for different tokens than requested."""

    def __init__(self, expected: TokenPair, base_key: str, quote_key: str):
        self.expected = expected
        self.base_key = base_key
        self.quote_key = quote_key
        super().__init__(
            f"Quote for {base_key}/{quote_key} does not match {expected.pair_id}"
        )


class InvalidPrice(NormalizationError):
    """Raised when a quote yields a non-positive, non-finite or missing price."""

    pass


def _field(raw: RawQuote, name: str) -> Decimal:
    """Read a numeric field of a raw quote as a finite Decimal."""
    if name not in raw.values:
        raise InvalidPrice(f"Missing field '{name}' for {raw.convention.value} quote")
    try:
        value = Decimal(raw.values[name])
    except (InvalidOperation, TypeError, ValueError) as e:
        raise InvalidPrice(f"Field '{name}' is not a number: {raw.values[name]!r}") from e
    if not value.is_finite():
        raise InvalidPrice(f"Field '{name}' is not finite: {value}")
    return value


def _ratio(numerator: Decimal, denominator: Decimal) -> Decimal:
    if denominator <= 0:
        raise InvalidPrice(f"Non-positive denominator: {denominator}")
    return numerator / denominator


def compute_price(raw: RawQuote, pair: TokenPair) -> Decimal:
    """Compute quote-per-base price for a raw quote.

    :param raw: Raw quote to convert.
    :param pair: Pair the quote was requested for (provides decimals).
    :returns: Price in quote units per one base unit.
    :raises InvalidPrice: If fields are missing or the price is not positive.
    """
    convention = raw.convention
    if convention == QuoteConvention.DIRECT:
        price = _field(raw, "price")
    elif convention == QuoteConvention.USD_PRICES:
        price = _ratio(_field(raw, "base_usd"), _field(raw, "quote_usd"))
    elif convention == QuoteConvention.AMOUNTS:
        amount_in = _field(raw, "amount_in").scaleb(-pair.base.decimals)
        amount_out = _field(raw, "amount_out").scaleb(-pair.quote.decimals)
        price = _ratio(amount_out, amount_in)
    elif convention == QuoteConvention.RESERVES:
        reserve_base = _field(raw, "reserve_base").scaleb(-pair.base.decimals)
        reserve_quote = _field(raw, "reserve_quote").scaleb(-pair.quote.decimals)
        price = _ratio(reserve_quote, reserve_base)
    else:
        raise InvalidPrice(f"Unsupported quote convention: {convention}")

    if not price.is_finite() or price <= 0:
        raise InvalidPrice(f"Price must be positive and finite, got {price}")
    return price


def normalize(
    raw: RawQuote,
    source_id: str,
    *,
    requested_pair: TokenPair,
    now: float | None = None,
) -> PriceObservation:
    """Convert a provider quote into a canonical observation.

    :param raw: Quote produced by a source adapter.
    :param source_id: Name of the adapter.
    :param requested_pair: Pair that was requested from the adapter.
    :param now: Current Unix timestamp (default: time.time()). Data timestamps
        in the future are clamped to it.
    :returns: Normalized price observation.
    :raises MismatchedPair: If the quote is for other tokens.
    :raises InvalidPrice: If no valid positive price can be derived.
    """
    if (raw.base_key, raw.quote_key) != (requested_pair.base.key, requested_pair.quote.key):
        raise MismatchedPair(requested_pair, raw.base_key, raw.quote_key)

    price = compute_price(raw, requested_pair)

    if now is None:
        now = time.time()
    observed_at = min(raw.retrieved_at, now)

    confidence = Decimal(1)
    if raw.confidence is not None:
        try:
            confidence = min(max(Decimal(raw.confidence), Decimal(0)), Decimal(1))
        except (InvalidOperation, TypeError, ValueError) as e:
            raise InvalidPrice(f"Invalid confidence: {raw.confidence!r}") from e

    return PriceObservation(
        source_id=source_id,
        token_pair=requested_pair,
        price=price,
        observed_at=observed_at,
        latency=max(0.0, raw.retrieved_at - raw.requested_at),
        confidence_hint=confidence,
    )
