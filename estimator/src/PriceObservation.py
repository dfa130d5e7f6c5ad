"""Raw provider quotes and normalized price observations."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from .TokenPair import TokenPair


class QuoteConvention(str, Enum):
    """How the numeric fields of a RawQuote encode a price.

    - DIRECT: ``price`` is already quote units per base unit.
    - USD_PRICES: ``base_usd`` and ``quote_usd`` are per-token USD prices.
    - AMOUNTS: ``amount_in`` (raw base units) buys ``amount_out`` (raw quote units).
    - RESERVES: ``reserve_base`` and ``reserve_quote`` are raw pool reserves.
    """

    DIRECT = "direct"
    USD_PRICES = "usd_prices"
    AMOUNTS = "amounts"
    RESERVES = "reserves"


@dataclass
class RawQuote:
    """Provider-specific answer for one token pair.

    :ivar base_key: "chain:address" of the token the provider priced as base.
    :ivar quote_key: "chain:address" of the token the provider priced as quote.
    :ivar convention: Encoding of :attr:`values`.
    :ivar values: Numeric fields required by the convention.
    :ivar requested_at: Unix timestamp when the request was issued.
    :ivar retrieved_at: Unix timestamp when the response arrived.
    :ivar confidence: Optional provider-reported confidence in [0, 1].
    :ivar payload: Unparsed provider response kept for debugging.
    """

    base_key: str
    quote_key: str
    convention: QuoteConvention
    values: dict[str, Decimal | int]
    requested_at: float
    retrieved_at: float
    confidence: Decimal | None = None
    payload: Any = field(default=None, repr=False)


@dataclass(frozen=True)
class PriceObservation:
    """A normalized price from a single source.

    :ivar source_id: Name of the adapter that produced the observation.
    :ivar token_pair: Pair the price refers to.
    :ivar price: Quote units per one base unit.
    :ivar observed_at: Unix timestamp of the underlying data.
    :ivar latency: Seconds the source took to answer.
    :ivar confidence_hint: Confidence in [0, 1] reported by or assumed for the source.
    """

    source_id: str
    token_pair: TokenPair
    price: Decimal
    observed_at: float
    latency: float = 0.0
    confidence_hint: Decimal = Decimal(1)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict (prices as strings)."""
        return {
            "source_id": self.source_id,
            "price": str(self.price),
            "observed_at": self.observed_at,
            "latency": self.latency,
            "confidence_hint": str(self.confidence_hint),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], token_pair: TokenPair) -> PriceObservation:
        """Rebuild an observation serialized with :meth:`to_dict`."""
        return cls(
            source_id=data["source_id"],
            token_pair=token_pair,
            price=Decimal(data["price"]),
            observed_at=float(data["observed_at"]),
            latency=float(data.get("latency", 0.0)),
            confidence_hint=Decimal(data.get("confidence_hint", "1")),
        )
