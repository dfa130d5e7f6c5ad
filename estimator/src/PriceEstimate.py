"""PriceEstimate: The externally visible, reconciled price for a pair.

.. code-block:: python

    >>> est = PriceEstimate.unavailable(pair, now=1700000000.0)
    >>> est.status
    <EstimateStatus.UNAVAILABLE: 'unavailable'>
    >>> est.contributing_sources
    frozenset()
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import ROUND_DOWN, ROUND_UP, Decimal
from enum import Enum
from typing import Any

from .PriceObservation import PriceObservation
from .TokenPair import TokenPair


class EstimateStatus(str, Enum):
    """Trust level of an estimate."""

    FRESH = "fresh"
    STALE = "stale"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class PriceEstimate:
    """Reconciled price estimate.

    :ivar token_pair: Pair the estimate refers to.
    :ivar price: Quote units per base unit, or None when unavailable.
    :ivar as_of: Unix timestamp of the newest data the price is based on.
    :ivar staleness: Age of the data in seconds when the estimate was produced.
    :ivar agreement_score: 1.0 when all contributing sources agree.
    :ivar contributing_sources: Sources whose prices were used.
    :ivar status: Trust level.
    :ivar observations: All observations of the cycle, including outliers.
    """

    token_pair: TokenPair
    price: Decimal | None
    as_of: float
    staleness: float
    agreement_score: Decimal
    contributing_sources: frozenset[str]
    status: EstimateStatus
    observations: tuple[PriceObservation, ...] = field(default=(), compare=False)

    def __post_init__(self) -> None:
        """Validate estimate invariants.

        :raises ValueError: If the estimate is internally inconsistent.
        """
        if not Decimal(0) <= self.agreement_score <= Decimal(1):
            raise ValueError(f"agreement_score out of range: {self.agreement_score}")
        if self.status == EstimateStatus.UNAVAILABLE:
            if self.contributing_sources or self.price is not None:
                raise ValueError("unavailable estimates carry no price or sources")
            return
        if not self.contributing_sources:
            raise ValueError(f"{self.status.value} estimate requires contributing sources")
        if self.price is None or self.price <= 0:
            raise ValueError(f"{self.status.value} estimate requires a positive price")

    @property
    def is_available(self) -> bool:
        """Check if the estimate carries a price."""
        return self.status != EstimateStatus.UNAVAILABLE

    @classmethod
    def unavailable(cls, token_pair: TokenPair, now: float) -> PriceEstimate:
        """Build the terminal "no data" estimate for a pair."""
        return cls(
            token_pair=token_pair,
            price=None,
            as_of=now,
            staleness=0.0,
            agreement_score=Decimal(0),
            contributing_sources=frozenset(),
            status=EstimateStatus.UNAVAILABLE,
        )

    def as_stale(self, now: float) -> PriceEstimate:
        """Return a copy re-served from cache with status Stale.

        :param now: Current Unix timestamp, used to recompute staleness.
        """
        return replace(
            self,
            status=EstimateStatus.STALE,
            staleness=max(0.0, now - self.as_of),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "pair": self.token_pair.pair_id,
            "price": str(self.price) if self.price is not None else None,
            "as_of": self.as_of,
            "staleness": self.staleness,
            "agreement_score": str(self.agreement_score),
            "contributing_sources": sorted(self.contributing_sources),
            "status": self.status.value,
            "observations": [o.to_dict() for o in self.observations],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], token_pair: TokenPair) -> PriceEstimate:
        """Rebuild an estimate serialized with :meth:`to_dict`."""
        price = data.get("price")
        return cls(
            token_pair=token_pair,
            price=Decimal(price) if price is not None else None,
            as_of=float(data["as_of"]),
            staleness=float(data.get("staleness", 0.0)),
            agreement_score=Decimal(data["agreement_score"]),
            contributing_sources=frozenset(data.get("contributing_sources", [])),
            status=EstimateStatus(data["status"]),
            observations=tuple(
                PriceObservation.from_dict(o, token_pair)
                for o in data.get("observations", [])
            ),
        )


class TradeType(str, Enum):
    """Which side of a swap is fixed."""

    EXACT_IN = "exact_in"
    EXACT_OUT = "exact_out"


@dataclass(frozen=True)
class SwapRequest:
    """One swap to estimate in a batch.

    :ivar token_pair: Pair to swap (base in, quote out).
    :ivar amount: Given amount in raw units of the fixed side.
    :ivar trade_type: Which side of the swap ``amount`` fixes.
    :ivar slippage: Slippage tolerance in percent, if a limit is wanted.
    """

    token_pair: TokenPair
    amount: int
    trade_type: TradeType = TradeType.EXACT_IN
    slippage: Decimal | None = None


def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_DOWN))


def _ceil(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_UP))


@dataclass(frozen=True)
class SwapEstimate:
    """Expected amounts of a swap from the base token into the quote token.

    For exact-in swaps ``amount_in`` is given and ``amount_out`` is estimated,
    rounded down. For exact-out swaps ``amount_out`` is given and ``amount_in``
    is estimated, rounded up. The estimated side is None when no price is
    available.

    With a slippage percentage, ``amount_limit`` carries the bound a swap
    transaction would enforce: the minimum output for exact-in swaps, the
    maximum input for exact-out swaps. Both are rounded down.

    :ivar token_pair: Pair being swapped (base in, quote out).
    :ivar amount_in: Input amount in raw base units.
    :ivar amount_out: Output amount in raw quote units.
    :ivar estimate: Price estimate the amounts are derived from.
    :ivar trade_type: Which amount was given.
    :ivar slippage: Slippage tolerance in percent, if requested.
    :ivar amount_limit: Minimum output or maximum input, if slippage was given.
    """

    token_pair: TokenPair
    amount_in: int | None
    amount_out: int | None
    estimate: PriceEstimate
    trade_type: TradeType = TradeType.EXACT_IN
    slippage: Decimal | None = None
    amount_limit: int | None = None

    @classmethod
    def from_estimate(
        cls,
        estimate: PriceEstimate,
        amount: int,
        trade_type: TradeType = TradeType.EXACT_IN,
        slippage: Decimal | str | None = None,
    ) -> SwapEstimate:
        """Convert a price estimate into a swap estimate.

        :param estimate: Price estimate for the pair.
        :param amount: Given amount in raw units: base units for exact-in,
            quote units for exact-out.
        :param trade_type: Which side of the swap ``amount`` fixes.
        :param slippage: Slippage tolerance in percent (0 to 100).
        :raises ValueError: If amount is negative or slippage is out of range.
        """
        if amount < 0:
            raise ValueError("amount must not be negative")
        trade_type = TradeType(trade_type)
        if slippage is not None:
            slippage = Decimal(slippage)
            if not Decimal(0) <= slippage <= Decimal(100):
                raise ValueError(f"slippage must be between 0 and 100 percent, got {slippage}")

        pair = estimate.token_pair
        exact_in = trade_type == TradeType.EXACT_IN
        if estimate.price is None:
            amount_in, amount_out = (amount, None) if exact_in else (None, amount)
            return cls(pair, amount_in, amount_out, estimate, trade_type, slippage)

        if exact_in:
            amount_in = amount
            out_units = Decimal(amount).scaleb(-pair.base.decimals) * estimate.price
            amount_out = _floor(out_units.scaleb(pair.quote.decimals))
        else:
            amount_out = amount
            in_units = Decimal(amount).scaleb(-pair.quote.decimals) / estimate.price
            amount_in = _ceil(in_units.scaleb(pair.base.decimals))

        amount_limit = None
        if slippage is not None:
            if exact_in:
                amount_limit = _floor(amount_out * (100 - slippage) / 100)
            else:
                amount_limit = _floor(amount_in * (100 + slippage) / 100)

        return cls(pair, amount_in, amount_out, estimate, trade_type, slippage, amount_limit)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict, embedding the price estimate.

        Raw amounts are strings, since they routinely exceed 2**53.
        """
        result = self.estimate.to_dict()
        result.update({
            "trade_type": self.trade_type.value,
            "amount_in": str(self.amount_in) if self.amount_in is not None else None,
            "amount_out": str(self.amount_out) if self.amount_out is not None else None,
        })
        if self.slippage is not None:
            result["slippage"] = str(self.slippage)
            result["amount_limit"] = (
                str(self.amount_limit) if self.amount_limit is not None else None
            )
        return result
