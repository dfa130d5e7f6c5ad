"""Shared fixtures and helpers for estimator tests."""

import asyncio
from decimal import Decimal

import pytest

from estimator.src.PriceObservation import PriceObservation, QuoteConvention, RawQuote
from estimator.src.TokenPair import NATIVE_TOKEN_ADDRESS, TokenDescriptor, TokenPair
from estimator.src.adapters.base import SourceAdapter

WETH = TokenDescriptor(1, "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", 18, "WETH")
USDC = TokenDescriptor(1, "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", 6, "USDC")
USDT = TokenDescriptor(1, "0xdAC17F958D2ee523a2206206994597C13D831ec7", 6, "USDT")
DAI = TokenDescriptor(1, "0x6B175474E89094C44Da98b954EedeAC495271d0F", 18, "DAI")
ETH = TokenDescriptor(1, NATIVE_TOKEN_ADDRESS, 18, "ETH")


class FakeAdapter(SourceAdapter):
    """Adapter answering with a fixed price after an optional delay."""

    chains = frozenset({1})
    DEFAULT_RATE_LIMIT = 1000.0
    DEFAULT_BURST = 1000

    def __init__(
        self,
        name: str,
        price: str = "100",
        delay: float = 0.0,
        error: Exception | None = None,
        source_class: str = "centralized",
    ) -> None:
        self.name = name
        self.source_class = source_class
        super().__init__()
        self.price = Decimal(price)
        self.delay = delay
        self.error = error
        self.calls = 0

    async def _fetch_quote(self, pair: TokenPair, requested_at: float) -> RawQuote:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self._raw_quote(pair, QuoteConvention.DIRECT, {"price": self.price}, requested_at)


class CrossChainAdapter(FakeAdapter):
    """Fake adapter pricing tokens of Ethereum and Base against each other."""

    chains = frozenset({1, 8453})
    supports_cross_chain = True


def make_observation(
    source: str,
    price: str,
    pair: TokenPair | None = None,
    observed_at: float = 1_700_000_000.0,
    confidence: str = "1",
) -> PriceObservation:
    """Build an observation for reconciliation tests."""
    return PriceObservation(
        source_id=source,
        token_pair=pair or TokenPair(WETH, USDC),
        price=Decimal(price),
        observed_at=observed_at,
        latency=0.1,
        confidence_hint=Decimal(confidence),
    )


@pytest.fixture
def weth_usdc() -> TokenPair:
    return TokenPair(WETH, USDC)


@pytest.fixture
def usdc_usdt() -> TokenPair:
    return TokenPair(USDC, USDT)
