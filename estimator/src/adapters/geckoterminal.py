"""GeckoTerminal adapter.

Endpoint: https://api.geckoterminal.com/api/v2/simple/networks/{network}/token_price/{addrs}
Rate Limit: 30 calls/min (no key required)
Prices are derived from DEX pool activity, so they track on-chain liquidity.
"""

import logging
from decimal import Decimal

from ..PriceObservation import QuoteConvention, RawQuote
from ..TokenPair import TokenDescriptor, TokenPair
from .base import MalformedResponse, SourceAdapter, UnsupportedPair, register_adapter

logger = logging.getLogger(__name__)


@register_adapter
class GeckoTerminalAdapter(SourceAdapter):
    """Adapter for GeckoTerminal DEX-aggregated token prices.

    Native tokens are priced through their wrapped counterpart. Tokens on
    the same network share one request; cross-chain pairs need one request
    per network.
    """

    name = "geckoterminal"
    source_class = "dex_aggregator"
    supports_cross_chain = True
    BASE_URL = "https://api.geckoterminal.com/api/v2"

    DEFAULT_RATE_LIMIT = 0.5
    DEFAULT_BURST = 2

    NETWORKS = {
        1: "eth",
        10: "optimism",
        56: "bsc",
        8453: "base",
        42161: "arbitrum",
    }

    WRAPPED_NATIVE = {
        1: "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2",
        10: "0x4200000000000000000000000000000000000006",
        56: "0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c",
        8453: "0x4200000000000000000000000000000000000006",
        42161: "0x82af49447d8a07e3bd95bd0d56f35241523fbab1",
    }

    chains = frozenset(NETWORKS)

    def _lookup_address(self, token: TokenDescriptor) -> str:
        if token.is_native:
            return self.WRAPPED_NATIVE[token.chain_id]
        return token.address

    def requests_for(self, pair: TokenPair) -> int:
        return 2 if pair.is_cross_chain else 1

    async def _network_prices(self, chain_id: int, addresses: list[str]) -> dict:
        """Fetch USD prices of tokens on one network, keyed by lowercase address."""
        network = self.NETWORKS[chain_id]
        url = f"{self.BASE_URL}/simple/networks/{network}/token_price/{','.join(addresses)}"

        response = await self._get(url, headers={"accept": "application/json"})
        data = self._json(response)
        try:
            token_prices = data["data"]["attributes"]["token_prices"]
            return {k.lower(): v for k, v in token_prices.items()}
        except (KeyError, TypeError, AttributeError) as e:
            logger.debug(f"[geckoterminal] Unexpected response for {network}: {data}")
            raise MalformedResponse(self.name, f"Unexpected response for {network}: {e}") from e

    async def _fetch_quote(self, pair: TokenPair, requested_at: float) -> RawQuote:
        base_addr = self._lookup_address(pair.base)
        quote_addr = self._lookup_address(pair.quote)

        if pair.is_cross_chain:
            base_prices = await self._network_prices(pair.base.chain_id, [base_addr])
            quote_prices = await self._network_prices(pair.quote.chain_id, [quote_addr])
        else:
            base_prices = await self._network_prices(pair.base.chain_id, [base_addr, quote_addr])
            quote_prices = base_prices

        # Unknown tokens come back missing or null
        unlisted = [
            token.key
            for token, prices, address in (
                (pair.base, base_prices, base_addr),
                (pair.quote, quote_prices, quote_addr),
            )
            if prices.get(address) is None
        ]
        if unlisted:
            raise UnsupportedPair(self.name, pair, f"not listed: {', '.join(unlisted)}")

        try:
            base_usd = Decimal(base_prices[base_addr])
            quote_usd = Decimal(quote_prices[quote_addr])
        except (TypeError, ArithmeticError, ValueError) as e:
            raise MalformedResponse(self.name, f"Invalid price for {pair}: {e}") from e

        payload = base_prices if base_prices is quote_prices else {
            "base": base_prices,
            "quote": quote_prices,
        }
        return self._raw_quote(
            pair,
            QuoteConvention.USD_PRICES,
            {"base_usd": base_usd, "quote_usd": quote_usd},
            requested_at,
            payload=payload,
        )
