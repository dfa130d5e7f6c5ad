"""DefiLlama coins API adapter.

Endpoint: https://coins.llama.fi/prices/current/{chain}:{address},{chain}:{address}
Rate Limit: generous (no key required)
Returns USD prices per token together with a confidence score.
"""

import logging
from decimal import Decimal

from ..PriceObservation import QuoteConvention, RawQuote
from ..TokenPair import CHAIN_IDS, NULL_ADDRESS, TokenDescriptor, TokenPair, normalize_address
from .base import MalformedResponse, SourceAdapter, UnsupportedPair, register_adapter

logger = logging.getLogger(__name__)

CHAIN_NAMES = {chain_id: name for name, chain_id in CHAIN_IDS.items()}


@register_adapter
class DefiLlamaAdapter(SourceAdapter):
    """Adapter for the DefiLlama coins API.

    Both tokens are priced in USD in a single request; the normalizer divides
    the two. Native tokens are addressed with the null address. Each token is
    identified by its own chain, so cross-chain pairs are supported.
    """

    name = "defillama"
    source_class = "centralized"
    chains = frozenset(CHAIN_NAMES)
    supports_cross_chain = True
    BASE_URL = "https://coins.llama.fi"

    @staticmethod
    def coin_id(token: TokenDescriptor) -> str:
        """Return the DefiLlama "chain:address" identifier of a token."""
        address = NULL_ADDRESS if token.is_native else token.address
        return f"{CHAIN_NAMES[token.chain_id]}:{address}"

    @staticmethod
    def token_key(coin_id: str) -> str | None:
        """Map a DefiLlama identifier back to a "chain:address" key."""
        chain_name, _, address = coin_id.partition(":")
        chain_id = CHAIN_IDS.get(chain_name.lower())
        if chain_id is None or not address:
            return None
        return f"{chain_id}:{normalize_address(address)}"

    async def _fetch_quote(self, pair: TokenPair, requested_at: float) -> RawQuote:
        base_id = self.coin_id(pair.base)
        quote_id = self.coin_id(pair.quote)
        url = f"{self.BASE_URL}/prices/current/{base_id},{quote_id}"

        response = await self._get(url)
        data = self._json(response)

        try:
            coins = {
                self.token_key(coin_id): coin for coin_id, coin in data["coins"].items()
            }
        except (KeyError, TypeError, AttributeError) as e:
            logger.debug(f"[defillama] Unexpected response for {pair}: {data}")
            raise MalformedResponse(self.name, f"Unexpected response for {pair}: {e}") from e

        # Unlisted tokens are simply absent from "coins"
        unlisted = [t.key for t in (pair.base, pair.quote) if t.key not in coins]
        if unlisted:
            raise UnsupportedPair(self.name, pair, f"not listed: {', '.join(unlisted)}")

        base = coins[pair.base.key]
        quote = coins[pair.quote.key]
        try:
            base_usd = Decimal(base["price"])
            quote_usd = Decimal(quote["price"])
            confidence = min(
                Decimal(base.get("confidence", 1)),
                Decimal(quote.get("confidence", 1)),
            )
        except (KeyError, TypeError, AttributeError, ArithmeticError, ValueError) as e:
            logger.debug(f"[defillama] Unexpected response for {pair}: {data}")
            raise MalformedResponse(self.name, f"Invalid price for {pair}: {e}") from e

        return self._raw_quote(
            pair,
            QuoteConvention.USD_PRICES,
            {"base_usd": base_usd, "quote_usd": quote_usd},
            requested_at,
            confidence=confidence,
            payload=data,
        )
