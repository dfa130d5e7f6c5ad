"""0x Swap API adapter.

Endpoint: https://api.0x.org/swap/allowance-holder/price
Requires API key (0x-api-key header).
The indicative price for selling one whole base token is used as the quote.
"""

import logging

from ..PriceObservation import QuoteConvention, RawQuote
from ..TokenPair import NATIVE_TOKEN_ADDRESS, TokenDescriptor, TokenPair, normalize_address
from .base import MalformedResponse, SourceAdapter, UnsupportedPair, register_adapter

logger = logging.getLogger(__name__)


@register_adapter
class ZeroXAdapter(SourceAdapter):
    """Adapter for the 0x Swap API (v2, allowance holder).

    Native tokens are sent as the 0xeeee... marker address.
    """

    name = "zero_x"
    source_class = "dex_aggregator"
    requires_api_key = True
    BASE_URL = "https://api.0x.org"
    API_VERSION = "v2"

    chains = frozenset({1, 10, 56, 8453, 42161})

    @staticmethod
    def token_param(token: TokenDescriptor) -> str:
        return NATIVE_TOKEN_ADDRESS if token.is_native else token.address

    def sell_amount_for(self, pair: TokenPair) -> int:
        """Raw base amount sold for the indicative price (one whole token)."""
        return 10**pair.base.decimals

    async def _fetch_quote(self, pair: TokenPair, requested_at: float) -> RawQuote:
        sell_amount = self.sell_amount_for(pair)
        params = {
            "chainId": pair.base.chain_id,
            "sellToken": self.token_param(pair.base),
            "buyToken": self.token_param(pair.quote),
            "sellAmount": str(sell_amount),
        }
        headers = {"0x-api-key": self.api_key, "0x-version": self.API_VERSION}

        response = await self._get(
            f"{self.BASE_URL}/swap/allowance-holder/price",
            params=params,
            headers=headers,
        )
        data = self._json(response)
        if not isinstance(data, dict):
            raise MalformedResponse(self.name, f"Unexpected response type: {type(data).__name__}")

        if data.get("liquidityAvailable") is False:
            logger.debug(f"[zero_x] No liquidity for {pair}")
            raise UnsupportedPair(self.name, pair, "no liquidity")

        try:
            amount_in = int(data.get("sellAmount", sell_amount))
            amount_out = int(data["buyAmount"])
            sell_token = normalize_address(data.get("sellToken", params["sellToken"]))
            buy_token = normalize_address(data.get("buyToken", params["buyToken"]))
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"[zero_x] Unexpected response for {pair}: {data}")
            raise MalformedResponse(self.name, f"Missing amounts for {pair}: {e}") from e

        chain_id = pair.base.chain_id
        return self._raw_quote(
            pair,
            QuoteConvention.AMOUNTS,
            {"amount_in": amount_in, "amount_out": amount_out},
            requested_at,
            payload=data,
            base_key=f"{chain_id}:{sell_token}",
            quote_key=f"{chain_id}:{buy_token}",
        )
