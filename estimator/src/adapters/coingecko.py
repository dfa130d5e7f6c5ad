"""CoinGecko adapter.

Endpoints:
    /simple/token_price/{platform}?contract_addresses={addrs}&vs_currencies=usd
    /simple/price?ids={coin_id}&vs_currencies=usd (native tokens)
Rate Limit: 30 calls/min (free), higher with API key
"""

import logging
from decimal import Decimal

from ..PriceObservation import QuoteConvention, RawQuote
from ..TokenPair import TokenDescriptor, TokenPair
from .base import MalformedResponse, SourceAdapter, UnsupportedPair, register_adapter

logger = logging.getLogger(__name__)


@register_adapter
class CoinGeckoAdapter(SourceAdapter):
    """Adapter for the CoinGecko API.

    API tiers:
        - Free: api.coingecko.com (no key, 30 calls/min)
        - Demo: api.coingecko.com + x-cg-demo-api-key header
        - Pro: pro-api.coingecko.com + x-cg-pro-api-key header

    To use a demo key, prefix with "demo:": API_KEY_COINGECKO=demo:CG-xxxxx
    Pro keys need no prefix: API_KEY_COINGECKO=xxxxx
    """

    name = "coingecko"
    source_class = "centralized"
    BASE_URL_FREE = "https://api.coingecko.com/api/v3"
    BASE_URL_PRO = "https://pro-api.coingecko.com/api/v3"

    DEFAULT_RATE_LIMIT = 0.5
    DEFAULT_BURST = 2

    # Asset platform ids per chain
    PLATFORM_IDS = {
        1: "ethereum",
        10: "optimistic-ethereum",
        56: "binance-smart-chain",
        8453: "base",
        42161: "arbitrum-one",
    }

    # Coin ids of native gas tokens per chain
    NATIVE_COIN_IDS = {
        1: "ethereum",
        10: "ethereum",
        56: "binancecoin",
        8453: "ethereum",
        42161: "ethereum",
    }

    chains = frozenset(PLATFORM_IDS)
    supports_cross_chain = True

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float | None = None,
        rate_limit: float | None = None,
    ):
        """Initialize with optional demo: prefix handling."""
        self._is_demo = False
        if api_key and api_key.lower().startswith("demo:"):
            self._is_demo = True
            api_key = api_key[5:]  # Strip "demo:" prefix
        super().__init__(api_key=api_key, timeout=timeout, rate_limit=rate_limit)

    @property
    def base_url(self) -> str:
        """Return appropriate base URL based on API key type."""
        if not self.has_api_key:
            return self.BASE_URL_FREE
        # Demo keys use free URL, pro keys use pro URL
        return self.BASE_URL_FREE if self._is_demo else self.BASE_URL_PRO

    @property
    def api_headers(self) -> dict[str, str] | None:
        """Return the API key header, if a key is configured."""
        if not self.api_key:
            return None
        header_name = "x-cg-demo-api-key" if self._is_demo else "x-cg-pro-api-key"
        return {header_name: self.api_key}

    def _lookups(self, pair: TokenPair) -> dict[tuple[str, str], list[TokenDescriptor]]:
        """Group the pair's tokens by request.

        Native tokens share one ``/simple/price`` request; contract tokens share
        one ``/simple/token_price`` request per platform.
        """
        groups: dict[tuple[str, str], list[TokenDescriptor]] = {}
        for token in (pair.base, pair.quote):
            if token.is_native:
                key = ("native", "")
            else:
                key = ("platform", self.PLATFORM_IDS[token.chain_id])
            groups.setdefault(key, []).append(token)
        return groups

    def requests_for(self, pair: TokenPair) -> int:
        return len(self._lookups(pair))

    async def _request(self, kind: str, platform: str, tokens: list[TokenDescriptor]) -> dict:
        """Issue one lookup and return the USD entries keyed by token key."""
        if kind == "native":
            coin_ids = {token.key: self.NATIVE_COIN_IDS[token.chain_id] for token in tokens}
            response = await self._get(
                f"{self.base_url}/simple/price",
                params={"ids": ",".join(sorted(set(coin_ids.values()))), "vs_currencies": "usd"},
                headers=self.api_headers,
            )
            data = self._json(response)
            if not isinstance(data, dict):
                raise MalformedResponse(self.name, f"Unexpected response: {data!r}")
            return {key: data.get(coin_id) for key, coin_id in coin_ids.items()}

        addresses = sorted({token.address for token in tokens})
        response = await self._get(
            f"{self.base_url}/simple/token_price/{platform}",
            params={"contract_addresses": ",".join(addresses), "vs_currencies": "usd"},
            headers=self.api_headers,
        )
        data = self._json(response)
        if not isinstance(data, dict):
            raise MalformedResponse(self.name, f"Unexpected response: {data!r}")
        # Response keys are lowercase addresses
        entries = {k.lower(): v for k, v in data.items()}
        return {token.key: entries.get(token.address) for token in tokens}

    async def _fetch_quote(self, pair: TokenPair, requested_at: float) -> RawQuote:
        entries: dict[str, dict | None] = {}
        for (kind, platform), tokens in self._lookups(pair).items():
            entries.update(await self._request(kind, platform, tokens))

        unlisted = [
            key for key in (pair.base.key, pair.quote.key)
            if not isinstance(entries.get(key), dict) or "usd" not in entries[key]
        ]
        if unlisted:
            logger.debug(f"[coingecko] No USD price for {unlisted}: {entries}")
            raise UnsupportedPair(self.name, pair, f"no USD price for {', '.join(unlisted)}")

        try:
            base_usd = Decimal(entries[pair.base.key]["usd"])
            quote_usd = Decimal(entries[pair.quote.key]["usd"])
        except (ArithmeticError, TypeError, ValueError) as e:
            raise MalformedResponse(self.name, f"Invalid price for {pair}: {e}") from e

        return self._raw_quote(
            pair,
            QuoteConvention.USD_PRICES,
            {"base_usd": base_usd, "quote_usd": quote_usd},
            requested_at,
            payload={"base": entries[pair.base.key], "quote": entries[pair.quote.key]},
        )
