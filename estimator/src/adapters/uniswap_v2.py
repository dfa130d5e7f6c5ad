"""Uniswap V2 on-chain reserves adapter.

Reads ``token0()`` and ``getReserves()`` of a configured pair contract over
JSON-RPC. The spot price is the reserve ratio, so it reflects on-chain
liquidity without any off-chain service in between.
"""

import asyncio
import logging

from web3 import Web3
from web3.exceptions import Web3Exception

from ..PriceObservation import QuoteConvention, RawQuote
from ..TokenPair import TokenPair, normalize_address
from .base import MalformedResponse, SourceAdapter, TransportError, register_adapter

logger = logging.getLogger(__name__)

# Minimal Uniswap V2 pair ABI
PAIR_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "getReserves",
        "outputs": [
            {"name": "_reserve0", "type": "uint112"},
            {"name": "_reserve1", "type": "uint112"},
            {"name": "_blockTimestampLast", "type": "uint32"},
        ],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "token0",
        "outputs": [{"name": "", "type": "address"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "token1",
        "outputs": [{"name": "", "type": "address"}],
        "type": "function",
    },
]

DEFAULT_RPC_URLS = {
    1: "https://ethereum-rpc.publicnode.com",
}

_WETH = "1:0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"

# Pair contracts keyed by the unordered "chain:address" keys of their tokens
DEFAULT_POOLS: dict[frozenset[str], str] = {
    frozenset({_WETH, "1:0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"}): (
        "0xB4e16d0168e52d35CaCD2c6185b44281Ec28C9Dc"  # USDC/WETH
    ),
    frozenset({_WETH, "1:0xdac17f958d2ee523a2206206994597c13d831ec7"}): (
        "0x0d4a11d5EEaaC28EC3F61d100daF4d40471f1852"  # WETH/USDT
    ),
    frozenset({_WETH, "1:0x6b175474e89094c44da98b954eedeac495271d0f"}): (
        "0xA478c2975Ab1Ea89e8196811F51A7B7Ade33eB11"  # DAI/WETH
    ),
}


@register_adapter
class UniswapV2Adapter(SourceAdapter):
    """Adapter reading spot prices from Uniswap V2 style pair contracts.

    :ivar rpc_urls: Dict mapping chain ids to JSON-RPC URLs.
    :ivar pools: Dict mapping unordered token key pairs to pair contracts.
    """

    name = "uniswap_v2"
    source_class = "onchain"

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float | None = None,
        rate_limit: float | None = None,
        rpc_urls: dict[int, str] | None = None,
        pools: dict[frozenset[str], str] | None = None,
    ) -> None:
        super().__init__(api_key=api_key, timeout=timeout, rate_limit=rate_limit)
        self.rpc_urls = dict(DEFAULT_RPC_URLS if rpc_urls is None else rpc_urls)
        self.pools = dict(DEFAULT_POOLS if pools is None else pools)
        self._web3_cache: dict[int, Web3] = {}

    @property
    def chains(self) -> frozenset[int]:  # type: ignore[override]
        return frozenset(self.rpc_urls)

    def pool_for(self, pair: TokenPair) -> str | None:
        """Return the pair contract configured for a token pair, if any."""
        return self.pools.get(frozenset({pair.base.key, pair.quote.key}))

    def supports_pair(self, pair: TokenPair) -> bool:
        return super().supports_pair(pair) and self.pool_for(pair) is not None

    def _get_web3(self, chain_id: int) -> Web3:
        """Get or create a Web3 instance for a chain."""
        if chain_id not in self._web3_cache:
            self._web3_cache[chain_id] = Web3(
                Web3.HTTPProvider(
                    self.rpc_urls[chain_id],
                    request_kwargs={"timeout": self.timeout},
                )
            )
        return self._web3_cache[chain_id]

    def _read_pool(self, chain_id: int, pool_address: str) -> tuple[str, str, int, int]:
        """Read token addresses and reserves of a pair contract (blocking).

        :returns: (token0, token1, reserve0, reserve1).
        """
        w3 = self._get_web3(chain_id)
        contract = w3.eth.contract(address=Web3.to_checksum_address(pool_address), abi=PAIR_ABI)
        token0 = contract.functions.token0().call()
        token1 = contract.functions.token1().call()
        reserve0, reserve1, _ = contract.functions.getReserves().call()
        return token0, token1, int(reserve0), int(reserve1)

    async def _fetch_quote(self, pair: TokenPair, requested_at: float) -> RawQuote:
        chain_id = pair.base.chain_id
        pool_address = self.pool_for(pair)

        loop = asyncio.get_running_loop()
        try:
            token0, token1, reserve0, reserve1 = await loop.run_in_executor(
                None, self._read_pool, chain_id, pool_address
            )
        except (Web3Exception, OSError) as e:
            raise TransportError(self.name, f"RPC call to {pool_address} failed: {e}") from e
        except (ValueError, TypeError) as e:
            raise MalformedResponse(self.name, f"Unexpected pool data from {pool_address}: {e}") from e

        token0 = normalize_address(token0)
        token1 = normalize_address(token1)
        if token0 == pair.base.address:
            reserve_base, reserve_quote, base_token, quote_token = reserve0, reserve1, token0, token1
        else:
            reserve_base, reserve_quote, base_token, quote_token = reserve1, reserve0, token1, token0

        logger.debug(
            f"[uniswap_v2] {pool_address} reserves for {pair}: "
            f"base={reserve_base} quote={reserve_quote}"
        )

        return self._raw_quote(
            pair,
            QuoteConvention.RESERVES,
            {"reserve_base": reserve_base, "reserve_quote": reserve_quote},
            requested_at,
            payload={"pool": pool_address, "reserve0": reserve0, "reserve1": reserve1},
            base_key=f"{chain_id}:{base_token}",
            quote_key=f"{chain_id}:{quote_token}",
        )
