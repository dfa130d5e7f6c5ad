"""TokenResolver: Canonical token identity lookup.

Maps ``(chain_id, address_or_symbol)`` to a :class:`TokenDescriptor`. The
estimator consumes resolvers read-only and synchronously, before any source
is queried. Resolution failures raise :class:`UnknownToken`, which is the only
error that reaches estimator callers.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Iterable

from web3 import Web3
from web3.exceptions import Web3Exception

from .TokenPair import NATIVE_TOKEN_ADDRESS, TokenDescriptor, normalize_address

logger = logging.getLogger(__name__)

# Minimal ERC20 ABI for identity lookups
ERC20_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
]


# Well-known tokens served without on-chain lookups
DEFAULT_TOKENS = [
    TokenDescriptor(1, NATIVE_TOKEN_ADDRESS, 18, "ETH"),
    TokenDescriptor(1, "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", 18, "WETH"),
    TokenDescriptor(1, "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", 6, "USDC"),
    TokenDescriptor(1, "0xdAC17F958D2ee523a2206206994597C13D831ec7", 6, "USDT"),
    TokenDescriptor(1, "0x6B175474E89094C44Da98b954EedeAC495271d0F", 18, "DAI"),
    TokenDescriptor(1, "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599", 8, "WBTC"),
    TokenDescriptor(10, NATIVE_TOKEN_ADDRESS, 18, "ETH"),
    TokenDescriptor(10, "0x4200000000000000000000000000000000000006", 18, "WETH"),
    TokenDescriptor(10, "0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85", 6, "USDC"),
    TokenDescriptor(56, NATIVE_TOKEN_ADDRESS, 18, "BNB"),
    TokenDescriptor(56, "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c", 18, "WBNB"),
    TokenDescriptor(56, "0x55d398326f99059fF775485246999027B3197955", 18, "USDT"),
    TokenDescriptor(8453, NATIVE_TOKEN_ADDRESS, 18, "ETH"),
    TokenDescriptor(8453, "0x4200000000000000000000000000000000000006", 18, "WETH"),
    TokenDescriptor(8453, "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", 6, "USDC"),
    TokenDescriptor(42161, NATIVE_TOKEN_ADDRESS, 18, "ETH"),
    TokenDescriptor(42161, "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1", 18, "WETH"),
    TokenDescriptor(42161, "0xaf88d065e77c8cC2239327C5EDb3A432268e5831", 6, "USDC"),
]


class UnknownToken(Exception):
    """Raised when a token cannot be resolved.

    :ivar chain_id: Chain id that was searched.
    :ivar reference: Address or symbol that was not found.
    """

    def __init__(self, chain_id: int, reference: str):
        self.chain_id = chain_id
        self.reference = reference
        super().__init__(f"Unknown token {reference!r} on chain {chain_id}")


class TokenResolver(ABC):
    """Identity resolver contract."""

    @abstractmethod
    def resolve(self, chain_id: int, address_or_symbol: str) -> TokenDescriptor:
        """Resolve a token reference to its descriptor.

        :param chain_id: Chain id the token lives on.
        :param address_or_symbol: Contract address or symbol.
        :returns: Canonical token descriptor.
        :raises UnknownToken: If the token is not known.
        """


class StaticTokenResolver(TokenResolver):
    """Resolver backed by a fixed list of descriptors.

    Lookups accept either the address (any casing) or the symbol
    (case-insensitive).

    .. code-block:: python

        >>> resolver = StaticTokenResolver([TokenDescriptor(1, NATIVE_TOKEN_ADDRESS, 18, "ETH")])
        >>> resolver.resolve(1, "eth").decimals
        18
    """

    def __init__(self, tokens: Iterable[TokenDescriptor] = ()) -> None:
        self._by_address: dict[tuple[int, str], TokenDescriptor] = {}
        self._by_symbol: dict[tuple[int, str], TokenDescriptor] = {}
        for token in tokens:
            self.add(token)

    def add(self, token: TokenDescriptor) -> None:
        """Register a descriptor.

        :param token: Descriptor to register.
        :raises ValueError: If the address is already registered with
            different decimals.
        """
        key = (token.chain_id, token.address)
        existing = self._by_address.get(key)
        if existing is not None and existing.decimals != token.decimals:
            raise ValueError(
                f"{token.key} already registered with decimals {existing.decimals}"
            )
        self._by_address[key] = token
        if token.symbol:
            self._by_symbol[(token.chain_id, token.symbol.lower())] = token

    def resolve(self, chain_id: int, address_or_symbol: str) -> TokenDescriptor:
        reference = address_or_symbol.strip()
        token = self._by_address.get((chain_id, normalize_address(reference)))
        if token is None:
            token = self._by_symbol.get((chain_id, reference.lower()))
        if token is None:
            raise UnknownToken(chain_id, reference)
        return token


class OnchainTokenResolver(TokenResolver):
    """Resolver that reads ERC20 metadata from the chain.

    Results are memoized, so each token's decimals are read once per process
    and never change afterwards. A fallback resolver is consulted first, which
    allows symbols and native tokens to be served statically.

    :ivar rpc_urls: Dict mapping chain ids to RPC URLs.
    """

    def __init__(
        self,
        rpc_urls: dict[int, str],
        fallback: StaticTokenResolver | None = None,
    ) -> None:
        self.rpc_urls = rpc_urls
        self._fallback = fallback or StaticTokenResolver()
        self._web3_cache: dict[int, Web3] = {}

    def _get_web3(self, chain_id: int) -> Web3:
        if chain_id not in self._web3_cache:
            url = self.rpc_urls.get(chain_id)
            if not url:
                raise UnknownToken(chain_id, "<no rpc url>")
            self._web3_cache[chain_id] = Web3(Web3.HTTPProvider(url))
        return self._web3_cache[chain_id]

    def resolve(self, chain_id: int, address_or_symbol: str) -> TokenDescriptor:
        try:
            return self._fallback.resolve(chain_id, address_or_symbol)
        except UnknownToken:
            pass

        address = normalize_address(address_or_symbol)
        if address == NATIVE_TOKEN_ADDRESS or not Web3.is_address(address):
            raise UnknownToken(chain_id, address_or_symbol)

        w3 = self._get_web3(chain_id)
        contract = w3.eth.contract(address=Web3.to_checksum_address(address), abi=ERC20_ABI)
        try:
            decimals = contract.functions.decimals().call()
            symbol = contract.functions.symbol().call()
        except (Web3Exception, ValueError, OSError) as e:
            logger.warning(f"ERC20 lookup failed for {chain_id}:{address}: {e}")
            raise UnknownToken(chain_id, address_or_symbol) from e

        token = TokenDescriptor(chain_id, address, int(decimals), str(symbol))
        self._fallback.add(token)
        logger.info(f"Resolved {token.key} as {token.symbol} ({token.decimals} decimals)")
        return token
