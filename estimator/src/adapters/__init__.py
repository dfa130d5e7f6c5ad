"""
Price source adapters.

This module provides a unified interface for quoting token pairs from
centralized price services, DEX aggregator APIs and on-chain pools.

Usage:
    from estimator.src.adapters import get_adapter, get_available_adapters

    # Get list of available adapters
    available = get_available_adapters()
    # ['coingecko', 'defillama', 'geckoterminal', 'uniswap_v2', 'zero_x']

    # Create an adapter instance and quote a pair
    adapter = get_adapter("defillama")
    raw_quote = await adapter.fetch(pair, deadline=loop.time() + 3)

    # For adapters requiring API keys
    adapter = get_adapter("zero_x", api_key="your-api-key")
"""

# Import base classes and utilities
from .base import (
    ADAPTER_REGISTRY,
    AdapterError,
    AdapterTimeout,
    MalformedResponse,
    RateLimited,
    RateLimiter,
    SourceAdapter,
    TransportError,
    UnsupportedPair,
    get_adapter,
    get_available_adapters,
    register_adapter,
)

# Import all adapter implementations to trigger registration
from .coingecko import CoinGeckoAdapter
from .defillama import DefiLlamaAdapter
from .geckoterminal import GeckoTerminalAdapter
from .uniswap_v2 import UniswapV2Adapter
from .zero_x import ZeroXAdapter

__all__ = [
    # Base classes
    "SourceAdapter",
    "RateLimiter",
    "AdapterError",
    "AdapterTimeout",
    "RateLimited",
    "UnsupportedPair",
    "TransportError",
    "MalformedResponse",
    # Registry functions
    "register_adapter",
    "get_adapter",
    "get_available_adapters",
    "ADAPTER_REGISTRY",
    # Adapter implementations
    "CoinGeckoAdapter",
    "DefiLlamaAdapter",
    "GeckoTerminalAdapter",
    "UniswapV2Adapter",
    "ZeroXAdapter",
]
