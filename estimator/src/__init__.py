"""
Swap Estimator - Multi-Source Price Reconciliation Module

This module estimates token prices and swap outputs from multiple sources:
- TokenPair: Token identity and ordered (base, quote) pairs
- TokenResolver: Static and on-chain token identity lookup
- Normalizer: Provider quotes to canonical observations
- PriceAggregator: Concurrent fan-out, outlier filter and weighted reconciliation
- SourceManager: Per-source failure tracking with exponential backoff
- PriceCache: Per-pair estimate cache with freshness windows
- PriceEstimator: Main entry point with request coalescing and fallbacks
- adapters: Modular price source implementations
"""

from .EstimatorConfig import EstimatorConfig, PairPolicy
from .Normalizer import InvalidPrice, MismatchedPair, NormalizationError, normalize
from .PriceAggregator import AggregationResult, NoObservations, PriceAggregator, reconcile
from .PriceCache import CacheEntry, CacheLookup, Freshness, PriceCache
from .PriceEstimate import (
    EstimateStatus,
    PriceEstimate,
    SwapEstimate,
    SwapRequest,
    TradeType,
)
from .PriceEstimator import PriceEstimator
from .PriceObservation import PriceObservation, QuoteConvention, RawQuote
from .SourceManager import SourceManager, SourceHealth
from .TokenPair import NATIVE_TOKEN_ADDRESS, TokenDescriptor, TokenPair
from .TokenResolver import (
    DEFAULT_TOKENS,
    OnchainTokenResolver,
    StaticTokenResolver,
    TokenResolver,
    UnknownToken,
)

__all__ = [
    "AggregationResult",
    "CacheEntry",
    "CacheLookup",
    "DEFAULT_TOKENS",
    "EstimateStatus",
    "EstimatorConfig",
    "Freshness",
    "InvalidPrice",
    "MismatchedPair",
    "NATIVE_TOKEN_ADDRESS",
    "NoObservations",
    "NormalizationError",
    "OnchainTokenResolver",
    "PairPolicy",
    "PriceAggregator",
    "PriceCache",
    "PriceEstimate",
    "PriceEstimator",
    "PriceObservation",
    "QuoteConvention",
    "RawQuote",
    "SourceManager",
    "SourceHealth",
    "StaticTokenResolver",
    "SwapEstimate",
    "SwapRequest",
    "TokenDescriptor",
    "TokenPair",
    "TokenResolver",
    "TradeType",
    "UnknownToken",
    "normalize",
    "reconcile",
]
