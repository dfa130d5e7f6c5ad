"""EstimatorConfig: Freshness, reconciliation and source weighting policy.

Policies are grouped per pair class: stablecoin pairs tolerate longer cache
windows and need tighter agreement than volatile pairs. Source reliability
weights are configuration with per-source-class defaults, and can be
overridden per source.

.. code-block:: python

    >>> config = EstimatorConfig(source_weights={"zero_x": Decimal("0.5")})
    >>> config.policy_for(pair).fresh_window
    10.0
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Mapping

from .TokenPair import TokenPair

# Default reliability weight per source class.
DEFAULT_SOURCE_CLASS_WEIGHTS: dict[str, Decimal] = {
    "centralized": Decimal("1.0"),
    "dex_aggregator": Decimal("0.8"),
    "onchain": Decimal("0.6"),
}

DEFAULT_STABLE_SYMBOLS = frozenset({"USDC", "USDT", "DAI", "USDC.E", "FDUSD", "PYUSD", "USDE"})

STABLE_PAIR_CLASS = "stable"
DEFAULT_PAIR_CLASS = "default"


@dataclass(frozen=True)
class PairPolicy:
    """Freshness and reconciliation policy for a class of pairs.

    :ivar fresh_window: Seconds an estimate is served without refetching.
    :ivar stale_window: Seconds an estimate may be served when refresh fails.
    :ivar outlier_tolerance: Max relative deviation from the median (fraction).
    :ivar min_sources_for_fresh: Retained sources required for status Fresh.
    :ivar agreement_threshold: Minimum agreement score for status Fresh.
    """

    fresh_window: float = 10.0
    stale_window: float = 120.0
    outlier_tolerance: Decimal = Decimal("0.05")
    min_sources_for_fresh: int = 2
    agreement_threshold: Decimal = Decimal("0.99")

    def __post_init__(self) -> None:
        """Validate the policy.

        :raises ValueError: If parameters are invalid.
        """
        if self.fresh_window <= 0:
            raise ValueError("fresh_window must be positive")
        if self.stale_window < self.fresh_window:
            raise ValueError("stale_window must be at least fresh_window")
        if self.outlier_tolerance <= 0:
            raise ValueError("outlier_tolerance must be positive")
        if self.min_sources_for_fresh < 1:
            raise ValueError("min_sources_for_fresh must be at least 1")
        if not Decimal(0) <= self.agreement_threshold <= Decimal(1):
            raise ValueError("agreement_threshold must be within [0, 1]")


DEFAULT_STABLE_POLICY = PairPolicy(
    fresh_window=30.0,
    stale_window=600.0,
    outlier_tolerance=Decimal("0.01"),
    min_sources_for_fresh=2,
    agreement_threshold=Decimal("0.995"),
)


@dataclass
class EstimatorConfig:
    """Complete estimator configuration.

    :ivar default_policy: Policy for pairs without a more specific class.
    :ivar pair_classes: Policies keyed by pair class name.
    :ivar stable_symbols: Symbols treated as stablecoins (upper case).
    :ivar source_weights: Reliability weight overrides per source id.
    :ivar source_class_weights: Default weights per adapter source class.
    :ivar recency_half_life: Seconds after which an observation weighs half.
    :ivar default_max_wait: Default estimate deadline in seconds.
    :ivar late_result_grace: Extra seconds adapters may run past the deadline.
    :ivar max_history: Observations kept per cache entry.
    :ivar rate_limits: Requests per second per source id.
    """

    default_policy: PairPolicy = field(default_factory=PairPolicy)
    pair_classes: dict[str, PairPolicy] = field(
        default_factory=lambda: {STABLE_PAIR_CLASS: DEFAULT_STABLE_POLICY}
    )
    stable_symbols: frozenset[str] = DEFAULT_STABLE_SYMBOLS
    source_weights: dict[str, Decimal] = field(default_factory=dict)
    source_class_weights: dict[str, Decimal] = field(
        default_factory=lambda: dict(DEFAULT_SOURCE_CLASS_WEIGHTS)
    )
    recency_half_life: float = 30.0
    default_max_wait: float = 3.0
    late_result_grace: float = 2.0
    max_history: int = 32
    rate_limits: dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate the configuration.

        :raises ValueError: If parameters are invalid.
        """
        for source, weight in {**self.source_class_weights, **self.source_weights}.items():
            if weight < 0:
                raise ValueError(f"weight for '{source}' must not be negative")
        if self.recency_half_life <= 0:
            raise ValueError("recency_half_life must be positive")
        if self.default_max_wait <= 0:
            raise ValueError("default_max_wait must be positive")
        if self.late_result_grace < 0:
            raise ValueError("late_result_grace must not be negative")
        if self.max_history < 1:
            raise ValueError("max_history must be at least 1")
        self.stable_symbols = frozenset(s.upper() for s in self.stable_symbols)

    def pair_class(self, pair: TokenPair) -> str:
        """Classify a pair for policy selection.

        :param pair: Token pair.
        :returns: "stable" when both sides are stablecoins, else "default".
        """
        if (
            pair.base.symbol.upper() in self.stable_symbols
            and pair.quote.symbol.upper() in self.stable_symbols
        ):
            return STABLE_PAIR_CLASS
        return DEFAULT_PAIR_CLASS

    def policy_for(self, pair: TokenPair) -> PairPolicy:
        """Return the policy that applies to a pair."""
        return self.pair_classes.get(self.pair_class(pair), self.default_policy)

    def weight_for(self, source_id: str, source_class: str | None = None) -> Decimal:
        """Return the reliability weight of a source.

        :param source_id: Adapter name.
        :param source_class: Adapter source class, used when no override exists.
        :returns: Weight (1.0 when neither override nor class default exists).
        """
        if source_id in self.source_weights:
            return self.source_weights[source_id]
        if source_class is not None and source_class in self.source_class_weights:
            return self.source_class_weights[source_class]
        return Decimal(1)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EstimatorConfig:
        """Build a configuration from environment variables.

        Recognized variables: FRESH_WINDOW, STALE_WINDOW, OUTLIER_TOLERANCE,
        MIN_SOURCES_FOR_FRESH, AGREEMENT_THRESHOLD, STABLE_FRESH_WINDOW,
        STABLE_STALE_WINDOW, STABLE_OUTLIER_TOLERANCE, SOURCE_WEIGHTS
        (``source=weight,...``), RECENCY_HALF_LIFE, MAX_WAIT,
        LATE_RESULT_GRACE, MAX_HISTORY, RATE_LIMITS (``source=rps,...``).

        :param environ: Mapping to read from (default: os.environ).
        :returns: Validated configuration.
        :raises ValueError: If a variable cannot be parsed or is out of range.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(name)
            return value.strip() if value and value.strip() else None

        defaults = PairPolicy()
        default_policy = replace(
            defaults,
            fresh_window=float(get("FRESH_WINDOW") or defaults.fresh_window),
            stale_window=float(get("STALE_WINDOW") or defaults.stale_window),
            outlier_tolerance=_decimal(get("OUTLIER_TOLERANCE") or defaults.outlier_tolerance),
            min_sources_for_fresh=int(
                get("MIN_SOURCES_FOR_FRESH") or defaults.min_sources_for_fresh
            ),
            agreement_threshold=_decimal(
                get("AGREEMENT_THRESHOLD") or defaults.agreement_threshold
            ),
        )
        stable_policy = replace(
            DEFAULT_STABLE_POLICY,
            fresh_window=float(get("STABLE_FRESH_WINDOW") or DEFAULT_STABLE_POLICY.fresh_window),
            stale_window=float(get("STABLE_STALE_WINDOW") or DEFAULT_STABLE_POLICY.stale_window),
            outlier_tolerance=_decimal(
                get("STABLE_OUTLIER_TOLERANCE") or DEFAULT_STABLE_POLICY.outlier_tolerance
            ),
            min_sources_for_fresh=default_policy.min_sources_for_fresh,
        )

        return cls(
            default_policy=default_policy,
            pair_classes={STABLE_PAIR_CLASS: stable_policy},
            source_weights=parse_source_weights(get("SOURCE_WEIGHTS")),
            recency_half_life=float(get("RECENCY_HALF_LIFE") or 30.0),
            default_max_wait=float(get("MAX_WAIT") or 3.0),
            late_result_grace=float(get("LATE_RESULT_GRACE") or 2.0),
            max_history=int(get("MAX_HISTORY") or 32),
            rate_limits={
                k: float(v) for k, v in parse_key_values(get("RATE_LIMITS")).items()
            },
        )


def _decimal(value: str | Decimal) -> Decimal:
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValueError(f"Invalid decimal value: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"Invalid decimal value: {value!r}")
    return result


def parse_slippage(value: str | Decimal) -> Decimal:
    """Parse a slippage tolerance in percent.

    :raises ValueError: If the value is not a number between 0 and 100.
    """
    slippage = _decimal(value)
    if not Decimal(0) <= slippage <= Decimal(100):
        raise ValueError(f"Slippage must be between 0 and 100 percent: {value!r}")
    return slippage


def parse_key_values(value: str | None) -> dict[str, str]:
    """Parse a comma-separated ``key=value`` string into a dictionary.

    Keys are lowercased; items without "=" are ignored.

    :param value: String like "defillama=1.0,zero_x=0.8".
    :returns: Dict mapping keys to raw values.
    """
    if not value:
        return {}

    result = {}
    for item in value.split(","):
        item = item.strip()
        if "=" in item:
            key, val = item.split("=", 1)
            result[key.strip().lower()] = val.strip()
    return result


def parse_api_keys(api_key_str: str | None) -> dict[str, str]:
    """Parse comma-separated API key string into a dictionary.

    Format: source1=key1,source2=key2
    Example: zero_x=abc123,coingecko=demo:CG-xyz

    :param api_key_str: Comma-separated API key string.
    :returns: Dict mapping source names to API keys.
    """
    return parse_key_values(api_key_str)


def parse_env_api_keys(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Parse API keys from individual environment variables.

    Looks for: API_KEY_ZERO_X, API_KEY_COINGECKO, etc.

    :param environ: Mapping to read from (default: os.environ).
    :returns: Dict mapping source names to API keys.
    """
    env = os.environ if environ is None else environ
    api_keys = {}
    prefixes = ["API_KEY_", "APIKEY_"]

    for key, value in env.items():
        for prefix in prefixes:
            if key.startswith(prefix) and value:
                source = key[len(prefix):].lower()
                api_keys[source] = value
                break

    return api_keys


def parse_rpc_urls(value: str | None) -> dict[int, str]:
    """Parse JSON-RPC endpoints per chain.

    :param value: String like "1=https://eth.example,8453=https://base.example".
    :returns: Dict mapping chain ids to URLs.
    :raises ValueError: If a chain id is not an integer.
    """
    result = {}
    for chain, url in parse_key_values(value).items():
        try:
            result[int(chain)] = url
        except ValueError as e:
            raise ValueError(f"Invalid chain id in RPC URLs: {chain!r}") from e
    return result


def parse_source_weights(value: str | None) -> dict[str, Decimal]:
    """Parse source weight overrides.

    :param value: String like "defillama=1.0,uniswap_v2=0.5".
    :returns: Dict mapping source ids to Decimal weights.
    :raises ValueError: If a weight is not a valid decimal.
    """
    return {k: _decimal(v) for k, v in parse_key_values(value).items()}
