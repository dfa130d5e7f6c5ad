#!/usr/bin/env python3
"""Swap Estimator.

Estimates the price of a token pair, or the output of a swap, by querying
multiple price sources and reconciling their answers. Prints the estimate as
JSON.

Configure with CLI args or env vars (see --help).
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from decimal import Decimal

from .src.EstimatorConfig import (
    EstimatorConfig,
    parse_api_keys,
    parse_env_api_keys,
    parse_rpc_urls,
    parse_slippage,
)
from .src.PriceEstimate import TradeType
from .src.PriceEstimator import PriceEstimator
from .src.TokenResolver import (
    DEFAULT_TOKENS,
    OnchainTokenResolver,
    StaticTokenResolver,
    TokenResolver,
    UnknownToken,
)
from .src.adapters import SourceAdapter, get_adapter, get_available_adapters

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def build_adapters(
    sources: list[str],
    api_keys: dict[str, str],
    config: EstimatorConfig,
    rpc_urls: dict[int, str],
) -> list[SourceAdapter]:
    """Create one adapter per source name.

    :param sources: Source names (must be registered).
    :param api_keys: Dict mapping source names to API keys.
    :param config: Configuration providing per-source rate limits.
    :param rpc_urls: JSON-RPC endpoints for on-chain adapters.
    :returns: Adapter instances in source order.
    """
    adapters = []
    for source in sources:
        options: dict = {"rate_limit": config.rate_limits.get(source)}
        if source == "uniswap_v2" and rpc_urls:
            options["rpc_urls"] = rpc_urls
        adapters.append(get_adapter(source, api_key=api_keys.get(source), **options))
    return adapters


async def run(
    estimator: PriceEstimator,
    chain_id: int,
    base: str,
    quote: str,
    max_wait: float | None,
    amount: int | None = None,
    *,
    trade_type: TradeType = TradeType.EXACT_IN,
    slippage: Decimal | None = None,
    quote_chain_id: int | None = None,
) -> dict:
    """Produce one estimate and return it as a JSON-compatible dict.

    Without an amount this is a price estimate; with one it is a swap
    estimate of the given trade type.
    """
    async with estimator:
        pair = await estimator.resolve_pair(chain_id, base, quote, quote_chain_id)
        if amount is None:
            estimate = await estimator.estimate(pair, max_wait)
            return estimate.to_dict()

        swap = await estimator.estimate_swap(
            pair, amount, max_wait, trade_type=trade_type, slippage=slippage
        )
        return swap.to_dict()


def main() -> None:
    """Main entry point for the Swap Estimator CLI."""
    available_sources = get_available_adapters()

    parser = argparse.ArgumentParser(
        description="Swap Estimator: Reconciled multi-source token prices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available price sources:
  {', '.join(available_sources)}

Examples:
  # WETH/USDC on Ethereum from free sources
  python -m estimator.main --chain 1 --base WETH --quote USDC \\
      --sources defillama,coingecko,geckoterminal

  # Expected USDC output for selling 2.5 WETH, including 0x quotes
  python -m estimator.main --base WETH --quote USDC --amount-in 2500000000000000000 \\
      --sources defillama,zero_x --api-keys zero_x=your-api-key

  # WETH needed to buy 1000 USDC, with the maximum input at 0.5% slippage
  python -m estimator.main --base WETH --quote USDC --amount-out 1000000000 --slippage 0.5

  # Cross-chain: ETH on Ethereum priced in USDC on Base
  python -m estimator.main --chain 1 --base ETH --quote-chain 8453 --quote USDC

  # Tokens by address, resolved on-chain
  python -m estimator.main --chain 8453 --base 0x4200000000000000000000000000000000000006 \\
      --quote USDC --rpc-urls 8453=https://mainnet.base.org

Environment variables (CLI args take precedence):
  CHAIN_ID, QUOTE_CHAIN_ID, BASE, QUOTE, SOURCES, MAX_WAIT, SLIPPAGE, RPC_URLS, API_KEYS,
  API_KEY_ZERO_X, API_KEY_COINGECKO, FRESH_WINDOW, STALE_WINDOW,
  OUTLIER_TOLERANCE, MIN_SOURCES_FOR_FRESH, AGREEMENT_THRESHOLD,
  SOURCE_WEIGHTS, RATE_LIMITS, etc.
""",
    )

    parser.add_argument(
        "--chain",
        type=int,
        help="Chain id both tokens live on (default: 1)",
        default=int(os.environ.get("CHAIN_ID") or "1"),
    )

    parser.add_argument(
        "--base",
        type=str,
        help="Base token symbol or address (default: WETH)",
        default=os.environ.get("BASE") or "WETH",
    )

    parser.add_argument(
        "--quote",
        type=str,
        help="Quote token symbol or address (default: USDC)",
        default=os.environ.get("QUOTE") or "USDC",
    )

    parser.add_argument(
        "--sources",
        type=str,
        help=f"Comma-separated price sources. Available: {', '.join(available_sources)}",
        default=os.environ.get("SOURCES") or "defillama,coingecko,geckoterminal",
    )

    parser.add_argument(
        "--max-wait",
        dest="max_wait",
        type=float,
        help="Maximum seconds to wait for sources (default: MAX_WAIT or 3.0)",
        default=None,
    )

    parser.add_argument(
        "--quote-chain",
        dest="quote_chain",
        type=int,
        help="Chain id of the quote token for cross-chain pairs (default: --chain)",
        default=os.environ.get("QUOTE_CHAIN_ID") or None,
    )

    amount_group = parser.add_mutually_exclusive_group()
    amount_group.add_argument(
        "--amount-in",
        dest="amount_in",
        type=int,
        help="Estimate the output of selling this many raw base units",
        default=None,
    )
    amount_group.add_argument(
        "--amount-out",
        dest="amount_out",
        type=int,
        help="Estimate the input needed to buy this many raw quote units",
        default=None,
    )

    parser.add_argument(
        "--slippage",
        type=parse_slippage,
        help="Slippage tolerance in percent; adds the minimum output or maximum input",
        default=os.environ.get("SLIPPAGE") or None,
    )

    parser.add_argument(
        "--api-keys",
        dest="api_keys",
        type=str,
        help="Comma-separated API keys (e.g., zero_x=abc,coingecko=demo:xyz)",
        default=os.environ.get("API_KEYS"),
    )

    parser.add_argument(
        "--rpc-urls",
        dest="rpc_urls",
        type=str,
        help="Comma-separated JSON-RPC URLs per chain (e.g., 1=https://...)",
        default=os.environ.get("RPC_URLS"),
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Validate arguments
    if args.max_wait is not None and args.max_wait < 0:
        parser.error("--max-wait must not be negative")

    if args.amount_in is not None and args.amount_in < 0:
        parser.error("--amount-in must not be negative")

    if args.amount_out is not None and args.amount_out < 0:
        parser.error("--amount-out must not be negative")

    if args.amount_out is not None:
        trade_type, amount = TradeType.EXACT_OUT, args.amount_out
    else:
        trade_type, amount = TradeType.EXACT_IN, args.amount_in

    if args.slippage is not None and amount is None:
        parser.error("--slippage requires --amount-in or --amount-out")

    sources = [s.strip().lower() for s in args.sources.split(",") if s.strip()]
    if not sources:
        parser.error("At least one source must be specified")

    invalid_sources = [s for s in sources if s not in available_sources]
    if invalid_sources:
        parser.error(
            f"Unknown sources: {invalid_sources}. "
            f"Available: {', '.join(available_sources)}"
        )

    try:
        config = EstimatorConfig.from_env()
        rpc_urls = parse_rpc_urls(args.rpc_urls)
    except ValueError as e:
        parser.error(str(e))

    # Parse API keys (CLI + environment)
    api_keys = parse_env_api_keys()
    api_keys.update(parse_api_keys(args.api_keys))

    resolver: TokenResolver = StaticTokenResolver(DEFAULT_TOKENS)
    if rpc_urls:
        resolver = OnchainTokenResolver(rpc_urls, fallback=resolver)

    logger.debug(f"Chain: {args.chain}, pair: {args.base}/{args.quote}, sources: {sources}")
    if api_keys:
        logger.debug(f"API Keys: {', '.join(api_keys.keys())}")

    try:
        estimator = PriceEstimator(
            build_adapters(sources, api_keys, config, rpc_urls),
            config=config,
            resolver=resolver,
        )
        result = asyncio.run(
            run(
                estimator,
                args.chain,
                args.base,
                args.quote,
                args.max_wait,
                amount,
                trade_type=trade_type,
                slippage=args.slippage,
                quote_chain_id=args.quote_chain,
            )
        )
    except UnknownToken as e:
        logger.error(str(e))
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)

    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
