#!/usr/bin/env python3
"""Run a portfolio construction or a monthly review from the command line.

Examples:
    python run_pipeline.py construct --strategy value --capital 100000
    python run_pipeline.py construct --tickers AAPL,MSFT,JNJ --holdings 2
    python run_pipeline.py rebalance <portfolio-id> --execute
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from stockfunnel.core.exceptions import AppException
from stockfunnel.core.logging import get_logger, setup_logging
from stockfunnel.core.rate_limiter import RateLimiter


logger = get_logger("cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stock funnel pipeline runner")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    parser.add_argument("--log-format", choices=["json", "text"], default="text")
    sub = parser.add_subparsers(dest="command", required=True)

    construct = sub.add_parser("construct", help="Build a new portfolio")
    construct.add_argument("--strategy", choices=["value", "growth", "balanced"], default="balanced")
    construct.add_argument("--capital", type=float, default=100_000.0)
    construct.add_argument("--holdings", type=int, default=12, help="Target number of holdings")
    construct.add_argument("--min-conviction", type=int, default=50)
    construct.add_argument("--name", default=None, help="Portfolio name")
    construct.add_argument(
        "--tickers",
        default=None,
        help="Comma-separated universe (defaults to the bundled S&P 500 list)",
    )

    rebalance = sub.add_parser("rebalance", help="Review an existing portfolio")
    rebalance.add_argument("portfolio_id")
    rebalance.add_argument("--execute", action="store_true", help="Apply the proposed trades")
    rebalance.add_argument(
        "--no-new-candidates",
        action="store_true",
        help="Skip screening the universe for replacements",
    )
    rebalance.add_argument("--max-turnover", type=float, default=20.0)

    return parser


async def _construct(args: argparse.Namespace) -> dict:
    from stockfunnel.pipeline.orchestrator import PipelineOrchestrator
    from stockfunnel.providers.openai_provider import OpenAIAnalysisProvider
    from stockfunnel.providers.yfinance_provider import YFinanceMarketData
    from stockfunnel.repositories.store import OrmPipelineStore

    config = {
        "strategy": args.strategy,
        "initial_capital": args.capital,
        "target_holdings": args.holdings,
        "tier3_min_conviction": args.min_conviction,
        "portfolio_name": args.name,
    }
    if args.tickers:
        config["universe"] = [t.strip().upper() for t in args.tickers.split(",") if t.strip()]

    limiter = RateLimiter.from_settings()
    orchestrator = PipelineOrchestrator.build(
        OrmPipelineStore(),
        YFinanceMarketData(rate_limiter=limiter),
        OpenAIAnalysisProvider(),
        rate_limiter=limiter,
    )
    result = await orchestrator.construct(config)
    return result.model_dump(mode="json", exclude={"tier1", "tier2"})


async def _rebalance(args: argparse.Namespace) -> dict:
    from stockfunnel.pipeline.rebalance import RebalanceEngine
    from stockfunnel.pipeline.schemas import RebalanceConfig
    from stockfunnel.providers.openai_provider import OpenAIAnalysisProvider
    from stockfunnel.providers.yfinance_provider import YFinanceMarketData
    from stockfunnel.repositories.store import OrmPipelineStore

    config = RebalanceConfig(
        execute=args.execute,
        screen_new_candidates=not args.no_new_candidates,
        max_turnover_pct=args.max_turnover,
    )
    limiter = RateLimiter.from_settings()
    engine = RebalanceEngine.build(
        OrmPipelineStore(),
        YFinanceMarketData(rate_limiter=limiter),
        OpenAIAnalysisProvider(),
        rate_limiter=limiter,
    )
    result = await engine.rebalance(args.portfolio_id, config)
    return result.model_dump(mode="json")


async def main(args: argparse.Namespace) -> int:
    from stockfunnel.database.connection import (
        close_sqlalchemy_engine,
        init_schema,
        init_sqlalchemy_engine,
    )

    await init_sqlalchemy_engine()
    await init_schema()
    try:
        if args.command == "construct":
            output = await _construct(args)
        else:
            output = await _rebalance(args)
    except AppException as e:
        logger.error(f"{args.command} failed: {e.message}")
        print(json.dumps(e.to_dict(), indent=2))
        return 1
    finally:
        await close_sqlalchemy_engine()

    print(json.dumps(output, indent=2, default=str))
    return 0 if output.get("status") == "completed" else 1


if __name__ == "__main__":
    args = build_parser().parse_args()
    setup_logging(level=args.log_level, fmt=args.log_format)
    sys.exit(asyncio.run(main(args)))
