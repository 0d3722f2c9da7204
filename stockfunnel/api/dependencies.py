"""API dependencies: store, providers and pipeline engines.

Each dependency can be replaced with ``app.dependency_overrides`` in tests.
"""

from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from stockfunnel.core.rate_limiter import RateLimiter
from stockfunnel.pipeline.orchestrator import PipelineOrchestrator
from stockfunnel.pipeline.rebalance import RebalanceEngine
from stockfunnel.providers.base import MarketDataProvider, QualitativeAnalysisProvider
from stockfunnel.repositories.protocols import PipelineStore


__all__ = [
    "get_analysis_provider",
    "get_market_data",
    "get_orchestrator",
    "get_rate_limiter",
    "get_rebalance_engine",
    "get_store",
]


def get_store() -> PipelineStore:
    from stockfunnel.repositories.store import OrmPipelineStore

    return OrmPipelineStore()


@lru_cache
def get_rate_limiter() -> RateLimiter:
    """Process-wide yfinance limiter so concurrent requests share one token bucket."""
    return RateLimiter.from_settings()


@lru_cache
def get_market_data() -> MarketDataProvider:
    from stockfunnel.providers.yfinance_provider import YFinanceMarketData

    return YFinanceMarketData(rate_limiter=get_rate_limiter())


@lru_cache
def get_analysis_provider() -> QualitativeAnalysisProvider:
    from stockfunnel.providers.openai_provider import OpenAIAnalysisProvider

    return OpenAIAnalysisProvider()


def get_orchestrator(
    store: PipelineStore = Depends(get_store),
    market_data: MarketDataProvider = Depends(get_market_data),
    analysis: QualitativeAnalysisProvider = Depends(get_analysis_provider),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> PipelineOrchestrator:
    return PipelineOrchestrator.build(store, market_data, analysis, rate_limiter=rate_limiter)


def get_rebalance_engine(
    store: PipelineStore = Depends(get_store),
    market_data: MarketDataProvider = Depends(get_market_data),
    analysis: QualitativeAnalysisProvider = Depends(get_analysis_provider),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> RebalanceEngine:
    return RebalanceEngine.build(store, market_data, analysis, rate_limiter=rate_limiter)
