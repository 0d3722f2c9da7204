"""
Tier 1 batch screening.

Fetches metrics for a ticker list under bounded concurrency and an injected
rate limiter, scores each one, and filters/ranks the results.
"""

from __future__ import annotations

import asyncio
import math
from typing import Callable, Iterable

from stockfunnel.core.exceptions import DataUnavailable
from stockfunnel.core.logging import get_logger
from stockfunnel.core.rate_limiter import RateLimiter
from stockfunnel.pipeline.schemas import (
    FailedTicker,
    RankedCandidate,
    RankingExclusions,
    RankingResult,
    ScoreResult,
    ScreeningBatch,
    Strategy,
    Tier1Config,
    Tier1Rejections,
    Tier1Result,
)
from stockfunnel.pipeline.scoring import StockScorer
from stockfunnel.providers.base import MarketDataProvider


logger = get_logger("pipeline.screener")

ProgressCallback = Callable[[int, int], None]


class BatchScreener:
    """Scores many tickers concurrently against one market data provider."""

    def __init__(
        self,
        provider: MarketDataProvider,
        rate_limiter: RateLimiter,
        max_concurrency: int = 8,
        scorer: StockScorer | None = None,
        acquire_timeout: float = 30.0,
    ):
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.max_concurrency = max_concurrency
        self.scorer = scorer or StockScorer()
        self.acquire_timeout = acquire_timeout

    async def _score_one(
        self,
        ticker: str,
        strategy: Strategy,
        semaphore: asyncio.Semaphore,
    ) -> ScoreResult:
        async with semaphore:
            if not await self.rate_limiter.acquire(timeout=self.acquire_timeout):
                raise DataUnavailable(ticker, "rate limiter timeout")
            metrics = await self.provider.get_metrics(ticker)
        if metrics is None:
            raise DataUnavailable(ticker)
        return self.scorer.score(metrics, strategy)

    async def screen(
        self,
        tickers: Iterable[str],
        strategy: Strategy = Strategy.BALANCED,
        on_progress: ProgressCallback | None = None,
    ) -> ScreeningBatch:
        """
        Score every ticker; failures are excluded and tallied, never raised.

        Results are sorted by total score descending with input order as the
        tiebreaker.
        """
        symbols = list(dict.fromkeys(t.upper().strip() for t in tickers if t))
        total = len(symbols)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        completed = 0

        async def run(index: int, ticker: str):
            nonlocal completed
            try:
                outcome = await self._score_one(ticker, strategy, semaphore)
            except Exception as e:
                logger.warning(f"Screening failed for {ticker}: {e}")
                outcome = FailedTicker(ticker=ticker, reason=str(e) or type(e).__name__)
            completed += 1
            if on_progress:
                on_progress(completed, total)
            return index, outcome

        outcomes = await asyncio.gather(*(run(i, t) for i, t in enumerate(symbols)))

        results: list[tuple[int, ScoreResult]] = []
        failed: list[FailedTicker] = []
        for index, outcome in sorted(outcomes, key=lambda o: o[0]):
            if isinstance(outcome, FailedTicker):
                failed.append(outcome)
            else:
                results.append((index, outcome))

        results.sort(key=lambda r: (-r[1].total_score, r[0]))
        logger.info(
            f"Screened {total} tickers ({strategy.value}): "
            f"{len(results)} scored, {len(failed)} failed"
        )
        return ScreeningBatch(
            strategy=strategy,
            results=[r for _, r in results],
            failed=failed,
            total=total,
        )


def apply_tier1_filter(
    batch: ScreeningBatch,
    config: Tier1Config | None = None,
) -> Tier1Result:
    """Apply score, cash-flow, valuation and size thresholds."""
    config = config or Tier1Config()
    rejections = Tier1Rejections(data_error=len(batch.failed))
    passed: list[ScoreResult] = []

    for result in batch.results:
        if result.total_score < config.min_score:
            rejections.low_score += 1
            continue
        # Negative margin stands in for negative free cash flow
        if (
            config.require_positive_fcf
            and result.profit_margin is not None
            and result.profit_margin < 0
        ):
            rejections.negative_fcf += 1
            continue
        if (
            result.pe_ratio is not None
            and result.pe_ratio > 0
            and result.pe_ratio > config.max_pe
        ):
            rejections.high_pe += 1
            continue
        if result.market_cap is not None and result.market_cap < config.min_market_cap:
            rejections.low_market_cap += 1
            continue
        passed.append(result)

    passed.sort(key=lambda r: r.total_score, reverse=True)
    return Tier1Result(
        candidates=passed[: config.max_candidates],
        total_screened=batch.total,
        rejections=rejections,
    )


def rank_candidates(
    scores: list[ScoreResult],
    target_count: int = 20,
    max_sector_pct: float = 0.25,
    min_score: int = 50,
) -> RankingResult:
    """Pick the top scores subject to a per-sector cap and suggest weights.

    Weights are equal-weight plus a score tilt (20% of each candidate's
    share of the summed score), normalized to sum to 1.
    """
    excluded = RankingExclusions()
    eligible = []
    for index, s in enumerate(scores):
        if s.total_score < min_score:
            excluded.low_score += 1
        else:
            eligible.append((index, s))
    eligible.sort(key=lambda e: (-e[1].total_score, e[0]))

    max_per_sector = math.ceil(target_count * max_sector_pct)
    sector_counts: dict[str, int] = {}
    picked: list[tuple[ScoreResult, str]] = []

    for _, s in eligible:
        if len(picked) >= target_count:
            break
        sector = s.sector or "Unknown"
        if sector_counts.get(sector, 0) >= max_per_sector:
            excluded.sector_limit += 1
            continue
        sector_counts[sector] = sector_counts.get(sector, 0) + 1
        picked.append((s, sector))

    if not picked:
        return RankingResult(sector_breakdown=sector_counts, excluded=excluded)

    total_score = sum(s.total_score for s, _ in picked)
    base = 1 / len(picked)
    raw = [
        round(base + ((s.total_score / total_score) if total_score else 0) * 0.2, 3)
        for s, _ in picked
    ]
    raw_sum = sum(raw)
    weights = [round(w / raw_sum, 3) for w in raw]

    candidates = [
        RankedCandidate(rank=i + 1, score=s, sector=sector, weight=w)
        for i, ((s, sector), w) in enumerate(zip(picked, weights))
    ]
    return RankingResult(
        candidates=candidates,
        sector_breakdown=sector_counts,
        excluded=excluded,
    )
