"""
Tier 3 deep research fan-out.

Runs the five qualitative analyses for each ticker concurrently and feeds
the texts to the conviction synthesizer. A failed analysis becomes an
absent text; it never fails the ticker.
"""

from __future__ import annotations

import asyncio
from typing import Any

from stockfunnel.core.logging import get_logger
from stockfunnel.pipeline.conviction import ConvictionSynthesizer
from stockfunnel.pipeline.schemas import (
    AnalysisKind,
    AnalysisTexts,
    ConvictionInput,
    ConvictionResult,
    Strategy,
)
from stockfunnel.providers.base import QualitativeAnalysisProvider


logger = get_logger("pipeline.research")


async def gather_analyses(
    provider: QualitativeAnalysisProvider,
    ticker: str,
    context: dict[str, Any] | None = None,
) -> AnalysisTexts:
    kinds = list(AnalysisKind)
    outputs = await asyncio.gather(
        *(provider.analyze(ticker, kind, context or {}) for kind in kinds),
        return_exceptions=True,
    )
    texts: dict[str, str | None] = {}
    for kind, output in zip(kinds, outputs):
        if isinstance(output, BaseException):
            logger.warning(f"{kind.value} analysis failed for {ticker}: {output}")
            texts[kind.value] = None
        else:
            texts[kind.value] = output or None
    return AnalysisTexts(**texts)


class ResearchRunner:
    """Analyzes candidates in small concurrent batches."""

    def __init__(
        self,
        provider: QualitativeAnalysisProvider,
        synthesizer: ConvictionSynthesizer | None = None,
        batch_size: int = 3,
    ):
        self.provider = provider
        self.synthesizer = synthesizer or ConvictionSynthesizer()
        self.batch_size = batch_size

    async def research_one(
        self,
        candidate: ConvictionInput,
        strategy: Strategy,
    ) -> ConvictionResult:
        context = {
            "company_name": candidate.company_name,
            "sector": candidate.sector,
            "current_price": candidate.current_price,
            "tier1_score": candidate.tier1_score,
        }
        texts = await gather_analyses(self.provider, candidate.ticker, context)
        if not texts.available:
            logger.warning(f"No analyses available for {candidate.ticker}, scoring on defaults")
        return self.synthesizer.synthesize(
            candidate.model_copy(update={"analyses": texts}), strategy
        )

    async def research(
        self,
        candidates: list[ConvictionInput],
        strategy: Strategy,
    ) -> tuple[list[ConvictionResult], list[tuple[str, str]]]:
        """Return results in input order plus (ticker, reason) failures."""
        results: list[ConvictionResult] = []
        failures: list[tuple[str, str]] = []
        for start in range(0, len(candidates), self.batch_size):
            batch = candidates[start : start + self.batch_size]
            outputs = await asyncio.gather(
                *(self.research_one(c, strategy) for c in batch),
                return_exceptions=True,
            )
            for candidate, output in zip(batch, outputs):
                if isinstance(output, BaseException):
                    logger.error(f"Research failed for {candidate.ticker}: {output}")
                    failures.append((candidate.ticker, str(output)))
                else:
                    results.append(output)
            logger.info(
                f"Tier 3 progress: {min(start + self.batch_size, len(candidates))}"
                f"/{len(candidates)}"
            )
        return results, failures


def analysis_row(
    result: ConvictionResult,
    in_portfolio: bool,
    rejection_reason: str | None = None,
) -> dict[str, Any]:
    """Stock analysis row persisted for every Tier 3 result."""
    if result.components.earnings >= 65:
        earnings_sentiment = "beat"
    elif result.components.earnings >= 45:
        earnings_sentiment = "inline"
    else:
        earnings_sentiment = "miss"

    if in_portfolio:
        summary = (
            f"Selected for portfolio with {result.conviction_level.value} conviction "
            f"({result.conviction_score}/100)"
        )
    else:
        summary = rejection_reason or "Not selected"

    return {
        "company_name": result.company_name,
        "sector": result.sector,
        "current_price": result.current_price,
        "tier1_score": result.tier1_score,
        "tier2_decision": result.tier2_decision.value,
        "conviction_score": result.conviction_score,
        "conviction_level": result.conviction_level.value,
        "dcf_intrinsic_value": result.intrinsic_value,
        "comparable_implied_value": result.implied_value,
        "dcf_upside_pct": result.dcf_upside,
        "raw_risk_score": result.raw_risk_score,
        "sentiment_score": result.components.sentiment,
        "earnings_sentiment": earnings_sentiment,
        "research_summary": summary,
        "investment_thesis": (
            f"Bull: {'; '.join(result.bull_case[:3])}. "
            f"Bear: {'; '.join(result.bear_case[:2])}"
        )
        if in_portfolio
        else None,
        "conviction_breakdown": result.components.model_dump(),
        "suggested_weight": result.suggested_weight,
        "reasoning": result.reasoning,
    }
