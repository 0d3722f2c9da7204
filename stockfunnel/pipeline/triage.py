"""
Tier 2 triage.

Turns lightweight qualitative checks into red/green flags, then applies a
fixed rule table to decide whether a Tier 1 survivor moves on to the
expensive Tier 3 analysis.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field

from stockfunnel.core.logging import get_logger
from stockfunnel.pipeline.schemas import (
    QualitativeChecks,
    Tier2Result,
    TriageCandidate,
    TriageDecision,
    TriageVerdict,
)
from stockfunnel.providers.base import MarketDataProvider


logger = get_logger("pipeline.triage")

FAST_TRACK_MIN_SCORE = 70
PASS_MIN_SCORE = 55

# Flags that carry extra weight in the rule table. Matching is by pattern so
# shortened flag wording ("Strong consensus") is still recognized.
MAJOR_RED_PATTERNS = [
    re.compile(r"extreme short", re.I),
    re.compile(r"very high beta", re.I),
    re.compile(r"consecutive earnings misses", re.I),
    re.compile(r"negative\b.*consensus", re.I),
]
MAJOR_GREEN_PATTERNS = [
    re.compile(r"strong\b.*consensus", re.I),
    re.compile(r"high target upside", re.I),
    re.compile(r"earnings beat", re.I),
]


def is_major_red(flag: str) -> bool:
    return any(p.search(flag) for p in MAJOR_RED_PATTERNS)


def is_major_green(flag: str) -> bool:
    return any(p.search(flag) for p in MAJOR_GREEN_PATTERNS)


# =============================================================================
# Flag building
# =============================================================================


@dataclass
class TriageFlags:
    """Flags and descriptors derived from one ticker's checks."""

    red: list[str] = field(default_factory=list)
    green: list[str] = field(default_factory=list)
    analyst_consensus: str | None = None
    target_upside: float | None = None
    short_interest_risk: str | None = None
    earnings_sentiment: str | None = None
    risk_level: str | None = None
    rating_trend: str | None = None


def build_flags(checks: QualitativeChecks) -> TriageFlags:
    flags = TriageFlags()

    # Analyst consensus
    total = checks.total_ratings
    if total > 0:
        bullish_pct = (checks.strong_buy + checks.buy) / total * 100
        bearish_pct = (checks.sell + checks.strong_sell) / total * 100
        if bullish_pct >= 70:
            flags.analyst_consensus = "Strong Buy"
            flags.green.append("Strong analyst consensus (70%+ bullish)")
        elif bullish_pct >= 50:
            flags.analyst_consensus = "Buy"
            flags.green.append("Positive analyst consensus")
        elif bearish_pct >= 40:
            flags.analyst_consensus = "Sell"
            flags.red.append("Negative analyst consensus (40%+ bearish)")
        else:
            flags.analyst_consensus = "Hold"

    # Price target
    if checks.target_mean_price and checks.current_price and checks.current_price > 0:
        upside = (checks.target_mean_price - checks.current_price) / checks.current_price * 100
        flags.target_upside = upside
        if upside > 20:
            flags.green.append(f"High target upside ({upside:.0f}%)")
        elif upside < -10:
            flags.red.append(f"Negative target upside ({upside:.0f}%)")

    # Short interest (percent of float)
    short_pct = checks.short_percent_of_float
    if short_pct is not None:
        if short_pct > 25:
            flags.short_interest_risk = "EXTREME"
            flags.red.append(f"Extreme short interest ({short_pct:.1f}%)")
        elif short_pct > 15:
            flags.short_interest_risk = "HIGH"
            flags.red.append(f"High short interest ({short_pct:.1f}%)")
        elif short_pct > 8:
            flags.short_interest_risk = "MODERATE"
        else:
            flags.short_interest_risk = "LOW"

    # Earnings
    if checks.earnings:
        surprise = checks.earnings[0].surprise_pct
        if surprise is not None:
            if surprise > 5:
                flags.earnings_sentiment = "BEAT"
                flags.green.append(f"Earnings beat (+{surprise:.1f}%)")
            elif surprise < -5:
                flags.earnings_sentiment = "MISS"
                flags.red.append(f"Earnings miss ({surprise:.1f}%)")
            else:
                flags.earnings_sentiment = "INLINE"
        if len(checks.earnings) >= 2 and all(e.missed for e in checks.earnings[:2]):
            flags.red.append("Two consecutive earnings misses")

    # Beta
    if checks.beta is not None:
        beta = checks.beta
        if beta > 2.0:
            flags.risk_level = "VERY_HIGH"
            flags.red.append(f"Very high beta ({beta:.2f})")
        elif beta > 1.5:
            flags.risk_level = "HIGH"
            flags.red.append(f"High beta ({beta:.2f})")
        elif beta > 1.0:
            flags.risk_level = "MODERATE"
        else:
            flags.risk_level = "LOW"
            flags.green.append(f"Low beta ({beta:.2f})")

    # Rating changes
    up, down = checks.upgrades_90d, checks.downgrades_90d
    if up > down + 2:
        flags.rating_trend = "POSITIVE"
        flags.green.append(f"Recent upgrades ({up} up vs {down} down)")
    elif down > up + 2:
        flags.rating_trend = "NEGATIVE"
        flags.red.append(f"Recent downgrades ({down} down vs {up} up)")
    else:
        flags.rating_trend = "NEUTRAL"

    return flags


# =============================================================================
# Decision rules
# =============================================================================


def decide(
    tier1_score: int,
    red_flags: list[str],
    green_flags: list[str],
    fast_track_threshold: int = FAST_TRACK_MIN_SCORE,
) -> tuple[TriageDecision, str]:
    """Apply the triage rule table. First matching rule wins."""
    major_red = [f for f in red_flags if is_major_red(f)]
    major_green = [f for f in green_flags if is_major_green(f)]

    if len(major_red) >= 2:
        return (
            TriageDecision.REJECT,
            f"Rejected due to major red flags: {'; '.join(major_red)}",
        )
    if len(major_red) == 1 and not major_green:
        return TriageDecision.REJECT, f"Rejected due to: {major_red[0]}"
    if tier1_score >= fast_track_threshold and len(major_green) >= 2 and not major_red:
        return (
            TriageDecision.FAST_TRACK,
            f"Fast-tracked: High Tier 1 score ({tier1_score}) with positive signals: "
            f"{', '.join(major_green)}",
        )
    if tier1_score >= PASS_MIN_SCORE and not major_red:
        return (
            TriageDecision.PASS,
            f"Passed: Score {tier1_score} with {len(green_flags)} positive signals "
            "and no major concerns",
        )
    if len(red_flags) > len(green_flags) + 2:
        return (
            TriageDecision.REJECT,
            f"Rejected: Too many concerns ({len(red_flags)} red flags vs "
            f"{len(green_flags)} green flags)",
        )
    return (
        TriageDecision.NEEDS_REVIEW,
        f"Mixed signals: {len(red_flags)} concerns, {len(green_flags)} positives. "
        "Manual review recommended.",
    )


def select_finalists(
    verdicts: list[TriageVerdict],
    max_finalists: int = 25,
) -> Tier2Result:
    """Split verdicts into finalists, rejections and items needing review.

    Finalists are FAST_TRACK first, then by Tier 1 score. Anything past
    ``max_finalists`` is rejected.
    """
    advancing = [
        (i, v)
        for i, v in enumerate(verdicts)
        if v.decision in (TriageDecision.PASS, TriageDecision.FAST_TRACK)
    ]
    advancing.sort(
        key=lambda e: (
            e[1].decision != TriageDecision.FAST_TRACK,
            -e[1].tier1_score,
            e[0],
        )
    )

    finalists = [v for _, v in advancing[:max_finalists]]
    overflow = [
        v.model_copy(
            update={
                "decision": TriageDecision.REJECT,
                "reasoning": f"Exceeded max finalists limit ({max_finalists})",
            }
        )
        for _, v in advancing[max_finalists:]
    ]

    rejected = [v for v in verdicts if v.decision == TriageDecision.REJECT] + overflow
    needs_review = [v for v in verdicts if v.decision == TriageDecision.NEEDS_REVIEW]
    return Tier2Result(finalists=finalists, rejected=rejected, needs_review=needs_review)


# =============================================================================
# Engine
# =============================================================================


class TriageEngine:
    """Runs triage checks for Tier 1 survivors in small batches."""

    def __init__(
        self,
        provider: MarketDataProvider,
        batch_size: int = 5,
        batch_delay: float = 0.5,
        fast_track_threshold: int = FAST_TRACK_MIN_SCORE,
    ):
        self.provider = provider
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.fast_track_threshold = fast_track_threshold

    async def triage_one(
        self,
        candidate: TriageCandidate,
        fast_track_threshold: int | None = None,
    ) -> TriageVerdict:
        if fast_track_threshold is None:
            fast_track_threshold = self.fast_track_threshold
        try:
            checks = await self.provider.get_quality_checks(candidate.ticker)
        except Exception as e:
            logger.warning(f"Triage checks failed for {candidate.ticker}: {e}")
            return TriageVerdict(
                ticker=candidate.ticker,
                tier1_score=candidate.tier1_score,
                sector=candidate.sector,
                company_name=candidate.company_name,
                decision=TriageDecision.NEEDS_REVIEW,
                red_flags=[f"Data fetch error: {e}"],
                reasoning=f"Unable to complete triage checks: {e}",
            )

        flags = build_flags(checks)
        decision, reasoning = decide(
            candidate.tier1_score, flags.red, flags.green, fast_track_threshold
        )
        return TriageVerdict(
            ticker=candidate.ticker,
            tier1_score=candidate.tier1_score,
            sector=candidate.sector,
            company_name=candidate.company_name,
            decision=decision,
            red_flags=flags.red,
            green_flags=flags.green,
            reasoning=reasoning,
            analyst_consensus=flags.analyst_consensus,
            target_upside=flags.target_upside,
            short_interest_risk=flags.short_interest_risk,
            earnings_sentiment=flags.earnings_sentiment,
            risk_level=flags.risk_level,
            rating_trend=flags.rating_trend,
        )

    async def triage(
        self,
        candidates: list[TriageCandidate],
        max_finalists: int = 25,
        fast_track_threshold: int | None = None,
    ) -> Tier2Result:
        """Triage in batches. ``fast_track_threshold`` overrides the engine default."""
        verdicts: list[TriageVerdict] = []
        for start in range(0, len(candidates), self.batch_size):
            batch = candidates[start : start + self.batch_size]
            verdicts.extend(
                await asyncio.gather(*(self.triage_one(c, fast_track_threshold) for c in batch))
            )
            if self.batch_delay and start + self.batch_size < len(candidates):
                await asyncio.sleep(self.batch_delay)

        result = select_finalists(verdicts, max_finalists)
        logger.info(
            f"Triage: {result.total} candidates -> {len(result.finalists)} finalists "
            f"({result.fast_tracked} fast-tracked), {len(result.rejected)} rejected, "
            f"{len(result.needs_review)} need review"
        )
        return result
