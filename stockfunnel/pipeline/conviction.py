"""
Tier 3 conviction synthesis.

Combines signals from five analysis texts with the Tier 1 score into a
0-100 conviction, a conviction level, position sizing and a reasoning
string built only from the computed numbers.
"""

from __future__ import annotations

from stockfunnel.core.logging import get_logger
from stockfunnel.pipeline.schemas import (
    AnalysisKind,
    ComponentScores,
    ConvictionInput,
    ConvictionLevel,
    ConvictionResult,
    ConvictionSummary,
    Strategy,
    TriageDecision,
)
from stockfunnel.pipeline.scoring import linear_score
from stockfunnel.pipeline.signals import RegexSignalExtractor, SignalExtractor


logger = get_logger("pipeline.conviction")

CONVICTION_WEIGHTS: dict[Strategy, dict[str, float]] = {
    Strategy.VALUE: {"valuation": 0.35, "sentiment": 0.10, "risk": 0.20, "earnings": 0.15, "quality": 0.20},
    Strategy.GROWTH: {"valuation": 0.20, "sentiment": 0.15, "risk": 0.15, "earnings": 0.25, "quality": 0.25},
    Strategy.BALANCED: {"valuation": 0.25, "sentiment": 0.15, "risk": 0.20, "earnings": 0.20, "quality": 0.20},
}

# (threshold, level, suggested weight %, max weight %), checked top down
LEVEL_BANDS = [
    (80, ConvictionLevel.VERY_HIGH, 8.0, 10.0),
    (65, ConvictionLevel.HIGH, 6.0, 8.0),
    (50, ConvictionLevel.MODERATE, 4.0, 6.0),
    (35, ConvictionLevel.LOW, 2.0, 4.0),
]
FLOOR_BAND = (ConvictionLevel.VERY_LOW, 0.0, 2.0)

HIGH_RISK_RAW = 7
LOW_RISK_RAW = 3

SENTIMENT_SCORES = {
    "VERY_BULLISH": (90, "Very bullish market sentiment"),
    "BULLISH": (70, "Positive market sentiment"),
    "VERY_BEARISH": (10, "Very bearish market sentiment"),
    "BEARISH": (30, "Negative market sentiment"),
}


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def conviction_level(score: int) -> tuple[ConvictionLevel, float, float]:
    """Level plus (suggested, max) position weight for a conviction score."""
    for threshold, level, suggested, maximum in LEVEL_BANDS:
        if score >= threshold:
            return level, suggested, maximum
    return FLOOR_BAND


def build_reasoning(
    strategy: Strategy,
    score: int,
    level: ConvictionLevel,
    components: ComponentScores,
    composite_upside: float | None,
    bull_case: list[str],
    bear_case: list[str],
) -> str:
    parts = [f"{level.value} conviction ({score}/100) for {strategy.value} strategy."]

    if composite_upside is not None:
        direction = "upside" if composite_upside >= 0 else "downside"
        parts.append(f"Composite {direction}: {abs(composite_upside):.1f}%.")

    factors = []
    for value, good, bad in (
        (components.valuation, "strong valuation", "weak valuation"),
        (components.sentiment, "positive sentiment", "negative sentiment"),
        (components.risk, "low risk", "high risk"),
        (components.earnings, "strong earnings", "weak earnings"),
    ):
        if value >= 70:
            factors.append(good)
        elif value <= 30:
            factors.append(bad)
    if components.quality >= 70:
        factors.append("high quality")
    if factors:
        parts.append(f"Key factors: {', '.join(factors)}.")

    if bull_case:
        parts.append(f"Positives: {'; '.join(bull_case[:3])}.")
    if bear_case:
        parts.append(f"Concerns: {'; '.join(bear_case[:2])}.")

    return " ".join(parts)


class ConvictionSynthesizer:
    """Scores conviction from analysis texts through a ``SignalExtractor``."""

    def __init__(self, extractor: SignalExtractor | None = None):
        self.extractor = extractor or RegexSignalExtractor()

    def synthesize(
        self,
        data: ConvictionInput,
        strategy: Strategy = Strategy.BALANCED,
    ) -> ConvictionResult:
        texts = data.analyses
        bull: list[str] = []
        bear: list[str] = []
        risks: list[str] = []

        dcf = self.extractor.extract(AnalysisKind.DCF, texts.dcf)
        peers = self.extractor.extract(AnalysisKind.COMPARABLE, texts.comparable)
        mood = self.extractor.extract(AnalysisKind.SENTIMENT, texts.sentiment)
        risk = self.extractor.extract(AnalysisKind.RISK, texts.risk)
        earnings = self.extractor.extract(AnalysisKind.EARNINGS, texts.earnings)

        # Valuation
        dcf_upside = data.dcf_upside if data.dcf_upside is not None else dcf.upside_pct
        peer_upside = data.peer_upside if data.peer_upside is not None else peers.upside_pct

        valuation = 50.0
        if dcf_upside is not None:
            valuation = linear_score(dcf_upside, -50, 50)
            if dcf_upside > 20:
                bull.append(f"Strong DCF upside ({dcf_upside:.0f}%)")
            elif dcf_upside < -10:
                bear.append(f"DCF shows overvaluation ({dcf_upside:.0f}%)")
        if peer_upside is not None:
            valuation = valuation * 0.6 + linear_score(peer_upside, -50, 50) * 0.4
            if peer_upside > 15:
                bull.append(f"Trading below peers ({peer_upside:.0f}% discount)")
            elif peer_upside < -15:
                bear.append(f"Trading above peers ({abs(peer_upside):.0f}% premium)")

        if dcf_upside is not None and peer_upside is not None:
            composite = dcf_upside * 0.6 + peer_upside * 0.4
        elif dcf_upside is not None:
            composite = dcf_upside
        else:
            composite = peer_upside

        # Sentiment
        sentiment = 50.0
        if texts.sentiment:
            if mood.sentiment in SENTIMENT_SCORES:
                sentiment, factor = SENTIMENT_SCORES[mood.sentiment]
                if sentiment > 50:
                    bull.append(factor)
                else:
                    bear.append(factor)
                if mood.sentiment == "VERY_BEARISH":
                    risks.append("Negative sentiment may persist")
            if mood.strong_buy:
                sentiment += 10
                bull.append("Strong analyst buy rating")
            if mood.sell_mentioned and not mood.strong_buy:
                sentiment -= 15
                bear.append("Analyst sell ratings present")
            if mood.insider_buying:
                sentiment += 5
                bull.append("Recent insider buying")
            sentiment = _clamp(sentiment)

        # Risk (raw 1-10, higher is riskier)
        raw_risk = data.risk_score if data.risk_score is not None else risk.risk_score
        risk_component = 50.0
        if raw_risk is not None:
            risk_component = linear_score(raw_risk, 1, 10, invert=True)
            if raw_risk <= LOW_RISK_RAW:
                bull.append("Low risk profile")
            elif raw_risk >= HIGH_RISK_RAW:
                bear.append("High risk profile")
                risks.append(f"High overall risk score ({raw_risk:g}/10)")
        risks.extend(risk.risk_mentions)

        # Earnings
        earnings_component = 50.0
        if texts.earnings:
            if earnings.earnings_beat:
                earnings_component += 15
                bull.append("Recent earnings beat")
            if earnings.earnings_miss:
                earnings_component -= 15
                bear.append("Recent earnings miss")
            if earnings.guidance_raised:
                earnings_component += 10
                bull.append("Raised forward guidance")
            elif earnings.guidance_lowered:
                earnings_component -= 10
                bear.append("Lowered forward guidance")
                risks.append("Management lowered expectations")
            if earnings.growth_mentioned:
                earnings_component += 5
            earnings_component = _clamp(earnings_component)

        # Quality
        quality = float(data.tier1_score)
        if data.tier2_decision == TriageDecision.FAST_TRACK:
            quality = min(quality + 10, 100.0)
            bull.append("Fast-tracked in Tier 2 triage")

        weights = CONVICTION_WEIGHTS[strategy]
        score = round(
            valuation * weights["valuation"]
            + sentiment * weights["sentiment"]
            + risk_component * weights["risk"]
            + earnings_component * weights["earnings"]
            + quality * weights["quality"]
        )
        level, suggested, maximum = conviction_level(score)
        if raw_risk is not None and raw_risk >= HIGH_RISK_RAW:
            suggested = max(0.0, suggested - 2)
            maximum = max(2.0, maximum - 2)

        components = ComponentScores(
            valuation=round(valuation),
            sentiment=round(sentiment),
            risk=round(risk_component),
            earnings=round(earnings_component),
            quality=round(quality),
        )

        return ConvictionResult(
            ticker=data.ticker,
            sector=data.sector,
            company_name=data.company_name,
            current_price=data.current_price,
            strategy=strategy,
            tier1_score=data.tier1_score,
            tier2_decision=data.tier2_decision,
            conviction_score=score,
            conviction_level=level,
            components=components,
            dcf_upside=dcf_upside,
            peer_upside=peer_upside,
            composite_upside=composite,
            intrinsic_value=dcf.intrinsic_value,
            implied_value=peers.implied_value,
            raw_risk_score=raw_risk,
            sentiment_label=mood.sentiment,
            bull_case=bull,
            bear_case=bear,
            key_risks=risks,
            suggested_weight=suggested,
            max_weight=maximum,
            reasoning=build_reasoning(
                strategy, score, level, components, composite, bull, bear
            ),
        )

    def synthesize_many(
        self,
        inputs: list[ConvictionInput],
        strategy: Strategy = Strategy.BALANCED,
    ) -> list[ConvictionResult]:
        results = [self.synthesize(i, strategy) for i in inputs]
        logger.debug(f"Synthesized conviction for {len(results)} tickers")
        return results


def summarize(results: list[ConvictionResult]) -> ConvictionSummary:
    """Count results per level and average the conviction scores."""
    by_level = {level: 0 for level in ConvictionLevel}
    for r in results:
        by_level[r.conviction_level] += 1
    average = (
        round(sum(r.conviction_score for r in results) / len(results), 1)
        if results
        else 0.0
    )
    return ConvictionSummary(total=len(results), by_level=by_level, average_conviction=average)
