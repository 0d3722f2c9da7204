"""
Signal extraction from qualitative analysis text.

The conviction synthesizer consumes ``ExtractedSignals`` only. The regex
extractor here is one implementation; a provider that returns structured
output can implement ``SignalExtractor`` directly.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional, Protocol

from stockfunnel.pipeline.schemas import AnalysisKind


@dataclass
class ExtractedSignals:
    """Numeric and semantic signals found in one analysis text."""

    upside_pct: Optional[float] = None
    sentiment: Optional[str] = None
    strong_buy: bool = False
    sell_mentioned: bool = False
    insider_buying: bool = False
    risk_score: Optional[float] = None
    earnings_beat: bool = False
    earnings_miss: bool = False
    guidance_raised: bool = False
    guidance_lowered: bool = False
    growth_mentioned: bool = False
    risk_mentions: list[str] = field(default_factory=list)
    intrinsic_value: Optional[float] = None
    implied_value: Optional[float] = None


class SignalExtractor(Protocol):
    """Protocol for anything that turns analysis text into signals."""

    def extract(self, kind: AnalysisKind, text: Optional[str]) -> ExtractedSignals:
        ...


# =============================================================================
# Patterns
# =============================================================================

UPSIDE_PATTERNS = [
    re.compile(r"(\+|-)?\d+(\.\d+)?%\s*(upside|downside|potential)", re.I),
    re.compile(r"(upside|downside|potential)[:\s]+(\+|-)?\d+(\.\d+)?%", re.I),
    re.compile(r"fair value[^.]*(\+|-)?\d+(\.\d+)?%", re.I),
    re.compile(r"intrinsic value[^.]*(\+|-)?\d+(\.\d+)?%", re.I),
]
NUMBER = re.compile(r"(\+|-)?\d+(\.\d+)?")

RISK_SCORE_PATTERNS = [
    re.compile(r"(?:overall\s+)?risk\s+score[:\s]+(\d+(?:\.\d+)?)\s*/\s*10", re.I),
    re.compile(r"(\d+(?:\.\d+)?)\s*/\s*10\s*(?:risk|score)", re.I),
]

# Order matters: "very bullish" must win over "bullish"
SENTIMENT_PATTERNS = [
    (re.compile(r"very\s+bullish", re.I), "VERY_BULLISH"),
    (re.compile(r"bullish", re.I), "BULLISH"),
    (re.compile(r"very\s+bearish", re.I), "VERY_BEARISH"),
    (re.compile(r"bearish", re.I), "BEARISH"),
    (re.compile(r"neutral", re.I), "NEUTRAL"),
]

INTRINSIC_VALUE_PATTERNS = [
    re.compile(r"INTRINSIC VALUE PER SHARE:\s*\$?([\d,]+\.?\d*)", re.I),
    re.compile(r"intrinsic value[:\s]+\$?([\d,]+\.?\d*)", re.I),
    re.compile(r"fair value[:\s]+\$?([\d,]+\.?\d*)", re.I),
]

IMPLIED_VALUE_PATTERNS = [
    re.compile(r"implied\s+(?:fair\s+)?value[:\s]+\$?([\d,]+\.?\d*)", re.I),
    re.compile(r"peer[- ]implied\s+(?:price|value)[:\s]+\$?([\d,]+\.?\d*)", re.I),
    re.compile(r"comparable\s+value[:\s]+\$?([\d,]+\.?\d*)", re.I),
    re.compile(r"target\s+price[:\s]+\$?([\d,]+\.?\d*)", re.I),
]

RISK_MENTIONS = [
    (re.compile(r"high beta", re.I), "High beta (market sensitivity)"),
    (re.compile(r"max drawdown.*-?[3-9]\d%", re.I), "History of large drawdowns"),
    (re.compile(r"short interest.*high", re.I), "Elevated short interest"),
]


# =============================================================================
# Parsers
# =============================================================================


def parse_upside(text: str) -> Optional[float]:
    """Percent upside (negative for downside) mentioned in the text."""
    for pattern in UPSIDE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        num = NUMBER.search(match.group(0))
        if num:
            value = float(num.group(0))
            if "downside" in match.group(0).lower() or "-" in match.group(0):
                return -abs(value)
            return value
    return None


def parse_risk_score(text: str) -> Optional[float]:
    """Overall risk score on a 1-10 scale."""
    for pattern in RISK_SCORE_PATTERNS:
        match = pattern.search(text)
        if match:
            return float(match.group(1))
    return None


def parse_sentiment(text: str) -> Optional[str]:
    for pattern, label in SENTIMENT_PATTERNS:
        if pattern.search(text):
            return label
    return None


def _parse_price(text: str, patterns: list[re.Pattern]) -> Optional[float]:
    for pattern in patterns:
        match = pattern.search(text)
        if not match:
            continue
        try:
            value = float(match.group(1).replace(",", ""))
        except ValueError:
            continue
        if value > 0:
            return value
    return None


def parse_intrinsic_value(text: str) -> Optional[float]:
    """Per-share intrinsic value from a DCF write-up."""
    return _parse_price(text, INTRINSIC_VALUE_PATTERNS)


def parse_implied_value(text: str) -> Optional[float]:
    """Peer-implied value per share from a comparable analysis."""
    return _parse_price(text, IMPLIED_VALUE_PATTERNS)


class RegexSignalExtractor:
    """Pattern-based extractor. Never raises; absent signals stay unset."""

    def extract(self, kind: AnalysisKind, text: Optional[str]) -> ExtractedSignals:
        signals = ExtractedSignals()
        if not text:
            return signals

        if kind == AnalysisKind.DCF:
            signals.upside_pct = parse_upside(text)
            signals.intrinsic_value = parse_intrinsic_value(text)
        elif kind == AnalysisKind.COMPARABLE:
            signals.upside_pct = parse_upside(text)
            signals.implied_value = parse_implied_value(text)
        elif kind == AnalysisKind.SENTIMENT:
            signals.sentiment = parse_sentiment(text)
            signals.strong_buy = bool(re.search(r"strong buy", text, re.I))
            signals.sell_mentioned = bool(re.search(r"sell", text, re.I))
            signals.insider_buying = bool(re.search(r"insider.*buy", text, re.I))
        elif kind == AnalysisKind.RISK:
            signals.risk_score = parse_risk_score(text)
            signals.risk_mentions = [
                label for pattern, label in RISK_MENTIONS if pattern.search(text)
            ]
        elif kind == AnalysisKind.EARNINGS:
            signals.earnings_beat = bool(re.search(r"beat.*(\d+)", text, re.I))
            signals.earnings_miss = bool(re.search(r"miss.*(\d+)", text, re.I))
            signals.guidance_raised = bool(re.search(r"raised.*guidance", text, re.I))
            signals.guidance_lowered = bool(re.search(r"lowered.*guidance", text, re.I))
            signals.growth_mentioned = bool(
                re.search(r"\+\d+%.*growth", text, re.I)
                or re.search(r"growth.*\+\d+%", text, re.I)
            )

        return signals
