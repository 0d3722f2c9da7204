"""
Tier 1 quantitative scoring.

Each metric is normalized to 0-100 and combined into five components
(value, quality, risk, growth, momentum). The strategy decides how the
components are weighted into the total score.
"""

from __future__ import annotations

import math

from stockfunnel.pipeline.schemas import ScoreResult, StockMetrics, Strategy


# Component weights in percent: value, quality, risk, growth, momentum
STRATEGY_WEIGHTS: dict[Strategy, dict[str, int]] = {
    Strategy.VALUE: {"value": 40, "quality": 30, "risk": 15, "growth": 10, "momentum": 5},
    Strategy.GROWTH: {"value": 15, "quality": 20, "risk": 10, "growth": 40, "momentum": 15},
    Strategy.BALANCED: {"value": 25, "quality": 25, "risk": 20, "growth": 20, "momentum": 10},
}

NEUTRAL_SCORE = 50
MISSING_PE_SCORE = 20
NEGATIVE_PE_SCORE = 10


def _is_missing(value: float | None) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def linear_score(
    value: float | None,
    min_val: float,
    max_val: float,
    invert: bool = False,
) -> float:
    """Unrounded 0-100 position of ``value`` inside ``[min_val, max_val]``.

    Missing values sit at the neutral midpoint.
    """
    if _is_missing(value):
        return float(NEUTRAL_SCORE)
    clamped = max(min_val, min(max_val, value))
    score = (clamped - min_val) / (max_val - min_val) * 100
    return 100 - score if invert else score


def normalize_score(
    value: float | None,
    min_val: float,
    max_val: float,
    invert: bool = False,
) -> int:
    """Map a metric onto 0-100, rounded. Missing or NaN gives 50."""
    return round(linear_score(value, min_val, max_val, invert))


class StockScorer:
    """Scores a metrics snapshot under a strategy."""

    def __init__(self, weights: dict[Strategy, dict[str, int]] | None = None):
        self.weights = weights or STRATEGY_WEIGHTS

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------

    @staticmethod
    def value_score(m: StockMetrics) -> int:
        if _is_missing(m.pe_ratio):
            pe = MISSING_PE_SCORE
        elif m.pe_ratio <= 0:
            pe = NEGATIVE_PE_SCORE
        else:
            pe = normalize_score(m.pe_ratio, 5, 50, invert=True)
        pb = normalize_score(m.pb_ratio, 0.5, 10, invert=True)
        div = normalize_score(m.dividend_yield, 0, 6)
        return round(pe * 0.5 + pb * 0.3 + div * 0.2)

    @staticmethod
    def quality_score(m: StockMetrics) -> int:
        margin = normalize_score(m.profit_margin, 0, 30)
        roe = normalize_score(m.roe, 0, 30)

        cr = m.current_ratio
        if _is_missing(cr):
            liquidity: float = NEUTRAL_SCORE
        elif 1 <= cr <= 3:
            liquidity = normalize_score(cr, 0.5, 2.5)
        elif cr < 1:
            liquidity = normalize_score(cr, 0, 1) * 0.5
        else:
            # Very high current ratio suggests idle cash
            liquidity = 70

        return round(margin * 0.4 + roe * 0.4 + liquidity * 0.2)

    @staticmethod
    def risk_score(m: StockMetrics) -> int:
        return normalize_score(m.beta, 0.5, 2.0, invert=True)

    @staticmethod
    def growth_score(m: StockMetrics) -> int:
        revenue = normalize_score(m.revenue_growth, -10, 50)
        earnings = normalize_score(m.earnings_growth, -20, 100)
        return round(revenue * 0.5 + earnings * 0.5)

    @staticmethod
    def momentum_score(m: StockMetrics) -> int:
        return normalize_score(m.week52_change, -50, 100)

    # -------------------------------------------------------------------------
    # Total
    # -------------------------------------------------------------------------

    def score(self, metrics: StockMetrics, strategy: Strategy) -> ScoreResult:
        components = {
            "value": self.value_score(metrics),
            "quality": self.quality_score(metrics),
            "risk": self.risk_score(metrics),
            "growth": self.growth_score(metrics),
            "momentum": self.momentum_score(metrics),
        }
        weights = self.weights[strategy]
        total = round(sum(components[k] * weights[k] for k in components) / 100)

        return ScoreResult(
            ticker=metrics.ticker,
            company_name=metrics.company_name,
            sector=metrics.sector,
            price=metrics.price,
            market_cap=metrics.market_cap,
            pe_ratio=metrics.pe_ratio,
            beta=metrics.beta,
            profit_margin=metrics.profit_margin,
            value_score=components["value"],
            quality_score=components["quality"],
            risk_score=components["risk"],
            growth_score=components["growth"],
            momentum_score=components["momentum"],
            total_score=total,
            strategy=strategy,
        )
