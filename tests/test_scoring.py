"""Tests for Tier 1 metric normalization and five-factor scoring."""

import pytest

from conftest import make_metrics
from stockfunnel.pipeline.schemas import StockMetrics, Strategy
from stockfunnel.pipeline.scoring import (
    STRATEGY_WEIGHTS,
    StockScorer,
    linear_score,
    normalize_score,
)


class TestNormalizeScore:
    """Tests for normalize_score."""

    def test_linear_inside_range(self):
        """Value inside the range maps linearly."""
        assert normalize_score(5, 0, 10) == 50
        assert normalize_score(7.5, 0, 10) == 75

    def test_clamps_outside_range(self):
        """Values beyond the bounds clamp to 0 or 100."""
        assert normalize_score(-5, 0, 10) == 0
        assert normalize_score(50, 0, 10) == 100

    def test_invert(self):
        """Inverted scale rewards low values."""
        assert normalize_score(0, 0, 10, invert=True) == 100
        assert normalize_score(10, 0, 10, invert=True) == 0

    def test_missing_is_neutral(self):
        """None and NaN both score 50."""
        assert normalize_score(None, 0, 10) == 50
        assert normalize_score(float("nan"), 0, 10) == 50

    def test_linear_score_is_unrounded(self):
        """linear_score keeps the fractional part."""
        assert linear_score(1, 0, 3) == pytest.approx(33.333, abs=1e-3)


class TestStockScorerComponents:
    """Tests for individual component scores."""

    def test_value_score_missing_pe(self):
        """Missing P/E contributes 20 to the P/E leg."""
        metrics = StockMetrics(ticker="X", pe_ratio=None, pb_ratio=2, dividend_yield=3)
        expected = round(
            20 * 0.5 + normalize_score(2, 0.5, 10, True) * 0.3 + normalize_score(3, 0, 6) * 0.2
        )
        assert StockScorer.value_score(metrics) == expected == 45

    def test_value_score_negative_pe(self):
        """Negative earnings score 10 on the P/E leg."""
        metrics = StockMetrics(ticker="X", pe_ratio=-4, pb_ratio=2, dividend_yield=3)
        assert StockScorer.value_score(metrics) == round(10 * 0.5 + 84 * 0.3 + 50 * 0.2)

    def test_quality_liquidity_bands(self):
        """Current ratio below 1 is halved and above 3 is a flat 70."""
        base = dict(ticker="X", profit_margin=None, roe=None)
        low = StockScorer.quality_score(StockMetrics(current_ratio=0.5, **base))
        high = StockScorer.quality_score(StockMetrics(current_ratio=4.0, **base))
        assert low == round(50 * 0.4 + 50 * 0.4 + 25 * 0.2)
        assert high == round(50 * 0.4 + 50 * 0.4 + 70 * 0.2)

    def test_risk_score_from_beta(self):
        """Low beta scores high."""
        assert StockScorer.risk_score(StockMetrics(ticker="X", beta=0.5)) == 100
        assert StockScorer.risk_score(StockMetrics(ticker="X", beta=2.5)) == 0

    def test_growth_and_momentum(self):
        """Growth averages revenue and earnings; momentum follows 52w change."""
        m = make_metrics("X")
        assert StockScorer.growth_score(m) == 31
        assert StockScorer.momentum_score(m) == 43


class TestStockScorerTotal:
    """Tests for StockScorer.score."""

    def test_weights_sum_to_100(self):
        """Every strategy weighting sums to 100."""
        for weights in STRATEGY_WEIGHTS.values():
            assert sum(weights.values()) == 100

    def test_balanced_total(self):
        """Total is the weighted mean of the components."""
        result = StockScorer().score(make_metrics("ABC"), Strategy.BALANCED)
        assert result.value_score == 71
        assert result.quality_score == 69
        assert result.risk_score == 67
        assert result.total_score == 59
        assert result.strategy == Strategy.BALANCED

    def test_all_missing_metrics(self):
        """A bare snapshot still scores, mostly at neutral."""
        result = StockScorer().score(StockMetrics(ticker="zzz"), Strategy.VALUE)
        assert result.ticker == "ZZZ"
        assert result.value_score == 35
        assert result.total_score == 44

    def test_scores_within_bounds(self):
        """Extreme inputs stay inside 0-100."""
        extreme = make_metrics(
            "X",
            pe_ratio=1000,
            pb_ratio=500,
            dividend_yield=50,
            profit_margin=-300,
            roe=900,
            beta=9,
            revenue_growth=-90,
            earnings_growth=900,
            week52_change=-99,
        )
        for strategy in Strategy:
            result = StockScorer().score(extreme, strategy)
            for value in (
                result.value_score,
                result.quality_score,
                result.risk_score,
                result.growth_score,
                result.momentum_score,
                result.total_score,
            ):
                assert 0 <= value <= 100

    def test_strategy_changes_total(self):
        """A high-growth name scores better under growth than value."""
        grower = make_metrics(
            "GRW", pe_ratio=60, pb_ratio=12, dividend_yield=0, revenue_growth=45, earnings_growth=90
        )
        scorer = StockScorer()
        assert (
            scorer.score(grower, Strategy.GROWTH).total_score
            > scorer.score(grower, Strategy.VALUE).total_score
        )
