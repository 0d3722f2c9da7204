"""Tests for regex signal extraction from analysis text."""

from stockfunnel.pipeline.schemas import AnalysisKind
from stockfunnel.pipeline.signals import (
    RegexSignalExtractor,
    parse_implied_value,
    parse_intrinsic_value,
    parse_risk_score,
    parse_sentiment,
    parse_upside,
)


class TestParseUpside:
    """Tests for parse_upside."""

    def test_percent_before_keyword(self):
        assert parse_upside("This implies 50% upside.") == 50.0

    def test_downside_is_negative(self):
        assert parse_upside("Roughly 30% downside versus peers.") == -30.0

    def test_keyword_before_percent(self):
        assert parse_upside("Upside: +25.5% over 12 months") == 25.5

    def test_no_match(self):
        assert parse_upside("No valuation opinion here.") is None


class TestParseRiskScore:
    """Tests for parse_risk_score."""

    def test_overall_risk_score(self):
        assert parse_risk_score("Overall Risk Score: 7/10") == 7.0

    def test_score_before_label(self):
        assert parse_risk_score("We assign 6.5/10 risk.") == 6.5

    def test_missing(self):
        assert parse_risk_score("Risk is moderate.") is None


class TestParseSentiment:
    """Tests for parse_sentiment."""

    def test_very_bullish_wins_over_bullish(self):
        assert parse_sentiment("Market tone is very bullish.") == "VERY_BULLISH"

    def test_bearish(self):
        assert parse_sentiment("Investors remain bearish.") == "BEARISH"

    def test_none(self):
        assert parse_sentiment("Mixed.") is None


class TestParseValues:
    """Tests for intrinsic and implied value parsing."""

    def test_intrinsic_value_with_commas(self):
        assert parse_intrinsic_value("INTRINSIC VALUE PER SHARE: $1,234.50") == 1234.5

    def test_implied_value(self):
        assert parse_implied_value("Implied value: $140. Cheap vs peers.") == 140.0

    def test_zero_is_ignored(self):
        assert parse_intrinsic_value("Intrinsic value: $0") is None


class TestRegexSignalExtractor:
    """Tests for RegexSignalExtractor.extract."""

    def test_empty_text_gives_defaults(self):
        """Absent text never raises and sets nothing."""
        signals = RegexSignalExtractor().extract(AnalysisKind.RISK, None)
        assert signals.risk_score is None
        assert signals.risk_mentions == []

    def test_sentiment_flags(self):
        signals = RegexSignalExtractor().extract(
            AnalysisKind.SENTIMENT,
            "Bullish overall. Two strong buy ratings and insider buying last month.",
        )
        assert signals.sentiment == "BULLISH"
        assert signals.strong_buy
        assert signals.insider_buying
        assert not signals.sell_mentioned

    def test_earnings_flags(self):
        signals = RegexSignalExtractor().extract(
            AnalysisKind.EARNINGS,
            "Beat estimates by 8% and raised full-year guidance, +12% growth.",
        )
        assert signals.earnings_beat
        assert not signals.earnings_miss
        assert signals.guidance_raised
        assert not signals.guidance_lowered
        assert signals.growth_mentioned

    def test_risk_mentions(self):
        signals = RegexSignalExtractor().extract(
            AnalysisKind.RISK,
            "High beta, max drawdown of -45%.\nOverall Risk Score: 8/10",
        )
        assert signals.risk_score == 8.0
        assert "High beta (market sensitivity)" in signals.risk_mentions
        assert "History of large drawdowns" in signals.risk_mentions

    def test_dcf_extracts_value_and_upside(self):
        signals = RegexSignalExtractor().extract(
            AnalysisKind.DCF, "INTRINSIC VALUE PER SHARE: $150.00\nThis implies 50% upside."
        )
        assert signals.intrinsic_value == 150.0
        assert signals.upside_pct == 50.0
