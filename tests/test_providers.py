"""Tests for the yfinance and OpenAI providers with the external clients mocked."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pandas as pd
import pytest

from stockfunnel.core.exceptions import DataUnavailable, ProviderFailure
from stockfunnel.core.rate_limiter import RateLimiter
from stockfunnel.pipeline.schemas import AnalysisKind
from stockfunnel.providers import openai_provider
from stockfunnel.providers.openai_provider import OpenAIAnalysisProvider, peers_for
from stockfunnel.providers.yfinance_provider import (
    YFinanceMarketData,
    _earnings_records,
    _latest_recommendations,
    _rating_changes,
    metrics_from_info,
)


TICKER_PATH = "stockfunnel.providers.yfinance_provider.yf.Ticker"

INFO = {
    "shortName": "Acme Corp",
    "sector": "Industrials",
    "regularMarketPrice": 50.0,
    "marketCap": 12e9,
    "trailingPE": 18.5,
    "priceToBook": float("nan"),
    "dividendYield": 1.8,
    "profitMargins": 0.12,
    "returnOnEquity": 0.25,
    "revenueGrowth": -0.04,
    "52WeekChange": 0.3,
    "beta": 1.1,
    "targetMeanPrice": 60.0,
    "shortPercentOfFloat": 0.035,
}


class TestMetricsFromInfo:
    """Tests for mapping yfinance info onto metrics."""

    def test_fractions_become_percent(self):
        m = metrics_from_info("ACME", INFO)
        assert m.company_name == "Acme Corp"
        assert m.profit_margin == pytest.approx(12.0)
        assert m.roe == pytest.approx(25.0)
        assert m.revenue_growth == pytest.approx(-4.0)
        assert m.week52_change == pytest.approx(30.0)
        assert m.dividend_yield == 1.8

    def test_missing_and_nan_become_none(self):
        m = metrics_from_info("ACME", INFO)
        assert m.pb_ratio is None
        assert m.earnings_growth is None
        assert m.current_ratio is None


class TestFrameHelpers:
    """Tests for DataFrame parsing helpers."""

    def test_latest_recommendations_uses_current_period(self):
        df = pd.DataFrame(
            {
                "period": ["0m", "-1m"],
                "strongBuy": [5, 1],
                "buy": [10, 1],
                "hold": [3, 1],
                "sell": [1, 1],
                "strongSell": [0, 1],
            }
        )
        assert _latest_recommendations(df) == {
            "strong_buy": 5,
            "buy": 10,
            "hold": 3,
            "sell": 1,
            "strong_sell": 0,
        }

    def test_latest_recommendations_empty(self):
        assert sum(_latest_recommendations(pd.DataFrame()).values()) == 0
        assert sum(_latest_recommendations(None).values()) == 0

    def test_rating_changes_window(self):
        """Only events inside the 90-day window count; initiations count as upgrades."""
        now = datetime(2025, 6, 30, tzinfo=timezone.utc)
        index = pd.DatetimeIndex(
            [
                now - timedelta(days=5),
                now - timedelta(days=10),
                now - timedelta(days=20),
                now - timedelta(days=200),
            ]
        )
        df = pd.DataFrame({"Action": ["up", "init", "down", "up"]}, index=index)
        assert _rating_changes(df, now) == (2, 1)

    def test_rating_changes_naive_index(self):
        now = datetime(2025, 6, 30, tzinfo=timezone.utc)
        df = pd.DataFrame(
            {"Action": ["down"]}, index=pd.DatetimeIndex([datetime(2025, 6, 1)])
        )
        assert _rating_changes(df, now) == (0, 1)

    def test_earnings_most_recent_first(self):
        df = pd.DataFrame(
            {"epsActual": [1.0, 1.3], "epsEstimate": [1.1, 1.2]},
            index=pd.to_datetime(["2025-03-31", "2025-06-30"]),
        )
        records = _earnings_records(df)
        assert records[0].actual == 1.3
        assert records[0].surprise_pct == pytest.approx(8.333, rel=1e-3)
        assert records[1].missed


class TestYFinanceMarketData:
    """Tests for YFinanceMarketData with yf.Ticker patched."""

    @pytest.mark.asyncio
    async def test_get_metrics(self):
        with patch(TICKER_PATH) as ticker_cls:
            ticker_cls.return_value = MagicMock(info=INFO)
            metrics = await YFinanceMarketData().get_metrics("acme")

        ticker_cls.assert_called_once_with("ACME")
        assert metrics.ticker == "ACME"
        assert metrics.price == 50.0

    @pytest.mark.asyncio
    async def test_no_price_is_data_unavailable(self):
        with patch(TICKER_PATH) as ticker_cls:
            ticker_cls.return_value = MagicMock(info={"shortName": "Delisted"})
            with pytest.raises(DataUnavailable):
                await YFinanceMarketData().get_metrics("GONE")

    @pytest.mark.asyncio
    async def test_library_error_is_provider_failure(self):
        with patch(TICKER_PATH, side_effect=ConnectionError("reset by peer")):
            with pytest.raises(ProviderFailure) as exc_info:
                await YFinanceMarketData().get_metrics("ACME")
        assert "reset by peer" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_quality_checks(self):
        ticker = MagicMock(
            info=INFO,
            recommendations=pd.DataFrame(
                {"period": ["0m"], "strongBuy": [4], "buy": [4], "hold": [2], "sell": [0], "strongSell": [0]}
            ),
            upgrades_downgrades=pd.DataFrame(),
            earnings_history=pd.DataFrame(
                {"epsActual": [2.2], "epsEstimate": [2.0]},
                index=pd.to_datetime(["2025-06-30"]),
            ),
        )
        with patch(TICKER_PATH, return_value=ticker):
            checks = await YFinanceMarketData().get_quality_checks("ACME")

        assert checks.strong_buy == 4
        assert checks.total_ratings == 10
        assert checks.target_mean_price == 60.0
        assert checks.short_percent_of_float == pytest.approx(3.5)
        assert checks.earnings[0].surprise_pct == pytest.approx(10.0)
        assert checks.upgrades_90d == 0

    @pytest.mark.asyncio
    async def test_price_prefers_fast_info(self):
        ticker = MagicMock(fast_info={"lastPrice": 12.5}, info={"regularMarketPrice": 99.0})
        with patch(TICKER_PATH, return_value=ticker):
            assert await YFinanceMarketData().get_price("ACME") == 12.5

    @pytest.mark.asyncio
    async def test_throttled_calls_fail_once_bucket_is_empty(self):
        """Quote calls beyond the limiter capacity raise ProviderFailure."""
        limiter = RateLimiter("test", calls_per_second=0.001, burst_size=1)
        provider = YFinanceMarketData(rate_limiter=limiter)
        ticker = MagicMock(fast_info={"lastPrice": 12.5})
        with patch(TICKER_PATH, return_value=ticker):
            assert await provider.get_price("ACME") == 12.5
            with pytest.raises(ProviderFailure):
                await provider.get_price("ACME")


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class TestOpenAIAnalysisProvider:
    """Tests for OpenAIAnalysisProvider with a mocked client."""

    @pytest.mark.asyncio
    async def test_analyze_returns_stripped_text(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=completion("  Overall Risk Score: 4/10 \n"))
        provider = OpenAIAnalysisProvider(client=client, model="test-model", max_tokens=500)

        text = await provider.analyze("ACME", AnalysisKind.RISK, {"sector": "Industrials"})

        assert text == "Overall Risk Score: 4/10"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["max_tokens"] == 500
        assert "ACME" in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_analyze_error_returns_none(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=RuntimeError("429"))
        provider = OpenAIAnalysisProvider(client=client)
        assert await provider.analyze("ACME", AnalysisKind.DCF, {}) is None

    @pytest.mark.asyncio
    async def test_empty_completion_returns_none(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=completion(None))
        provider = OpenAIAnalysisProvider(client=client)
        assert await provider.analyze("ACME", AnalysisKind.DCF, {}) is None

    @pytest.mark.asyncio
    async def test_without_key_returns_none(self, monkeypatch):
        monkeypatch.setattr(openai_provider.settings, "openai_api_key", "")
        assert await OpenAIAnalysisProvider().analyze("ACME", AnalysisKind.DCF, {}) is None

    def test_build_prompt(self):
        prompt = OpenAIAnalysisProvider.build_prompt(
            "AAPL",
            AnalysisKind.COMPARABLE,
            {"company_name": "Apple", "sector": "Technology", "current_price": 190.456},
        )
        assert "Apple" in prompt
        assert "$190.46" in prompt
        assert "MSFT, GOOGL, META, NVDA" in prompt

    def test_peers_exclude_self(self):
        assert "XOM" not in peers_for("xom", "Energy")
        assert peers_for("ZZZ", None) == ["AAPL", "MSFT", "GOOGL", "AMZN"]
