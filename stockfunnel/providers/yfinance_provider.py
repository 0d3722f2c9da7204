"""
yfinance-backed market data provider.

All yfinance calls are blocking and run in a dedicated thread pool. Yahoo
reports margins, returns, growth, 52-week change and short interest as
fractions; they are converted to percent here so the pipeline only ever
sees percent units. Dividend yield already arrives in percent.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pandas as pd
import yfinance as yf

from stockfunnel.core.exceptions import DataUnavailable, ProviderFailure
from stockfunnel.core.logging import get_logger
from stockfunnel.core.rate_limiter import RateLimiter
from stockfunnel.data.universe import sector_for
from stockfunnel.pipeline.schemas import EarningsRecord, QualitativeChecks, StockMetrics


logger = get_logger("providers.yfinance")

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="yfinance")

RATING_WINDOW_DAYS = 90
RATING_EVENTS_CHECKED = 20


def _safe_float(value: Any) -> Optional[float]:
    """Safely convert value to float."""
    if value is None:
        return None
    try:
        f = float(value)
        if f != f or f == float("inf") or f == float("-inf"):
            return None
        return f
    except (ValueError, TypeError):
        return None


def _pct(value: Any) -> Optional[float]:
    f = _safe_float(value)
    return f * 100 if f is not None else None


def _safe_int(value: Any) -> int:
    f = _safe_float(value)
    return int(f) if f is not None else 0


def metrics_from_info(ticker: str, info: dict[str, Any]) -> StockMetrics:
    """Map a yfinance ``info`` dict onto a metrics snapshot."""
    return StockMetrics(
        ticker=ticker,
        company_name=info.get("shortName") or info.get("longName"),
        sector=info.get("sector") or sector_for(ticker),
        price=_safe_float(info.get("regularMarketPrice") or info.get("currentPrice")),
        market_cap=_safe_float(info.get("marketCap")),
        pe_ratio=_safe_float(info.get("trailingPE")),
        pb_ratio=_safe_float(info.get("priceToBook")),
        ps_ratio=_safe_float(info.get("priceToSalesTrailing12Months")),
        dividend_yield=_safe_float(info.get("dividendYield")),
        profit_margin=_pct(info.get("profitMargins")),
        roe=_pct(info.get("returnOnEquity")),
        current_ratio=_safe_float(info.get("currentRatio")),
        debt_to_equity=_safe_float(info.get("debtToEquity")),
        revenue_growth=_pct(info.get("revenueGrowth")),
        earnings_growth=_pct(info.get("earningsGrowth")),
        beta=_safe_float(info.get("beta")),
        week52_change=_pct(info.get("52WeekChange")),
    )


def _latest_recommendations(df: Optional[pd.DataFrame]) -> dict[str, int]:
    counts = {"strong_buy": 0, "buy": 0, "hold": 0, "sell": 0, "strong_sell": 0}
    if df is None or df.empty:
        return counts
    row = df.iloc[0]
    if "period" in df.columns:
        current = df[df["period"] == "0m"]
        if not current.empty:
            row = current.iloc[0]
    for column, key in (
        ("strongBuy", "strong_buy"),
        ("buy", "buy"),
        ("hold", "hold"),
        ("sell", "sell"),
        ("strongSell", "strong_sell"),
    ):
        counts[key] = _safe_int(row.get(column))
    return counts


def _rating_changes(df: Optional[pd.DataFrame], now: datetime) -> tuple[int, int]:
    """Upgrades (including initiations) and downgrades in the last 90 days."""
    if df is None or df.empty or "Action" not in df.columns:
        return 0, 0
    cutoff = now - timedelta(days=RATING_WINDOW_DAYS)
    events = df.sort_index(ascending=False).head(RATING_EVENTS_CHECKED)
    up = down = 0
    for when, row in events.iterrows():
        stamp = pd.Timestamp(when)
        if stamp.tzinfo is None:
            stamp = stamp.tz_localize(timezone.utc)
        if stamp.to_pydatetime() <= cutoff:
            continue
        action = str(row.get("Action") or "").lower()
        if "up" in action or "init" in action:
            up += 1
        elif "down" in action:
            down += 1
    return up, down


def _earnings_records(df: Optional[pd.DataFrame]) -> list[EarningsRecord]:
    """Quarterly EPS actual vs estimate, most recent first."""
    if df is None or df.empty:
        return []
    records = []
    for _, row in df.sort_index(ascending=False).iterrows():
        records.append(
            EarningsRecord(
                actual=_safe_float(row.get("epsActual")),
                estimate=_safe_float(row.get("epsEstimate")),
            )
        )
    return records


class YFinanceMarketData:
    """MarketDataProvider over yfinance.

    ``get_metrics`` is not throttled here because the batch screener owns
    the limiter for that path; triage checks and quotes acquire from the
    optional ``rate_limiter``.
    """

    def __init__(self, rate_limiter: Optional[RateLimiter] = None):
        self._limiter = rate_limiter

    def _throttle(self, ticker: str) -> None:
        if self._limiter is not None and not self._limiter.acquire_sync():
            raise ProviderFailure(f"Rate limit timeout for {ticker}")

    # =========================================================================
    # Sync calls (thread pool)
    # =========================================================================

    def _fetch_metrics_sync(self, ticker: str) -> StockMetrics:
        info = yf.Ticker(ticker).info or {}
        if not info or (
            info.get("regularMarketPrice") is None and info.get("currentPrice") is None
        ):
            raise DataUnavailable(ticker, "no quote data")
        return metrics_from_info(ticker, info)

    def _fetch_checks_sync(self, ticker: str) -> QualitativeChecks:
        self._throttle(ticker)
        t = yf.Ticker(ticker)
        info = t.info or {}
        if not info:
            raise DataUnavailable(ticker, "no quote data")

        recommendations = _latest_recommendations(t.recommendations)
        up, down = _rating_changes(t.upgrades_downgrades, datetime.now(timezone.utc))

        return QualitativeChecks(
            ticker=ticker,
            **recommendations,
            target_mean_price=_safe_float(info.get("targetMeanPrice")),
            current_price=_safe_float(
                info.get("regularMarketPrice") or info.get("currentPrice")
            ),
            short_percent_of_float=_pct(info.get("shortPercentOfFloat")),
            earnings=_earnings_records(t.earnings_history),
            beta=_safe_float(info.get("beta")),
            upgrades_90d=up,
            downgrades_90d=down,
        )

    def _fetch_price_sync(self, ticker: str) -> Optional[float]:
        self._throttle(ticker)
        t = yf.Ticker(ticker)
        price = _safe_float(t.fast_info.get("lastPrice"))
        if price is None:
            price = _safe_float((t.info or {}).get("regularMarketPrice"))
        return price

    # =========================================================================
    # Async API
    # =========================================================================

    async def _run(self, fn, ticker: str):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(_executor, fn, ticker)
        except (DataUnavailable, ProviderFailure):
            raise
        except Exception as e:
            raise ProviderFailure(f"yfinance error for {ticker}: {e}") from e

    async def get_metrics(self, ticker: str) -> Optional[StockMetrics]:
        return await self._run(self._fetch_metrics_sync, ticker.upper())

    async def get_quality_checks(self, ticker: str) -> QualitativeChecks:
        return await self._run(self._fetch_checks_sync, ticker.upper())

    async def get_price(self, ticker: str) -> Optional[float]:
        return await self._run(self._fetch_price_sync, ticker.upper())
