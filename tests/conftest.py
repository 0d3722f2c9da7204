"""Pytest configuration and fixtures.

Provides in-process fakes for the market data and analysis providers and an
in-memory implementation of the pipeline store, so the orchestrator and the
rebalance engine can run end to end without network or database access.
"""

from __future__ import annotations

import copy
import uuid
from datetime import UTC, datetime
from typing import Any, Generator, Optional
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from stockfunnel.core.exceptions import DataUnavailable
from stockfunnel.pipeline.schemas import (
    AnalysisKind,
    ComponentScores,
    ConvictionLevel,
    ConvictionResult,
    QualitativeChecks,
    StockMetrics,
    Strategy,
    TriageDecision,
)


# =============================================================================
# Fakes
# =============================================================================


class FakeMarketData:
    """MarketDataProvider backed by dicts."""

    def __init__(
        self,
        metrics: dict[str, StockMetrics] | None = None,
        checks: dict[str, QualitativeChecks] | None = None,
        prices: dict[str, float] | None = None,
    ):
        self.metrics = metrics or {}
        self.checks = checks or {}
        self.prices = prices or {}
        self.metric_calls: list[str] = []

    async def get_metrics(self, ticker: str) -> Optional[StockMetrics]:
        self.metric_calls.append(ticker)
        if ticker not in self.metrics:
            raise DataUnavailable(ticker, "no quote data")
        return self.metrics[ticker]

    async def get_quality_checks(self, ticker: str) -> QualitativeChecks:
        if ticker not in self.checks:
            raise DataUnavailable(ticker, "no checks")
        return self.checks[ticker]

    async def get_price(self, ticker: str) -> Optional[float]:
        return self.prices.get(ticker)


class FakeAnalysisProvider:
    """QualitativeAnalysisProvider returning canned text per ticker."""

    def __init__(
        self,
        texts: dict[str, dict[AnalysisKind, str]] | None = None,
        default: dict[AnalysisKind, str] | None = None,
        fail: set[tuple[str, AnalysisKind]] | None = None,
    ):
        self.texts = texts or {}
        self.default = default or {}
        self.fail = fail or set()
        self.calls: list[tuple[str, AnalysisKind]] = []

    async def analyze(
        self, ticker: str, kind: AnalysisKind, context: dict[str, Any]
    ) -> Optional[str]:
        self.calls.append((ticker, kind))
        if (ticker, kind) in self.fail:
            raise RuntimeError(f"{kind.value} backend down")
        return self.texts.get(ticker, {}).get(kind, self.default.get(kind))


class InMemoryStore:
    """PipelineStore kept in dicts. Rows are copied in and out."""

    def __init__(self):
        self.runs: dict[str, dict[str, Any]] = {}
        self.triage: dict[str, list[dict[str, Any]]] = {}
        self.analyses: dict[tuple[str, str], dict[str, Any]] = {}
        self.portfolios: dict[str, dict[str, Any]] = {}
        self.holdings: dict[tuple[str, str], dict[str, Any]] = {}
        self.transactions: list[dict[str, Any]] = []
        self.snapshots: list[dict[str, Any]] = []
        self.fail_on: set[str] = set()

    def _check(self, op: str) -> None:
        if op in self.fail_on:
            raise RuntimeError(f"{op} unavailable")

    # Runs
    async def create_run(self, run: dict[str, Any]) -> None:
        self._check("create_run")
        self.runs[run["id"]] = copy.deepcopy(run)

    async def update_run(self, run_id: str, **fields: Any) -> None:
        self._check("update_run")
        self.runs[run_id].update(fields)

    async def get_run(self, run_id: str) -> Optional[dict[str, Any]]:
        run = self.runs.get(run_id)
        return copy.deepcopy(run) if run else None

    async def save_triage_decisions(self, run_id: str, decisions: list[dict[str, Any]]) -> None:
        self._check("save_triage_decisions")
        self.triage.setdefault(run_id, []).extend(copy.deepcopy(decisions))

    async def save_stock_analysis(self, run_id: str, ticker: str, data: dict[str, Any]) -> None:
        self._check("save_stock_analysis")
        self.analyses.setdefault((run_id, ticker), {}).update(copy.deepcopy(data))

    # Portfolios
    async def create_portfolio(
        self,
        name: str,
        strategy: str,
        initial_capital: float,
        cash_balance: float,
        run_id: Optional[str] = None,
    ) -> dict[str, Any]:
        self._check("create_portfolio")
        portfolio = {
            "id": str(uuid.uuid4()),
            "name": name,
            "strategy": strategy,
            "initial_capital": initial_capital,
            "cash_balance": cash_balance,
            "construction_run_id": run_id,
            "created_at": datetime.now(UTC),
        }
        self.portfolios[portfolio["id"]] = portfolio
        return dict(portfolio)

    async def get_portfolio(self, portfolio_id: str) -> Optional[dict[str, Any]]:
        portfolio = self.portfolios.get(portfolio_id)
        return dict(portfolio) if portfolio else None

    async def update_portfolio_cash(self, portfolio_id: str, cash_balance: float) -> None:
        self.portfolios[portfolio_id]["cash_balance"] = cash_balance

    async def list_holdings(self, portfolio_id: str) -> list[dict[str, Any]]:
        return [
            dict(h)
            for (pid, _), h in sorted(self.holdings.items())
            if pid == portfolio_id
        ]

    async def upsert_holding(
        self,
        portfolio_id: str,
        ticker: str,
        shares: int,
        avg_cost: float,
        **fields: Any,
    ) -> dict[str, Any]:
        self._check("upsert_holding")
        key = (portfolio_id, ticker)
        existing = self.holdings.get(key)
        if existing:
            total = existing["shares"] + shares
            existing["avg_cost"] = (
                existing["avg_cost"] * existing["shares"] + avg_cost * shares
            ) / total
            existing["shares"] = total
            existing.update({k: v for k, v in fields.items() if v is not None})
        else:
            self.holdings[key] = {
                "portfolio_id": portfolio_id,
                "ticker": ticker,
                "shares": shares,
                "avg_cost": avg_cost,
                "current_price": None,
                "sector": None,
                "company_name": None,
                "conviction_score": None,
                "conviction_level": None,
                "last_analysis_date": None,
                **fields,
            }
        return dict(self.holdings[key])

    async def update_holding(self, portfolio_id: str, ticker: str, **fields: Any) -> None:
        self._check("update_holding")
        self.holdings[(portfolio_id, ticker)].update(fields)

    async def remove_holding(self, portfolio_id: str, ticker: str) -> bool:
        return self.holdings.pop((portfolio_id, ticker), None) is not None

    async def record_transaction(
        self,
        portfolio_id: str,
        ticker: str,
        side: str,
        shares: int,
        price: float,
        reason: Optional[str] = None,
        conviction_score: Optional[int] = None,
        run_id: Optional[str] = None,
    ) -> dict[str, Any]:
        self._check("record_transaction")
        txn = {
            "portfolio_id": portfolio_id,
            "ticker": ticker,
            "side": side,
            "shares": shares,
            "price": price,
            "total_value": round(shares * price, 2),
            "reason": reason,
            "conviction_score": conviction_score,
            "run_id": run_id,
        }
        self.transactions.append(txn)
        return dict(txn)

    async def create_snapshot(
        self,
        portfolio_id: str,
        total_value: float,
        cash_balance: float,
        holdings_value: float,
        holdings_data: list[dict[str, Any]],
        run_id: Optional[str] = None,
    ) -> dict[str, Any]:
        self._check("create_snapshot")
        snapshot = {
            "portfolio_id": portfolio_id,
            "total_value": total_value,
            "cash_balance": cash_balance,
            "holdings_value": holdings_value,
            "holdings_data": holdings_data,
            "run_id": run_id,
        }
        self.snapshots.append(snapshot)
        return dict(snapshot)


# =============================================================================
# Builders
# =============================================================================


def make_metrics(ticker: str, **overrides: Any) -> StockMetrics:
    """Healthy large-cap metrics; override what a test cares about."""
    values: dict[str, Any] = {
        "ticker": ticker,
        "company_name": f"{ticker} Corp",
        "sector": "Technology",
        "price": 100.0,
        "market_cap": 50e9,
        "pe_ratio": 15.0,
        "pb_ratio": 2.0,
        "dividend_yield": 2.0,
        "profit_margin": 20.0,
        "roe": 20.0,
        "current_ratio": 2.0,
        "debt_to_equity": 50.0,
        "revenue_growth": 10.0,
        "earnings_growth": 15.0,
        "beta": 1.0,
        "week52_change": 15.0,
    }
    values.update(overrides)
    return StockMetrics(**values)


def make_conviction(
    ticker: str,
    score: int,
    suggested_weight: float = 4.0,
    max_weight: float = 6.0,
    sector: str | None = "Technology",
    price: float | None = 100.0,
    level: ConvictionLevel = ConvictionLevel.MODERATE,
    composite_upside: float | None = None,
) -> ConvictionResult:
    return ConvictionResult(
        ticker=ticker,
        sector=sector,
        current_price=price,
        strategy=Strategy.BALANCED,
        tier1_score=60,
        tier2_decision=TriageDecision.PASS,
        conviction_score=score,
        conviction_level=level,
        components=ComponentScores(valuation=50, sentiment=50, risk=50, earnings=50, quality=60),
        composite_upside=composite_upside,
        suggested_weight=suggested_weight,
        max_weight=max_weight,
        reasoning=f"{level.value} conviction ({score}/100) for balanced strategy.",
    )


BULLISH_TEXTS = {
    AnalysisKind.DCF: "INTRINSIC VALUE PER SHARE: $150.00\nThis implies 50% upside.",
    AnalysisKind.COMPARABLE: "Implied value: $140. Trades at a 40% upside to peers.",
    AnalysisKind.SENTIMENT: "Overall sentiment is very bullish with several strong buy ratings.",
    AnalysisKind.RISK: "Balance sheet is clean.\nOverall Risk Score: 2/10",
    AnalysisKind.EARNINGS: "Beat estimates by 8% and raised full-year guidance, +12% growth.",
}

BEARISH_TEXTS = {
    AnalysisKind.DCF: "INTRINSIC VALUE PER SHARE: $60.00\nThis implies 40% downside.",
    AnalysisKind.COMPARABLE: "Implied value: $70. Roughly 30% downside versus peers.",
    AnalysisKind.SENTIMENT: "Sentiment is very bearish; analysts sell the name.",
    AnalysisKind.RISK: "High beta and max drawdown of -45%.\nOverall Risk Score: 9/10",
    AnalysisKind.EARNINGS: "Missed estimates by 12% and lowered guidance for the year.",
}


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def bullish_provider() -> FakeAnalysisProvider:
    return FakeAnalysisProvider(default=BULLISH_TEXTS)


@pytest.fixture
def api_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def client(api_store: InMemoryStore) -> Generator[TestClient, None, None]:
    """Test client with the store dependency swapped for the in-memory one.

    Used without a context manager so the lifespan never touches Postgres.
    """
    from stockfunnel.api.app import create_api_app
    from stockfunnel.api.dependencies import get_store

    app = create_api_app()
    app.dependency_overrides[get_store] = lambda: api_store
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def mock_db_health(mocker):
    """Patch the database health check; set ``return_value`` per test."""
    return mocker.patch(
        "stockfunnel.api.routes.health.db_healthcheck",
        new_callable=AsyncMock,
        return_value=True,
    )
