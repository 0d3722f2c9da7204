"""Pipeline run repository - SQLAlchemy ORM async.

Covers the run ledger, Tier 2 triage decisions and Tier 3 stock analyses.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import desc, select, update
from sqlalchemy.dialects.postgresql import insert

from stockfunnel.database.connection import get_session
from stockfunnel.database.orm import PortfolioRun, StockAnalysis, TriageRecord


RUN_FIELDS = frozenset(c.key for c in PortfolioRun.__table__.columns)
ANALYSIS_FIELDS = frozenset(c.key for c in StockAnalysis.__table__.columns) - {
    "id",
    "run_id",
    "ticker",
    "created_at",
    "updated_at",
}
ANALYSIS_DECIMALS = frozenset(
    {
        "current_price",
        "dcf_intrinsic_value",
        "comparable_implied_value",
        "dcf_upside_pct",
        "raw_risk_score",
        "suggested_weight",
    }
)
TRIAGE_DETAIL_KEYS = (
    "sector",
    "company_name",
    "analyst_consensus",
    "target_upside",
    "short_interest_risk",
    "earnings_sentiment",
    "risk_level",
    "rating_trend",
)


def _column_value(value: Any) -> Any:
    """Enums are stored by value."""
    if isinstance(value, Enum):
        return value.value
    return value


# ───────────────────────────────────────────────────────────────────────────────
# Runs
# ───────────────────────────────────────────────────────────────────────────────


def _run_to_dict(r: PortfolioRun) -> dict[str, Any]:
    """Convert PortfolioRun ORM object to dictionary."""
    return {key: getattr(r, key) for key in sorted(RUN_FIELDS)}


async def create_run(run: dict[str, Any]) -> None:
    values = {k: _column_value(v) for k, v in run.items() if k in RUN_FIELDS}
    async with get_session() as session:
        session.add(PortfolioRun(**values))
        await session.commit()


async def update_run(run_id: str, **fields: Any) -> None:
    unknown = set(fields) - RUN_FIELDS
    if unknown:
        raise ValueError(f"Unknown run fields: {sorted(unknown)}")
    async with get_session() as session:
        await session.execute(
            update(PortfolioRun)
            .where(PortfolioRun.id == run_id)
            .values(**{k: _column_value(v) for k, v in fields.items()})
        )
        await session.commit()


async def get_run(run_id: str) -> dict[str, Any] | None:
    async with get_session() as session:
        run = await session.get(PortfolioRun, run_id)
        return _run_to_dict(run) if run else None


async def list_runs(portfolio_id: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
    async with get_session() as session:
        query = select(PortfolioRun).order_by(desc(PortfolioRun.started_at)).limit(limit)
        if portfolio_id:
            query = query.where(PortfolioRun.portfolio_id == portfolio_id)
        result = await session.execute(query)
        return [_run_to_dict(r) for r in result.scalars().all()]


# ───────────────────────────────────────────────────────────────────────────────
# Triage decisions
# ───────────────────────────────────────────────────────────────────────────────


async def save_triage_decisions(run_id: str, decisions: list[dict[str, Any]]) -> None:
    if not decisions:
        return
    async with get_session() as session:
        session.add_all(
            TriageRecord(
                run_id=run_id,
                ticker=d["ticker"],
                tier1_score=d["tier1_score"],
                decision=_column_value(d["decision"]),
                red_flags=list(d.get("red_flags") or []),
                green_flags=list(d.get("green_flags") or []),
                reasoning=d.get("reasoning"),
                details={k: d.get(k) for k in TRIAGE_DETAIL_KEYS if d.get(k) is not None},
            )
            for d in decisions
        )
        await session.commit()


async def list_triage_decisions(run_id: str) -> list[dict[str, Any]]:
    async with get_session() as session:
        result = await session.execute(
            select(TriageRecord)
            .where(TriageRecord.run_id == run_id)
            .order_by(desc(TriageRecord.tier1_score))
        )
        return [
            {
                "ticker": t.ticker,
                "tier1_score": t.tier1_score,
                "decision": t.decision,
                "red_flags": t.red_flags,
                "green_flags": t.green_flags,
                "reasoning": t.reasoning,
                **(t.details or {}),
            }
            for t in result.scalars().all()
        ]


# ───────────────────────────────────────────────────────────────────────────────
# Stock analyses
# ───────────────────────────────────────────────────────────────────────────────


async def save_stock_analysis(run_id: str, ticker: str, data: dict[str, Any]) -> None:
    """Insert or update the analysis row for (run_id, ticker)."""
    values: dict[str, Any] = {}
    for key, value in data.items():
        if key not in ANALYSIS_FIELDS:
            continue
        value = _column_value(value)
        if key in ANALYSIS_DECIMALS and value is not None:
            value = Decimal(str(value))
        values[key] = value

    async with get_session() as session:
        stmt = insert(StockAnalysis).values(run_id=run_id, ticker=ticker.upper(), **values)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_stock_analyses_run_ticker",
            set_={
                **{key: stmt.excluded[key] for key in values},
                "updated_at": datetime.now(UTC),
            },
        )
        await session.execute(stmt)
        await session.commit()


async def list_stock_analyses(run_id: str) -> list[dict[str, Any]]:
    async with get_session() as session:
        result = await session.execute(
            select(StockAnalysis)
            .where(StockAnalysis.run_id == run_id)
            .order_by(desc(StockAnalysis.conviction_score))
        )
        rows = []
        for a in result.scalars().all():
            row = {"ticker": a.ticker}
            for key in sorted(ANALYSIS_FIELDS):
                value = getattr(a, key)
                row[key] = float(value) if isinstance(value, Decimal) else value
            rows.append(row)
        return rows
