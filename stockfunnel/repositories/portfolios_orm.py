"""Portfolio repository - SQLAlchemy ORM async."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, desc, func, select, update
from sqlalchemy.dialects.postgresql import insert

from stockfunnel.database.connection import get_session
from stockfunnel.database.orm import Holding, Portfolio, Snapshot, Transaction


HOLDING_FIELDS = frozenset(
    {
        "shares",
        "avg_cost",
        "current_price",
        "sector",
        "company_name",
        "conviction_score",
        "conviction_level",
        "last_analysis_date",
    }
)


def _dec(value: Any) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None


def _num(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


# ───────────────────────────────────────────────────────────────────────────────
# Portfolio CRUD
# ───────────────────────────────────────────────────────────────────────────────


def _portfolio_to_dict(p: Portfolio) -> dict[str, Any]:
    """Convert Portfolio ORM object to dictionary."""
    return {
        "id": p.id,
        "name": p.name,
        "strategy": p.strategy,
        "initial_capital": _num(p.initial_capital),
        "cash_balance": _num(p.cash_balance),
        "construction_run_id": p.construction_run_id,
        "created_at": p.created_at,
        "updated_at": p.updated_at,
    }


async def create_portfolio(
    name: str,
    strategy: str,
    initial_capital: float,
    cash_balance: float,
    run_id: str | None = None,
) -> dict[str, Any]:
    """Create a new portfolio."""
    async with get_session() as session:
        portfolio = Portfolio(
            name=name,
            strategy=strategy,
            initial_capital=_dec(initial_capital),
            cash_balance=_dec(cash_balance),
            construction_run_id=run_id,
        )
        session.add(portfolio)
        await session.commit()
        await session.refresh(portfolio)
        return _portfolio_to_dict(portfolio)


async def get_portfolio(portfolio_id: str) -> dict[str, Any] | None:
    async with get_session() as session:
        portfolio = await session.get(Portfolio, portfolio_id)
        return _portfolio_to_dict(portfolio) if portfolio else None


async def list_portfolios(limit: int = 50) -> list[dict[str, Any]]:
    """Most recently created portfolios first."""
    async with get_session() as session:
        result = await session.execute(
            select(Portfolio).order_by(desc(Portfolio.created_at)).limit(limit)
        )
        return [_portfolio_to_dict(p) for p in result.scalars().all()]


async def update_portfolio_cash(portfolio_id: str, cash_balance: float) -> None:
    async with get_session() as session:
        await session.execute(
            update(Portfolio)
            .where(Portfolio.id == portfolio_id)
            .values(cash_balance=_dec(cash_balance), updated_at=datetime.now(UTC))
        )
        await session.commit()


# ───────────────────────────────────────────────────────────────────────────────
# Holdings
# ───────────────────────────────────────────────────────────────────────────────


def _holding_to_dict(h: Holding) -> dict[str, Any]:
    """Convert Holding ORM object to dictionary."""
    return {
        "id": h.id,
        "portfolio_id": h.portfolio_id,
        "ticker": h.ticker,
        "company_name": h.company_name,
        "sector": h.sector,
        "shares": h.shares,
        "avg_cost": _num(h.avg_cost),
        "current_price": _num(h.current_price),
        "conviction_score": h.conviction_score,
        "conviction_level": h.conviction_level,
        "last_analysis_date": h.last_analysis_date,
        "updated_at": h.updated_at,
    }


async def list_holdings(portfolio_id: str) -> list[dict[str, Any]]:
    async with get_session() as session:
        result = await session.execute(
            select(Holding)
            .where(Holding.portfolio_id == portfolio_id)
            .order_by(Holding.ticker)
        )
        return [_holding_to_dict(h) for h in result.scalars().all()]


async def upsert_holding(
    portfolio_id: str,
    ticker: str,
    shares: int,
    avg_cost: float,
    **fields: Any,
) -> dict[str, Any]:
    """Add shares to a holding.

    An existing position keeps a share-weighted average cost; descriptive
    fields only overwrite when a new value is given.
    """
    extra = {k: v for k, v in fields.items() if k in HOLDING_FIELDS - {"shares", "avg_cost"}}
    if "current_price" in extra:
        extra["current_price"] = _dec(extra["current_price"])

    async with get_session() as session:
        stmt = insert(Holding).values(
            portfolio_id=portfolio_id,
            ticker=ticker.upper(),
            shares=shares,
            avg_cost=_dec(avg_cost),
            **extra,
        )
        total_shares = Holding.shares + stmt.excluded.shares
        stmt = stmt.on_conflict_do_update(
            constraint="uq_holdings_portfolio_ticker",
            set_={
                "shares": total_shares,
                "avg_cost": (
                    Holding.avg_cost * Holding.shares
                    + stmt.excluded.avg_cost * stmt.excluded.shares
                )
                / func.nullif(total_shares, 0),
                **{
                    key: func.coalesce(stmt.excluded[key], getattr(Holding, key))
                    for key in extra
                },
                "updated_at": datetime.now(UTC),
            },
        )
        await session.execute(stmt)
        await session.commit()

        result = await session.execute(
            select(Holding).where(
                Holding.portfolio_id == portfolio_id,
                Holding.ticker == ticker.upper(),
            )
        )
        return _holding_to_dict(result.scalar_one())


async def update_holding(portfolio_id: str, ticker: str, **fields: Any) -> None:
    unknown = set(fields) - HOLDING_FIELDS
    if unknown:
        raise ValueError(f"Unknown holding fields: {sorted(unknown)}")
    if "shares" in fields and fields["shares"] <= 0:
        raise ValueError("Holding shares must be positive; remove the holding instead")
    values = dict(fields)
    for key in ("avg_cost", "current_price"):
        if key in values:
            values[key] = _dec(values[key])

    async with get_session() as session:
        await session.execute(
            update(Holding)
            .where(Holding.portfolio_id == portfolio_id, Holding.ticker == ticker.upper())
            .values(**values, updated_at=datetime.now(UTC))
        )
        await session.commit()


async def remove_holding(portfolio_id: str, ticker: str) -> bool:
    async with get_session() as session:
        result = await session.execute(
            delete(Holding).where(
                Holding.portfolio_id == portfolio_id,
                Holding.ticker == ticker.upper(),
            )
        )
        await session.commit()
        return result.rowcount > 0


# ───────────────────────────────────────────────────────────────────────────────
# Transactions & snapshots
# ───────────────────────────────────────────────────────────────────────────────


def _transaction_to_dict(t: Transaction) -> dict[str, Any]:
    """Convert Transaction ORM object to dictionary."""
    return {
        "id": t.id,
        "portfolio_id": t.portfolio_id,
        "ticker": t.ticker,
        "side": t.action,
        "shares": t.shares,
        "price": _num(t.price),
        "total_value": _num(t.total_value),
        "reason": t.reason,
        "conviction_score": t.conviction_score,
        "run_id": t.run_id,
        "executed_at": t.executed_at,
    }


async def record_transaction(
    portfolio_id: str,
    ticker: str,
    side: str,
    shares: int,
    price: float,
    reason: str | None = None,
    conviction_score: int | None = None,
    run_id: str | None = None,
) -> dict[str, Any]:
    async with get_session() as session:
        txn = Transaction(
            portfolio_id=portfolio_id,
            ticker=ticker.upper(),
            action=side,
            shares=shares,
            price=_dec(price),
            total_value=_dec(round(shares * price, 2)),
            reason=reason,
            conviction_score=conviction_score,
            run_id=run_id,
        )
        session.add(txn)
        await session.commit()
        await session.refresh(txn)
        return _transaction_to_dict(txn)


async def list_transactions(portfolio_id: str, limit: int = 100) -> list[dict[str, Any]]:
    async with get_session() as session:
        result = await session.execute(
            select(Transaction)
            .where(Transaction.portfolio_id == portfolio_id)
            .order_by(desc(Transaction.executed_at))
            .limit(limit)
        )
        return [_transaction_to_dict(t) for t in result.scalars().all()]


async def create_snapshot(
    portfolio_id: str,
    total_value: float,
    cash_balance: float,
    holdings_value: float,
    holdings_data: list[dict[str, Any]],
    run_id: str | None = None,
) -> dict[str, Any]:
    async with get_session() as session:
        snapshot = Snapshot(
            portfolio_id=portfolio_id,
            total_value=_dec(total_value),
            cash_balance=_dec(cash_balance),
            holdings_value=_dec(holdings_value),
            holdings_data=holdings_data,
            run_id=run_id,
        )
        session.add(snapshot)
        await session.commit()
        await session.refresh(snapshot)
        return {
            "id": snapshot.id,
            "portfolio_id": snapshot.portfolio_id,
            "total_value": _num(snapshot.total_value),
            "cash_balance": _num(snapshot.cash_balance),
            "holdings_value": _num(snapshot.holdings_value),
            "holdings_data": snapshot.holdings_data,
            "run_id": snapshot.run_id,
            "snapshot_at": snapshot.snapshot_at,
        }
