"""
PostgreSQL-backed pipeline store.

Thin adapter that exposes the module-level ORM repositories as one object
satisfying ``PipelineStore``, so the orchestrator and rebalance engine can
be handed either this or an in-memory store.
"""

from __future__ import annotations

from typing import Any, Optional

from stockfunnel.repositories import portfolios_orm, runs_orm


class OrmPipelineStore:
    """PipelineStore over the SQLAlchemy repositories."""

    # Runs
    async def create_run(self, run: dict[str, Any]) -> None:
        await runs_orm.create_run(run)

    async def update_run(self, run_id: str, **fields: Any) -> None:
        await runs_orm.update_run(run_id, **fields)

    async def get_run(self, run_id: str) -> Optional[dict[str, Any]]:
        return await runs_orm.get_run(run_id)

    async def save_triage_decisions(
        self, run_id: str, decisions: list[dict[str, Any]]
    ) -> None:
        await runs_orm.save_triage_decisions(run_id, decisions)

    async def save_stock_analysis(
        self, run_id: str, ticker: str, data: dict[str, Any]
    ) -> None:
        await runs_orm.save_stock_analysis(run_id, ticker, data)

    # Portfolios
    async def create_portfolio(
        self,
        name: str,
        strategy: str,
        initial_capital: float,
        cash_balance: float,
        run_id: Optional[str] = None,
    ) -> dict[str, Any]:
        return await portfolios_orm.create_portfolio(
            name, strategy, initial_capital, cash_balance, run_id=run_id
        )

    async def get_portfolio(self, portfolio_id: str) -> Optional[dict[str, Any]]:
        return await portfolios_orm.get_portfolio(portfolio_id)

    async def update_portfolio_cash(self, portfolio_id: str, cash_balance: float) -> None:
        await portfolios_orm.update_portfolio_cash(portfolio_id, cash_balance)

    async def list_holdings(self, portfolio_id: str) -> list[dict[str, Any]]:
        return await portfolios_orm.list_holdings(portfolio_id)

    async def upsert_holding(
        self,
        portfolio_id: str,
        ticker: str,
        shares: int,
        avg_cost: float,
        **fields: Any,
    ) -> dict[str, Any]:
        return await portfolios_orm.upsert_holding(
            portfolio_id, ticker, shares, avg_cost, **fields
        )

    async def update_holding(self, portfolio_id: str, ticker: str, **fields: Any) -> None:
        await portfolios_orm.update_holding(portfolio_id, ticker, **fields)

    async def remove_holding(self, portfolio_id: str, ticker: str) -> bool:
        return await portfolios_orm.remove_holding(portfolio_id, ticker)

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
        return await portfolios_orm.record_transaction(
            portfolio_id,
            ticker,
            side,
            shares,
            price,
            reason=reason,
            conviction_score=conviction_score,
            run_id=run_id,
        )

    async def create_snapshot(
        self,
        portfolio_id: str,
        total_value: float,
        cash_balance: float,
        holdings_value: float,
        holdings_data: list[dict[str, Any]],
        run_id: Optional[str] = None,
    ) -> dict[str, Any]:
        return await portfolios_orm.create_snapshot(
            portfolio_id,
            total_value,
            cash_balance,
            holdings_value,
            holdings_data,
            run_id=run_id,
        )
