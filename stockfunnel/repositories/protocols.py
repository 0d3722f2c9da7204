"""
Persistence protocols used by the pipeline.

Rows travel as plain dicts, matching what the ORM repositories return.
"""

from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class RunStore(Protocol):
    """Run ledger and per-ticker analysis persistence."""

    async def create_run(self, run: dict[str, Any]) -> None:
        ...

    async def update_run(self, run_id: str, **fields: Any) -> None:
        ...

    async def get_run(self, run_id: str) -> Optional[dict[str, Any]]:
        ...

    async def save_triage_decisions(
        self, run_id: str, decisions: list[dict[str, Any]]
    ) -> None:
        ...

    async def save_stock_analysis(
        self, run_id: str, ticker: str, data: dict[str, Any]
    ) -> None:
        """Insert or update the analysis row for (run_id, ticker)."""
        ...


@runtime_checkable
class PortfolioStore(Protocol):
    """Portfolios, holdings, transactions and snapshots."""

    async def create_portfolio(
        self,
        name: str,
        strategy: str,
        initial_capital: float,
        cash_balance: float,
        run_id: Optional[str] = None,
    ) -> dict[str, Any]:
        ...

    async def get_portfolio(self, portfolio_id: str) -> Optional[dict[str, Any]]:
        ...

    async def update_portfolio_cash(self, portfolio_id: str, cash_balance: float) -> None:
        ...

    async def list_holdings(self, portfolio_id: str) -> list[dict[str, Any]]:
        ...

    async def upsert_holding(
        self,
        portfolio_id: str,
        ticker: str,
        shares: int,
        avg_cost: float,
        **fields: Any,
    ) -> dict[str, Any]:
        """Add shares to a holding, averaging cost basis by share count."""
        ...

    async def update_holding(self, portfolio_id: str, ticker: str, **fields: Any) -> None:
        ...

    async def remove_holding(self, portfolio_id: str, ticker: str) -> bool:
        ...

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
        ...

    async def create_snapshot(
        self,
        portfolio_id: str,
        total_value: float,
        cash_balance: float,
        holdings_value: float,
        holdings_data: list[dict[str, Any]],
        run_id: Optional[str] = None,
    ) -> dict[str, Any]:
        ...


@runtime_checkable
class PipelineStore(RunStore, PortfolioStore, Protocol):
    """Everything the orchestrator and rebalance engine persist."""
