"""Portfolio API routes."""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends

from stockfunnel.api.dependencies import get_rebalance_engine, get_store
from stockfunnel.api.schemas import HoldingResponse, PortfolioDetailResponse
from stockfunnel.core.exceptions import NotFoundError
from stockfunnel.pipeline.rebalance import RebalanceEngine
from stockfunnel.pipeline.schemas import RebalanceConfig, RebalanceResult
from stockfunnel.repositories.protocols import PipelineStore


router = APIRouter(prefix="/portfolios", tags=["Portfolios"])


@router.get("/{portfolio_id}", response_model=PortfolioDetailResponse)
async def get_portfolio(
    portfolio_id: str,
    store: PipelineStore = Depends(get_store),
) -> PortfolioDetailResponse:
    portfolio = await store.get_portfolio(portfolio_id)
    if not portfolio:
        raise NotFoundError(f"Portfolio {portfolio_id} not found")

    holdings = []
    for h in await store.list_holdings(portfolio_id):
        price = float(h.get("current_price") or h["avg_cost"])
        holdings.append(
            HoldingResponse(
                ticker=h["ticker"],
                shares=int(h["shares"]),
                avg_cost=float(h["avg_cost"]),
                current_price=h.get("current_price"),
                sector=h.get("sector"),
                company_name=h.get("company_name"),
                conviction_score=h.get("conviction_score"),
                conviction_level=h.get("conviction_level"),
                market_value=round(int(h["shares"]) * price, 2),
            )
        )
    cash = float(portfolio["cash_balance"])
    holdings_value = round(sum(h.market_value for h in holdings), 2)
    return PortfolioDetailResponse(
        id=portfolio["id"],
        name=portfolio["name"],
        strategy=portfolio["strategy"],
        initial_capital=float(portfolio["initial_capital"]),
        cash_balance=cash,
        holdings_value=holdings_value,
        total_value=round(cash + holdings_value, 2),
        holdings=holdings,
    )


@router.post(
    "/{portfolio_id}/rebalance",
    response_model=RebalanceResult,
    summary="Monthly review",
    description="Re-analyze holdings and propose (or execute) a bounded set of trades.",
)
async def rebalance_portfolio(
    portfolio_id: str,
    config: RebalanceConfig = Body(default_factory=RebalanceConfig),
    engine: RebalanceEngine = Depends(get_rebalance_engine),
) -> RebalanceResult:
    return await engine.rebalance(portfolio_id, config)
