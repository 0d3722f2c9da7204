"""
Monthly portfolio review.

Re-analyzes every holding, classifies it (HOLD/TRIM/SELL/ADD), optionally
screens the universe for replacements, turns everything into a bounded
trade list and, when asked, executes it against the portfolio store.
"""

from __future__ import annotations

import asyncio
import math
from datetime import UTC, datetime
from typing import Any, Iterable

from stockfunnel.core.exceptions import NotFoundError
from stockfunnel.core.logging import get_logger, run_id_var
from stockfunnel.core.rate_limiter import RateLimiter
from stockfunnel.pipeline.ledger import PipelineRunLedger
from stockfunnel.pipeline.research import ResearchRunner, analysis_row
from stockfunnel.pipeline.schemas import (
    ConvictionInput,
    ConvictionResult,
    ExecutedTrade,
    HoldingAction,
    HoldingReview,
    RebalanceConfig,
    RebalanceResult,
    RunStatus,
    RunType,
    Strategy,
    Tier1Config,
    Trade,
    TradeAction,
    TriageCandidate,
    TriageDecision,
)
from stockfunnel.pipeline.screener import BatchScreener, apply_tier1_filter
from stockfunnel.pipeline.triage import TriageEngine
from stockfunnel.providers.base import MarketDataProvider, QualitativeAnalysisProvider
from stockfunnel.repositories.protocols import PipelineStore


logger = get_logger("pipeline.rebalance")

HIGH_CONVICTION = 70
TRIM_TARGET_OF_MAX = 0.8
ADD_TARGET_OF_MIN = 1.5
NEW_CANDIDATE_TIER1 = Tier1Config(min_score=55, max_candidates=50)
NEW_CANDIDATE_TRIAGE_LIMIT = 30
RESTORED_HOLDING_FIELDS = (
    "current_price",
    "sector",
    "company_name",
    "conviction_score",
    "conviction_level",
    "last_analysis_date",
)


def classify_holding(
    conviction: int,
    weight: float,
    config: RebalanceConfig,
) -> tuple[HoldingAction, str]:
    """Decide what to do with a holding from its fresh conviction and weight."""
    if conviction < config.sell_threshold:
        return (
            HoldingAction.SELL,
            f"Conviction dropped to {conviction} (below {config.sell_threshold} threshold)",
        )
    if conviction < config.hold_threshold:
        return (
            HoldingAction.TRIM,
            f"Low conviction ({conviction}), consider reducing position",
        )
    if weight > config.max_position_pct and conviction < HIGH_CONVICTION:
        return (
            HoldingAction.TRIM,
            f"Position oversized ({weight:.1f}%) with moderate conviction",
        )
    if weight < config.min_position_pct and conviction >= HIGH_CONVICTION:
        return (
            HoldingAction.ADD,
            f"Undersized position ({weight:.1f}%) with high conviction",
        )
    return HoldingAction.HOLD, f"Conviction {conviction}/100 - maintain position"


def generate_trades(
    reviews: list[HoldingReview],
    new_candidates: list[ConvictionResult],
    cash: float,
    total_value: float,
    config: RebalanceConfig,
) -> tuple[list[Trade], float]:
    """Build the prioritized trade list and its turnover percent.

    Sells never exceed the shares held and buys never spend more than the
    cash left after keeping the target cash buffer.
    """
    trades: list[Trade] = []
    priority = 1

    sells = sorted(
        (r for r in reviews if r.action == HoldingAction.SELL),
        key=lambda r: r.new_conviction,
    )[: config.max_sells]
    for r in sells:
        trades.append(
            Trade(
                priority=priority,
                ticker=r.ticker,
                action=TradeAction.SELL,
                shares=r.shares,
                price=r.current_price,
                value=r.shares * r.current_price,
                reason=r.reason,
                conviction_score=r.new_conviction,
                sector=r.sector,
            )
        )
        priority += 1

    trims = sorted(
        (r for r in reviews if r.action == HoldingAction.TRIM),
        key=lambda r: r.new_conviction,
    )
    target_value = total_value * config.max_position_pct * TRIM_TARGET_OF_MAX / 100
    for r in trims:
        if r.current_price <= 0:
            continue
        shares = min(math.floor((r.market_value - target_value) / r.current_price), r.shares)
        if shares > 0:
            trades.append(
                Trade(
                    priority=priority,
                    ticker=r.ticker,
                    action=TradeAction.TRIM,
                    shares=shares,
                    price=r.current_price,
                    value=shares * r.current_price,
                    reason=r.reason,
                    conviction_score=r.new_conviction,
                    sector=r.sector,
                )
            )
            priority += 1

    proceeds = sum(t.value for t in trades)
    remaining = max(0.0, cash + proceeds - total_value * config.target_cash_pct / 100)

    adds = sorted(
        (r for r in reviews if r.action == HoldingAction.ADD),
        key=lambda r: -r.new_conviction,
    )
    for r in adds:
        if r.current_price <= 0:
            continue
        additional = total_value * config.min_position_pct * ADD_TARGET_OF_MIN / 100 - r.market_value
        shares = math.floor(min(additional, remaining) / r.current_price)
        if shares > 0 and remaining >= shares * r.current_price:
            trades.append(
                Trade(
                    priority=priority,
                    ticker=r.ticker,
                    action=TradeAction.ADD,
                    shares=shares,
                    price=r.current_price,
                    value=shares * r.current_price,
                    reason=r.reason,
                    conviction_score=r.new_conviction,
                    sector=r.sector,
                )
            )
            priority += 1
            remaining -= shares * r.current_price

    held = {r.ticker for r in reviews}
    buys = 0
    ranked = sorted(enumerate(new_candidates), key=lambda e: (-e[1].conviction_score, e[0]))
    for _, c in ranked:
        if buys >= config.max_buys or remaining < total_value * config.min_position_pct / 100:
            break
        if c.ticker in held or not c.current_price or c.current_price <= 0:
            continue
        if c.conviction_score < config.buy_threshold:
            logger.info(
                f"Skipping {c.ticker}: conviction {c.conviction_score} below "
                f"threshold {config.buy_threshold}"
            )
            continue
        target_weight = c.suggested_weight or (config.min_position_pct + config.max_position_pct) / 2
        buy_value = min(total_value * target_weight / 100, remaining)
        shares = math.floor(buy_value / c.current_price)
        if shares <= 0:
            continue
        upside = f"{c.composite_upside:+.1f}%" if c.composite_upside is not None else "N/A"
        trades.append(
            Trade(
                priority=priority,
                ticker=c.ticker,
                action=TradeAction.BUY,
                shares=shares,
                price=c.current_price,
                value=shares * c.current_price,
                reason=(
                    f"Full analysis: {c.conviction_level.value} conviction "
                    f"({c.conviction_score}/100), Upside: {upside}"
                ),
                conviction_score=c.conviction_score,
                sector=c.sector,
            )
        )
        priority += 1
        remaining -= shares * c.current_price
        buys += 1

    turnover = sum(t.value for t in trades) / total_value * 100 if total_value > 0 else 0.0
    if turnover > config.max_turnover_pct:
        logger.warning(
            f"Proposed turnover {turnover:.1f}% exceeds limit {config.max_turnover_pct}%"
        )
    return trades, round(turnover, 2)


class RebalanceEngine:
    """Runs monthly reviews for one portfolio store."""

    def __init__(
        self,
        store: PipelineStore,
        market_data: MarketDataProvider,
        research: ResearchRunner,
        screener: BatchScreener | None = None,
        triage: TriageEngine | None = None,
        universe: Iterable[str] | None = None,
    ):
        self.store = store
        self.market_data = market_data
        self.research = research
        self.screener = screener
        self.triage = triage
        self.universe = list(universe or [])

    @classmethod
    def build(
        cls,
        store: PipelineStore,
        market_data: MarketDataProvider,
        analysis: QualitativeAnalysisProvider,
        rate_limiter: RateLimiter | None = None,
        universe: Iterable[str] | None = None,
    ) -> "RebalanceEngine":
        """Wire research and new-candidate screening from application settings."""
        from stockfunnel.core.config import settings
        from stockfunnel.data.universe import all_tickers

        return cls(
            store=store,
            market_data=market_data,
            research=ResearchRunner(analysis, batch_size=settings.analysis_batch_size),
            screener=BatchScreener(
                market_data,
                rate_limiter or RateLimiter.from_settings(),
                max_concurrency=settings.screener_concurrency,
            ),
            triage=TriageEngine(
                market_data,
                batch_size=settings.triage_batch_size,
                batch_delay=settings.triage_batch_delay,
            ),
            universe=universe or settings.universe_symbols or all_tickers(),
        )

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _reprice(self, holding: dict[str, Any]) -> float:
        ticker = holding["ticker"]
        fallback = holding.get("current_price") or holding["avg_cost"]
        try:
            price = await self.market_data.get_price(ticker)
        except Exception as e:
            logger.warning(f"Price refresh failed for {ticker}, using last known: {e}")
            return float(fallback)
        if not price or price <= 0:
            return float(fallback)
        try:
            await self.store.update_holding(holding["portfolio_id"], ticker, current_price=price)
        except Exception as e:
            logger.warning(f"Could not store refreshed price for {ticker}: {e}")
        return float(price)

    async def review_holdings(
        self,
        holdings: list[dict[str, Any]],
        prices: dict[str, float],
        total_value: float,
        strategy: Strategy,
        config: RebalanceConfig,
    ) -> list[HoldingReview]:
        """Re-score every holding; full analyses run in the research runner's batches."""
        inputs = [
            ConvictionInput(
                ticker=h["ticker"],
                tier1_score=(
                    h["conviction_score"] if h.get("conviction_score") is not None else 50
                ),
                tier2_decision=TriageDecision.PASS,
                sector=h.get("sector"),
                company_name=h.get("company_name"),
                current_price=prices[h["ticker"]],
            )
            for h in holdings
        ]

        synthesizer = self.research.synthesizer
        if config.run_full_analysis:
            results, failures = await self.research.research(inputs, strategy)
            convictions = {r.ticker: r for r in results}
            for ticker, error in failures:
                logger.warning(f"Review of {ticker} falls back to offline scoring: {error}")
        else:
            convictions = {}

        reviews: list[HoldingReview] = []
        for h, candidate in zip(holdings, inputs):
            ticker = h["ticker"]
            price = prices[ticker]
            shares = int(h["shares"])
            avg_cost = float(h["avg_cost"])
            market_value = shares * price
            previous = h.get("conviction_score")
            conviction = convictions.get(ticker) or synthesizer.synthesize(candidate, strategy)

            weight = market_value / total_value * 100 if total_value > 0 else 0.0
            action, reason = classify_holding(conviction.conviction_score, weight, config)
            reviews.append(
                HoldingReview(
                    ticker=ticker,
                    sector=h.get("sector"),
                    shares=shares,
                    avg_cost=avg_cost,
                    current_price=price,
                    market_value=market_value,
                    gain_pct=(price - avg_cost) / avg_cost * 100 if avg_cost > 0 else 0.0,
                    weight=weight,
                    previous_conviction=previous,
                    new_conviction=conviction.conviction_score,
                    conviction_delta=(
                        conviction.conviction_score - previous if previous is not None else None
                    ),
                    conviction=conviction,
                    action=action,
                    reason=reason,
                )
            )
            logger.info(
                f"{ticker}: conviction {previous} -> {conviction.conviction_score}, "
                f"weight {weight:.1f}%, {action.value}"
            )
        return reviews

    async def screen_new_candidates(
        self,
        held: set[str],
        strategy: Strategy,
        config: RebalanceConfig,
    ) -> list[ConvictionResult]:
        """Run the universe (minus holdings) through Tier 1 to Tier 3."""
        if self.screener is None or self.triage is None:
            logger.info("New candidate screening skipped: no screener configured")
            return []
        pool = [t for t in self.universe if t not in held]
        if not pool or config.new_candidate_limit == 0:
            return []

        batch = await self.screener.screen(pool, strategy)
        tier1 = apply_tier1_filter(batch, NEW_CANDIDATE_TIER1)
        candidates = [
            TriageCandidate.from_score(s)
            for s in tier1.candidates[:NEW_CANDIDATE_TRIAGE_LIMIT]
        ]
        tier2 = await self.triage.triage(
            candidates, max_finalists=config.new_candidate_limit * 2
        )

        prices = {s.ticker: s.price for s in tier1.candidates}
        inputs = [
            ConvictionInput(
                ticker=v.ticker,
                tier1_score=v.tier1_score,
                tier2_decision=v.decision,
                sector=v.sector,
                company_name=v.company_name,
                current_price=prices.get(v.ticker),
            )
            for v in tier2.finalists[: config.new_candidate_limit]
        ]
        results, _ = await self.research.research(inputs, strategy)
        logger.info(
            f"New candidates: {len(pool)} screened, {len(tier1.candidates)} passed Tier 1, "
            f"{len(tier2.finalists)} finalists, {len(results)} analyzed"
        )
        return results

    async def _restore_holding(
        self, portfolio_id: str, ticker: str, before: dict[str, Any] | None
    ) -> None:
        """Put a holding back to its pre-trade row after a failed trade."""
        try:
            await self.store.remove_holding(portfolio_id, ticker)
            if before is None:
                return
            fields = {k: before.get(k) for k in RESTORED_HOLDING_FIELDS}
            await self.store.upsert_holding(
                portfolio_id, ticker, int(before["shares"]), float(before["avg_cost"]), **fields
            )
        except Exception as e:
            logger.error(f"Could not restore holding {ticker} after failed trade: {e}")

    async def _apply_trade(
        self,
        portfolio_id: str,
        trade: Trade,
        holdings: dict[str, dict[str, Any]],
        cash: float,
        run_id: str,
    ) -> float:
        """Write one trade and return the new cash balance.

        The holding row is changed first and the transaction recorded second;
        if either write fails the holding is put back and cash is untouched.
        """
        before = holdings.get(trade.ticker)
        held = int((before or {}).get("shares", 0))
        is_sell = trade.action in (TradeAction.SELL, TradeAction.TRIM)
        if is_sell:
            shares = min(trade.shares, held)
            if shares <= 0:
                raise ValueError(f"no shares of {trade.ticker} held")
            delta = shares * trade.price
        else:
            shares = trade.shares
            if shares <= 0:
                raise ValueError(f"no shares of {trade.ticker} to buy")
            if cash < trade.value:
                raise ValueError(f"insufficient cash ({cash:.2f} < {trade.value:.2f})")
            delta = -trade.value

        try:
            if is_sell:
                if shares >= held:
                    await self.store.remove_holding(portfolio_id, trade.ticker)
                else:
                    await self.store.update_holding(
                        portfolio_id, trade.ticker, shares=held - shares
                    )
            else:
                await self.store.upsert_holding(
                    portfolio_id,
                    trade.ticker,
                    shares,
                    trade.price,
                    current_price=trade.price,
                    sector=trade.sector,
                    conviction_score=trade.conviction_score,
                )
            await self.store.record_transaction(
                portfolio_id,
                trade.ticker,
                trade.action.side.value,
                shares,
                trade.price,
                reason=f"Rebalance {trade.action.value}: {trade.reason}",
                conviction_score=trade.conviction_score,
                run_id=run_id,
            )
        except Exception:
            await self._restore_holding(portfolio_id, trade.ticker, before)
            raise

        if is_sell:
            remaining = held - shares
            if remaining > 0:
                holdings[trade.ticker] = {**before, "shares": remaining}
            else:
                holdings.pop(trade.ticker, None)
        else:
            prior_cost = float((before or {}).get("avg_cost", 0.0))
            total = held + shares
            holdings[trade.ticker] = {
                **(before or {}),
                "shares": total,
                "avg_cost": (prior_cost * held + trade.price * shares) / total,
                "current_price": trade.price,
                "sector": trade.sector or (before or {}).get("sector"),
                "conviction_score": trade.conviction_score,
            }
        return cash + delta

    async def execute(
        self,
        portfolio_id: str,
        trades: list[Trade],
        holdings: dict[str, dict[str, Any]],
        cash: float,
        run_id: str,
    ) -> tuple[list[ExecutedTrade], float]:
        """Apply trades in priority order. A failing trade is logged and skipped."""
        holdings = dict(holdings)
        executions: list[ExecutedTrade] = []
        for trade in sorted(trades, key=lambda t: t.priority):
            try:
                cash = await self._apply_trade(portfolio_id, trade, holdings, cash, run_id)
                executions.append(ExecutedTrade(trade=trade, executed=True))
            except Exception as e:
                logger.warning(f"Trade {trade.action.value} {trade.ticker} failed: {e}")
                executions.append(ExecutedTrade(trade=trade, executed=False, error=str(e)))

        await self.store.update_portfolio_cash(portfolio_id, round(cash, 2))
        return executions, cash

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def rebalance(
        self,
        portfolio_id: str,
        config: RebalanceConfig | None = None,
        strategy: Strategy | None = None,
    ) -> RebalanceResult:
        config = config or RebalanceConfig()
        portfolio = await self.store.get_portfolio(portfolio_id)
        if portfolio is None:
            raise NotFoundError(f"Portfolio {portfolio_id} not found")
        strategy = strategy or Strategy(portfolio.get("strategy") or Strategy.BALANCED.value)

        ledger = PipelineRunLedger(self.store)
        run_id = await ledger.start(
            RunType.MONTHLY_REVIEW,
            strategy,
            config_snapshot=config.model_dump(),
            portfolio_id=portfolio_id,
        )
        token = run_id_var.set(run_id)
        try:
            return await self._run(ledger, portfolio, strategy, config)
        except Exception as e:
            logger.exception(f"Rebalance {run_id} failed")
            await ledger.fail(str(e))
            return RebalanceResult(
                run_id=run_id,
                portfolio_id=portfolio_id,
                status=RunStatus.FAILED,
                error=str(e),
            )
        finally:
            run_id_var.reset(token)

    async def _run(
        self,
        ledger: PipelineRunLedger,
        portfolio: dict[str, Any],
        strategy: Strategy,
        config: RebalanceConfig,
    ) -> RebalanceResult:
        portfolio_id = portfolio["id"]
        cash = float(portfolio.get("cash_balance") or 0)
        holdings = await self.store.list_holdings(portfolio_id)

        prices = dict(
            zip(
                [h["ticker"] for h in holdings],
                await asyncio.gather(*(self._reprice(h) for h in holdings)),
            )
        )
        holdings_value = sum(int(h["shares"]) * prices[h["ticker"]] for h in holdings)
        total_value = cash + holdings_value

        reviews = await self.review_holdings(holdings, prices, total_value, strategy, config)
        await ledger.record_tier3(len(holdings), len(reviews))

        for r in reviews:
            try:
                await self.store.update_holding(
                    portfolio_id,
                    r.ticker,
                    conviction_score=r.new_conviction,
                    conviction_level=r.conviction.conviction_level.value,
                    last_analysis_date=datetime.now(UTC),
                )
                await self.store.save_stock_analysis(
                    ledger.run_id, r.ticker, analysis_row(r.conviction, in_portfolio=True)
                )
            except Exception as e:
                logger.warning(f"Could not persist review for {r.ticker}: {e}")

        new_candidates: list[ConvictionResult] = []
        if config.screen_new_candidates:
            held = {h["ticker"] for h in holdings}
            new_candidates = await self.screen_new_candidates(held, strategy, config)

        trades, turnover = generate_trades(reviews, new_candidates, cash, total_value, config)

        result = RebalanceResult(
            run_id=ledger.run_id,
            portfolio_id=portfolio_id,
            status=RunStatus.COMPLETED,
            reviews=reviews,
            new_candidates=new_candidates,
            trades=trades,
            turnover_pct=turnover,
            total_value=round(total_value, 2),
            cash_before=round(cash, 2),
            cash_after=round(cash, 2),
        )

        if config.execute and trades:
            by_ticker = {h["ticker"]: h for h in await self.store.list_holdings(portfolio_id)}
            executions, cash_after = await self.execute(
                portfolio_id, trades, by_ticker, cash, ledger.run_id
            )
            result.executions = executions
            result.cash_after = round(cash_after, 2)

            post_holdings = await self.store.list_holdings(portfolio_id)
            post_value = sum(
                int(h["shares"]) * float(h.get("current_price") or h["avg_cost"])
                for h in post_holdings
            )
            await self.store.create_snapshot(
                portfolio_id,
                total_value=round(cash_after + post_value, 2),
                cash_balance=round(cash_after, 2),
                holdings_value=round(post_value, 2),
                holdings_data=[
                    {
                        "ticker": h["ticker"],
                        "shares": int(h["shares"]),
                        "price": float(h.get("current_price") or h["avg_cost"]),
                    }
                    for h in post_holdings
                ],
                run_id=ledger.run_id,
            )
            result.summary = {
                "holdings_count": len(post_holdings),
                "total_value": round(cash_after + post_value, 2),
                "cash_pct": round(cash_after / (cash_after + post_value) * 100, 2)
                if cash_after + post_value > 0
                else 0.0,
                "executed": sum(1 for e in executions if e.executed),
                "failed": sum(1 for e in executions if not e.executed),
            }
            final_count = len(post_holdings)
        else:
            final_count = len(holdings)

        result.summary.setdefault("actions", _count_actions(reviews))
        await ledger.complete(final_count)
        logger.info(
            f"Rebalance {ledger.run_id}: {len(trades)} trades, turnover {turnover:.1f}%"
        )
        return result


def _count_actions(reviews: list[HoldingReview]) -> dict[str, int]:
    counts = {a.value: 0 for a in HoldingAction}
    for r in reviews:
        counts[r.action.value] += 1
    return counts
