"""Tests for holding classification, trade generation and the rebalance engine."""

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from conftest import (
    BEARISH_TEXTS,
    BULLISH_TEXTS,
    FakeAnalysisProvider,
    FakeMarketData,
    make_conviction,
)
from stockfunnel.core.exceptions import NotFoundError
from stockfunnel.pipeline.rebalance import RebalanceEngine, classify_holding, generate_trades
from stockfunnel.pipeline.research import ResearchRunner
from stockfunnel.pipeline.schemas import (
    ConvictionInput,
    ConvictionLevel,
    HoldingAction,
    HoldingReview,
    RebalanceConfig,
    RunStatus,
    RunType,
    Strategy,
    Trade,
    TradeAction,
    TriageDecision,
)


def review(
    ticker: str,
    action: HoldingAction,
    conviction: int = 60,
    shares: int = 100,
    price: float = 100.0,
) -> HoldingReview:
    return HoldingReview(
        ticker=ticker,
        sector="Technology",
        shares=shares,
        avg_cost=price,
        current_price=price,
        market_value=shares * price,
        gain_pct=0.0,
        weight=0.0,
        previous_conviction=None,
        new_conviction=conviction,
        conviction=make_conviction(ticker, conviction),
        action=action,
        reason=f"{action.value} {ticker}",
    )


class TestClassifyHolding:
    """Tests for classify_holding."""

    def test_conviction_drop_sells(self):
        """A holding whose conviction falls below the sell threshold is sold."""
        action, reason = classify_holding(38, 8.0, RebalanceConfig())
        assert action == HoldingAction.SELL
        assert reason == "Conviction dropped to 38 (below 40 threshold)"

    def test_low_conviction_trims(self):
        action, reason = classify_holding(45, 5.0, RebalanceConfig())
        assert action == HoldingAction.TRIM
        assert "Low conviction (45)" in reason

    def test_oversized_moderate_trims(self):
        """Oversized positions are trimmed unless conviction is high."""
        action, reason = classify_holding(60, 14.0, RebalanceConfig())
        assert action == HoldingAction.TRIM
        assert "oversized (14.0%)" in reason

        action, _ = classify_holding(75, 14.0, RebalanceConfig())
        assert action == HoldingAction.HOLD

    def test_undersized_high_conviction_adds(self):
        action, _ = classify_holding(82, 1.0, RebalanceConfig())
        assert action == HoldingAction.ADD

    def test_hold(self):
        action, reason = classify_holding(55, 5.0, RebalanceConfig())
        assert action == HoldingAction.HOLD
        assert reason == "Conviction 55/100 - maintain position"


class TestGenerateTrades:
    """Tests for generate_trades."""

    def test_sells_capped_lowest_conviction_first(self):
        """Only max_sells sells are proposed, weakest first."""
        reviews = [
            review("D", HoldingAction.SELL, conviction=35),
            review("A", HoldingAction.SELL, conviction=10),
            review("C", HoldingAction.SELL, conviction=30),
            review("B", HoldingAction.SELL, conviction=20),
        ]
        trades, _ = generate_trades(reviews, [], 0.0, 100_000, RebalanceConfig(max_sells=3))

        assert [t.ticker for t in trades] == ["A", "B", "C"]
        assert [t.priority for t in trades] == [1, 2, 3]
        assert all(t.shares == 100 for t in trades)

    def test_trim_down_to_target(self):
        """Trims bring the position down to 80% of the max position value."""
        reviews = [review("BIG", HoldingAction.TRIM, conviction=45, shares=150)]
        trades, turnover = generate_trades(reviews, [], 0.0, 100_000, RebalanceConfig())

        assert trades[0].action == TradeAction.TRIM
        assert trades[0].shares == 70
        assert turnover == 7.0

    def test_buys_stay_within_spendable_cash(self):
        """Buys skip held and weak candidates and never spend the cash buffer."""
        reviews = [review("HELD", HoldingAction.HOLD)]
        candidates = [
            make_conviction("HELD", 90, price=50.0),
            make_conviction("WEAK", 55, price=50.0),
            make_conviction("NEW", 75, price=50.0, suggested_weight=4.0, composite_upside=12.5),
        ]
        config = RebalanceConfig(target_cash_pct=5)
        trades, _ = generate_trades(reviews, candidates, 20_000.0, 100_000, config)

        assert [t.ticker for t in trades] == ["NEW"]
        buy = trades[0]
        assert buy.action == TradeAction.BUY
        assert buy.shares == 80
        assert buy.value <= 20_000 - 5_000
        assert buy.reason == "Full analysis: MODERATE conviction (75/100), Upside: +12.5%"

    def test_buys_capped(self):
        candidates = [make_conviction(f"N{i}", 80, price=10.0) for i in range(5)]
        trades, _ = generate_trades([], candidates, 50_000.0, 100_000, RebalanceConfig(max_buys=2))
        assert len(trades) == 2

    def test_no_cash_no_buys(self):
        candidates = [make_conviction("NEW", 90, price=10.0)]
        trades, turnover = generate_trades([], candidates, 0.0, 100_000, RebalanceConfig())
        assert trades == []
        assert turnover == 0.0

    def test_sell_proceeds_fund_buys(self):
        """Cash released by sells is available to buys in the same pass."""
        reviews = [review("OUT", HoldingAction.SELL, conviction=20, shares=100)]
        candidates = [make_conviction("IN", 85, price=100.0, suggested_weight=8.0)]
        trades, _ = generate_trades(reviews, candidates, 0.0, 100_000, RebalanceConfig())

        assert [t.action for t in trades] == [TradeAction.SELL, TradeAction.BUY]
        assert trades[1].value <= 10_000 - 5_000


@pytest_asyncio.fixture
async def portfolio(store):
    """Portfolio with one weakening and one strong holding."""
    p = await store.create_portfolio("Test", "balanced", 25_000, 10_000)
    await store.upsert_holding(
        p["id"], "BAD", 100, 100.0, current_price=100.0, sector="Energy", conviction_score=65
    )
    await store.upsert_holding(
        p["id"], "GOOD", 50, 100.0, current_price=100.0, sector="Technology", conviction_score=80
    )
    return p


def make_engine(store, prices=None) -> RebalanceEngine:
    provider = FakeAnalysisProvider(texts={"BAD": BEARISH_TEXTS, "GOOD": BULLISH_TEXTS})
    market = FakeMarketData(prices=prices or {"BAD": 100.0, "GOOD": 100.0})
    return RebalanceEngine(store, market, ResearchRunner(provider))


class TestRebalanceEngine:
    """Tests for RebalanceEngine.rebalance."""

    @pytest.mark.asyncio
    async def test_dry_run_proposes_sell(self, store, portfolio):
        """A collapsed conviction produces a SELL that cites the threshold."""
        engine = make_engine(store)
        config = RebalanceConfig(screen_new_candidates=False)
        result = await engine.rebalance(portfolio["id"], config)

        assert result.status == RunStatus.COMPLETED
        assert result.run_id.startswith(f"REBAL-{portfolio['id'][:10]}-")
        reviews = {r.ticker: r for r in result.reviews}
        assert reviews["BAD"].action == HoldingAction.SELL
        assert reviews["BAD"].previous_conviction == 65
        assert "below 40 threshold" in reviews["BAD"].reason
        assert reviews["GOOD"].action == HoldingAction.HOLD

        assert [(t.ticker, t.action, t.shares) for t in result.trades] == [
            ("BAD", TradeAction.SELL, 100)
        ]
        assert result.total_value == 25_000
        assert result.turnover_pct == 40.0
        assert result.executions == []
        assert result.summary["actions"]["SELL"] == 1

        # Dry run leaves the portfolio alone
        assert len(await store.list_holdings(portfolio["id"])) == 2
        assert store.transactions == []
        run = store.runs[result.run_id]
        assert run["run_type"] == RunType.MONTHLY_REVIEW
        assert run["status"] == "completed"
        assert run["final_portfolio_count"] == 2

    @pytest.mark.asyncio
    async def test_reviews_update_holdings_and_analyses(self, store, portfolio):
        engine = make_engine(store)
        result = await engine.rebalance(portfolio["id"], RebalanceConfig(screen_new_candidates=False))

        bad = store.holdings[(portfolio["id"], "BAD")]
        assert bad["conviction_score"] < 40
        assert bad["last_analysis_date"] is not None
        assert (result.run_id, "GOOD") in store.analyses

    @pytest.mark.asyncio
    async def test_execute_applies_trades(self, store, portfolio):
        """Executed sells remove the holding, credit cash and snapshot the result."""
        engine = make_engine(store)
        config = RebalanceConfig(screen_new_candidates=False, execute=True)
        result = await engine.rebalance(portfolio["id"], config)

        assert all(e.executed for e in result.executions)
        assert [h["ticker"] for h in await store.list_holdings(portfolio["id"])] == ["GOOD"]
        assert store.portfolios[portfolio["id"]]["cash_balance"] == 20_000
        assert result.cash_after == 20_000

        txn = store.transactions[0]
        assert txn["side"] == "SELL"
        assert txn["shares"] == 100
        assert txn["run_id"] == result.run_id
        assert txn["reason"].startswith("Rebalance SELL: Conviction dropped")

        snapshot = store.snapshots[-1]
        assert snapshot["total_value"] == 25_000
        assert snapshot["holdings_value"] == 5_000
        assert result.summary["holdings_count"] == 1
        assert store.runs[result.run_id]["final_portfolio_count"] == 1

    @pytest.mark.asyncio
    async def test_failed_trade_is_skipped(self, store, portfolio):
        """A sell that cannot be recorded leaves the holding and cash as they were."""
        store.fail_on.add("record_transaction")
        engine = make_engine(store)
        config = RebalanceConfig(screen_new_candidates=False, execute=True)
        result = await engine.rebalance(portfolio["id"], config)

        assert result.status == RunStatus.COMPLETED
        assert not result.executions[0].executed
        assert "record_transaction unavailable" in result.executions[0].error

        bad = store.holdings[(portfolio["id"], "BAD")]
        assert bad["shares"] == 100
        assert bad["avg_cost"] == 100.0
        assert bad["sector"] == "Energy"
        reviews = {r.ticker: r for r in result.reviews}
        assert bad["conviction_score"] == reviews["BAD"].new_conviction
        assert store.portfolios[portfolio["id"]]["cash_balance"] == 10_000
        assert result.cash_after == 10_000
        assert store.transactions == []

    @pytest.mark.asyncio
    async def test_failed_buy_is_rolled_back(self, store, portfolio):
        """A buy that cannot be recorded adds no shares and spends no cash."""
        store.fail_on.add("record_transaction")
        engine = make_engine(store)
        holdings = {h["ticker"]: h for h in await store.list_holdings(portfolio["id"])}
        trades = [
            Trade(
                priority=1, ticker="NEW", action=TradeAction.BUY, shares=10,
                price=50.0, value=500.0, reason="new", sector="Utilities",
            ),
            Trade(
                priority=2, ticker="GOOD", action=TradeAction.ADD, shares=10,
                price=120.0, value=1200.0, reason="add",
            ),
        ]

        executions, cash = await engine.execute(
            portfolio["id"], trades, holdings, 10_000.0, "REBAL-test"
        )

        assert [e.executed for e in executions] == [False, False]
        assert cash == 10_000.0
        assert (portfolio["id"], "NEW") not in store.holdings
        good = store.holdings[(portfolio["id"], "GOOD")]
        assert good["shares"] == 50
        assert good["avg_cost"] == 100.0
        assert good["sector"] == "Technology"

    @pytest.mark.asyncio
    async def test_trades_on_same_ticker_see_earlier_fills(self, store, portfolio):
        """A trim after a full sell of the same ticker has nothing left to sell."""
        engine = make_engine(store)
        holdings = {h["ticker"]: h for h in await store.list_holdings(portfolio["id"])}
        trades = [
            Trade(
                priority=1, ticker="BAD", action=TradeAction.SELL, shares=100,
                price=100.0, value=10_000.0, reason="sell",
            ),
            Trade(
                priority=2, ticker="BAD", action=TradeAction.TRIM, shares=10,
                price=100.0, value=1000.0, reason="trim",
            ),
        ]

        executions, cash = await engine.execute(
            portfolio["id"], trades, holdings, 10_000.0, "REBAL-test"
        )

        assert [e.executed for e in executions] == [True, False]
        assert cash == 20_000.0
        assert len(store.transactions) == 1

    @pytest.mark.asyncio
    async def test_price_refresh_falls_back(self, store, portfolio):
        """Missing quotes fall back to the stored price."""
        engine = make_engine(store, prices={"GOOD": 120.0})
        result = await engine.rebalance(portfolio["id"], RebalanceConfig(screen_new_candidates=False))

        reviews = {r.ticker: r for r in result.reviews}
        assert reviews["BAD"].current_price == 100.0
        assert reviews["GOOD"].current_price == 120.0
        assert store.holdings[(portfolio["id"], "GOOD")]["current_price"] == 120.0

    @pytest.mark.asyncio
    async def test_missing_portfolio(self, store):
        engine = make_engine(store)
        with pytest.raises(NotFoundError):
            await engine.rebalance("missing")
        assert store.runs == {}

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_run(self, store, portfolio):
        """An error mid-review marks the run failed instead of raising."""
        engine = make_engine(store)
        engine.review_holdings = AsyncMock(side_effect=RuntimeError("boom"))
        result = await engine.rebalance(portfolio["id"])

        assert result.status == RunStatus.FAILED
        assert result.error == "boom"
        assert store.runs[result.run_id]["status"] == "failed"
        assert store.runs[result.run_id]["error_message"] == "boom"

    @pytest.mark.asyncio
    async def test_no_screener_skips_new_candidates(self, store, portfolio):
        engine = make_engine(store)
        result = await engine.rebalance(portfolio["id"], RebalanceConfig())
        assert result.new_candidates == []


class ConcurrencyTrackingProvider(FakeAnalysisProvider):
    """Records how many distinct tickers are being analyzed at once."""

    def __init__(self):
        super().__init__(default=BULLISH_TEXTS)
        self.active: dict[str, int] = {}
        self.peak = 0

    async def analyze(self, ticker, kind, context):
        self.active[ticker] = self.active.get(ticker, 0) + 1
        self.peak = max(self.peak, len(self.active))
        await asyncio.sleep(0.01)
        self.active[ticker] -= 1
        if not self.active[ticker]:
            del self.active[ticker]
        return await super().analyze(ticker, kind, context)


class TestReviewHoldings:
    """Tests for RebalanceEngine.review_holdings."""

    @staticmethod
    def holdings(tickers):
        return [
            {"ticker": t, "shares": 10, "avg_cost": 100.0, "sector": "Technology"}
            for t in tickers
        ]

    @pytest.mark.asyncio
    async def test_holdings_are_reviewed_in_concurrent_batches(self, store):
        """Holdings of one batch are analyzed together; batches do not overlap."""
        provider = ConcurrencyTrackingProvider()
        engine = RebalanceEngine(store, FakeMarketData(), ResearchRunner(provider, batch_size=3))
        tickers = ["AAA", "BBB", "CCC", "DDD"]

        reviews = await engine.review_holdings(
            self.holdings(tickers),
            {t: 100.0 for t in tickers},
            10_000.0,
            Strategy.BALANCED,
            RebalanceConfig(),
        )

        assert provider.peak == 3
        assert [r.ticker for r in reviews] == tickers
        assert len(provider.calls) == 20

    @pytest.mark.asyncio
    async def test_failed_research_falls_back_to_offline_score(self, store):
        """A holding whose research blows up is still reviewed."""
        runner = ResearchRunner(FakeAnalysisProvider(default=BULLISH_TEXTS))
        original = runner.research_one

        async def flaky(candidate, strategy):
            if candidate.ticker == "BBB":
                raise RuntimeError("analysis offline")
            return await original(candidate, strategy)

        runner.research_one = flaky
        engine = RebalanceEngine(store, FakeMarketData(), runner)

        reviews = await engine.review_holdings(
            self.holdings(["AAA", "BBB"]),
            {"AAA": 100.0, "BBB": 100.0},
            2_000.0,
            Strategy.BALANCED,
            RebalanceConfig(),
        )

        by_ticker = {r.ticker: r for r in reviews}
        assert set(by_ticker) == {"AAA", "BBB"}
        offline = runner.synthesizer.synthesize(
            ConvictionInput(
                ticker="BBB",
                tier1_score=50,
                tier2_decision=TriageDecision.PASS,
                sector="Technology",
                current_price=100.0,
            ),
            Strategy.BALANCED,
        )
        assert by_ticker["BBB"].new_conviction == offline.conviction_score
        assert by_ticker["AAA"].new_conviction > by_ticker["BBB"].new_conviction
