"""
Portfolio construction orchestrator.

Drives the funnel as an explicit state machine:

    PENDING -> TIER1 -> TIER2 -> TIER3 -> CONSTRUCTION -> COMPLETED
                  \\________\\________\\___________\\-> FAILED

Each stage computes with the pure pipeline functions and then persists its
output through the store. Per-ticker problems are collected as failures;
only configuration errors and unrecoverable persistence errors fail the run.
"""

from __future__ import annotations

import time
from typing import Any, Iterable

from pydantic import ValidationError

from stockfunnel.core.exceptions import PersistenceFailure, ValidationFailure
from stockfunnel.core.logging import get_logger, run_id_var
from stockfunnel.core.rate_limiter import RateLimiter
from stockfunnel.pipeline.construction import PortfolioConstructor
from stockfunnel.pipeline.conviction import summarize
from stockfunnel.pipeline.ledger import PipelineRunLedger
from stockfunnel.pipeline.research import ResearchRunner, analysis_row
from stockfunnel.pipeline.schemas import (
    ConstructionResult,
    ConvictionInput,
    PipelineConfig,
    PipelineStage,
    RunStatus,
    RunType,
    StageFailure,
    Strategy,
    TransactionSide,
    TriageCandidate,
)
from stockfunnel.pipeline.screener import BatchScreener, apply_tier1_filter
from stockfunnel.pipeline.triage import TriageEngine
from stockfunnel.providers.base import MarketDataProvider, QualitativeAnalysisProvider
from stockfunnel.repositories.protocols import PipelineStore


logger = get_logger("pipeline.orchestrator")

TRANSITIONS: dict[PipelineStage, PipelineStage] = {
    PipelineStage.PENDING: PipelineStage.TIER1,
    PipelineStage.TIER1: PipelineStage.TIER2,
    PipelineStage.TIER2: PipelineStage.TIER3,
    PipelineStage.TIER3: PipelineStage.CONSTRUCTION,
    PipelineStage.CONSTRUCTION: PipelineStage.COMPLETED,
}


class PipelineOrchestrator:
    """Runs a full construction for one store and provider pair."""

    def __init__(
        self,
        store: PipelineStore,
        screener: BatchScreener,
        triage: TriageEngine,
        research: ResearchRunner,
        constructor: PortfolioConstructor | None = None,
        universe: Iterable[str] | None = None,
    ):
        self.store = store
        self.screener = screener
        self.triage = triage
        self.research = research
        self.constructor = constructor or PortfolioConstructor()
        self.universe = list(universe or [])

    @classmethod
    def build(
        cls,
        store: PipelineStore,
        market_data: MarketDataProvider,
        analysis: QualitativeAnalysisProvider,
        rate_limiter: RateLimiter | None = None,
        universe: Iterable[str] | None = None,
    ) -> "PipelineOrchestrator":
        """Wire the stages from application settings."""
        from stockfunnel.core.config import settings
        from stockfunnel.data.universe import all_tickers

        return cls(
            store=store,
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
            research=ResearchRunner(analysis, batch_size=settings.analysis_batch_size),
            universe=universe or settings.universe_symbols or all_tickers(),
        )

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def construct(self, config: PipelineConfig | dict[str, Any]) -> ConstructionResult:
        """Run tier 1 through construction and return the structured outcome."""
        if not isinstance(config, PipelineConfig):
            config = await self._validate(config)

        ledger = PipelineRunLedger(self.store)
        run_id = await ledger.start(
            RunType.CONSTRUCTION, config.strategy, config_snapshot=config.run_snapshot()
        )
        token = run_id_var.set(run_id)
        started = time.monotonic()
        result = ConstructionResult(
            run_id=run_id,
            status=RunStatus.RUNNING,
            stage=PipelineStage.PENDING,
            strategy=config.strategy,
        )
        try:
            stage = TRANSITIONS[PipelineStage.PENDING]
            while stage is not PipelineStage.COMPLETED:
                result.stage = stage
                logger.info(f"Run {run_id}: entering {stage.value}")
                await self._run_stage(stage, config, ledger, result)
                stage = TRANSITIONS[stage]
            result.stage = PipelineStage.COMPLETED
            result.status = RunStatus.COMPLETED
        except Exception as e:
            logger.exception(f"Run {run_id} failed during {result.stage.value}")
            await ledger.fail(f"{result.stage.value}: {e}")
            result.stage = PipelineStage.FAILED
            result.status = RunStatus.FAILED
            result.error = str(e)
        finally:
            result.duration_seconds = round(time.monotonic() - started, 2)
            run_id_var.reset(token)
        return result

    async def _validate(self, raw: dict[str, Any]) -> PipelineConfig:
        """Parse a raw config; an invalid one is recorded as a failed run."""
        try:
            return PipelineConfig.model_validate(raw)
        except ValidationError as e:
            try:
                strategy = Strategy(raw.get("strategy", Strategy.BALANCED.value))
            except ValueError:
                strategy = Strategy.BALANCED
            ledger = PipelineRunLedger(self.store)
            await ledger.start(RunType.CONSTRUCTION, strategy, config_snapshot=dict(raw))
            message = f"Invalid pipeline config: {e.error_count()} error(s)"
            await ledger.fail(message)
            raise ValidationFailure(
                message,
                details={
                    "run_id": ledger.run_id,
                    "errors": e.errors(include_url=False, include_context=False),
                },
            ) from e

    async def _run_stage(
        self,
        stage: PipelineStage,
        config: PipelineConfig,
        ledger: PipelineRunLedger,
        result: ConstructionResult,
    ) -> None:
        if stage is PipelineStage.TIER1:
            await self._tier1(config, ledger, result)
        elif stage is PipelineStage.TIER2:
            await self._tier2(config, ledger, result)
        elif stage is PipelineStage.TIER3:
            await self._tier3(config, ledger, result)
        elif stage is PipelineStage.CONSTRUCTION:
            await self._construction(config, ledger, result)
        else:
            raise ValueError(f"Unexpected stage {stage}")

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _tier1(
        self, config: PipelineConfig, ledger: PipelineRunLedger, result: ConstructionResult
    ) -> None:
        universe = config.universe or self.universe
        batch = await self.screener.screen(universe, config.strategy)
        tier1 = apply_tier1_filter(batch, config.tier1())
        result.tier1 = tier1
        result.failures.extend(
            StageFailure(stage=PipelineStage.TIER1, ticker=f.ticker, reason=f.reason)
            for f in batch.failed
        )
        await ledger.record_tier1(batch.total, len(tier1.candidates))

    async def _tier2(
        self, config: PipelineConfig, ledger: PipelineRunLedger, result: ConstructionResult
    ) -> None:
        candidates = [TriageCandidate.from_score(s) for s in result.tier1.candidates]
        tier2 = await self.triage.triage(
            candidates,
            max_finalists=config.tier2_max_finalists,
            fast_track_threshold=config.fast_track_threshold,
        )
        result.tier2 = tier2

        decisions = [
            v.model_dump(mode="json")
            for v in tier2.finalists + tier2.rejected + tier2.needs_review
        ]
        try:
            await self.store.save_triage_decisions(ledger.run_id, decisions)
        except Exception as e:
            logger.error(f"Could not persist triage decisions: {e}")
        await ledger.record_tier2(len(candidates), len(tier2.finalists), len(tier2.rejected))

    async def _tier3(
        self, config: PipelineConfig, ledger: PipelineRunLedger, result: ConstructionResult
    ) -> None:
        prices = {s.ticker: s.price for s in result.tier1.candidates}
        inputs = [
            ConvictionInput(
                ticker=v.ticker,
                tier1_score=v.tier1_score,
                tier2_decision=v.decision,
                sector=v.sector,
                company_name=v.company_name,
                current_price=prices.get(v.ticker),
            )
            for v in result.tier2.finalists
        ]
        convictions, failures = await self.research.research(inputs, config.strategy)
        result.tier3 = convictions
        result.tier3_summary = summarize(convictions)
        result.failures.extend(
            StageFailure(stage=PipelineStage.TIER3, ticker=t, reason=r) for t, r in failures
        )
        await ledger.record_tier3(len(inputs), len(convictions))

    async def _construction(
        self, config: PipelineConfig, ledger: PipelineRunLedger, result: ConstructionResult
    ) -> None:
        selection = self.constructor.select(
            result.tier3,
            max_holdings=config.target_holdings,
            min_conviction=config.tier3_min_conviction,
        )
        allocation = self.constructor.allocate(selection, config.allocation())
        result.selection = selection
        result.allocation = allocation

        rejected = {r.ticker: r.reason for r in selection.rejected}
        for conviction in result.tier3:
            try:
                await self.store.save_stock_analysis(
                    ledger.run_id,
                    conviction.ticker,
                    analysis_row(
                        conviction,
                        in_portfolio=conviction.ticker not in rejected,
                        rejection_reason=rejected.get(conviction.ticker),
                    ),
                )
            except Exception as e:
                logger.error(f"Could not persist analysis for {conviction.ticker}: {e}")

        positions = [p for p in allocation.positions if p.shares > 0]
        if not positions:
            logger.warning(f"Run {ledger.run_id}: no positions to build")
            await ledger.complete(0)
            return

        # Portfolio writes must all land; any failure here fails the run
        try:
            name = config.portfolio_name or f"{config.strategy.value.title()} Portfolio"
            portfolio = await self.store.create_portfolio(
                name=name,
                strategy=config.strategy.value,
                initial_capital=config.initial_capital,
                cash_balance=allocation.cash,
                run_id=ledger.run_id,
            )
            portfolio_id = portfolio["id"]
            result.portfolio_id = portfolio_id
            await ledger.link_portfolio(portfolio_id)

            for p in positions:
                await self.store.upsert_holding(
                    portfolio_id,
                    p.ticker,
                    p.shares,
                    p.price,
                    current_price=p.price,
                    sector=p.sector,
                    conviction_score=p.conviction_score,
                    conviction_level=p.conviction_level.value,
                )
                await self.store.record_transaction(
                    portfolio_id,
                    p.ticker,
                    TransactionSide.BUY.value,
                    p.shares,
                    p.price,
                    reason=(
                        f"Construction - Conviction: {p.conviction_level.value} "
                        f"({p.conviction_score}/100)"
                    ),
                    conviction_score=p.conviction_score,
                    run_id=ledger.run_id,
                )

            await self.store.create_snapshot(
                portfolio_id,
                total_value=round(allocation.invested + allocation.cash, 2),
                cash_balance=allocation.cash,
                holdings_value=allocation.invested,
                holdings_data=[
                    {
                        "ticker": p.ticker,
                        "shares": p.shares,
                        "price": p.price,
                        "weight": p.weight,
                        "sector": p.sector,
                    }
                    for p in positions
                ],
                run_id=ledger.run_id,
            )
        except Exception as e:
            raise PersistenceFailure(f"Portfolio persistence failed: {e}") from e

        await ledger.complete(len(positions))
