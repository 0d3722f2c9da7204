"""
Pipeline run ledger.

Keeps the audit record of one run in memory and mirrors every change to
the run store. Store errors are logged and kept on the ledger; only
``start`` treats them as fatal since there is nothing to update without a
created row.
"""

from __future__ import annotations

import time
import uuid
from datetime import UTC, datetime
from typing import Any

from stockfunnel.core.exceptions import PersistenceFailure, RunStateError
from stockfunnel.core.logging import get_logger
from stockfunnel.pipeline.schemas import PortfolioRun, RunStatus, RunType, Strategy
from stockfunnel.repositories.protocols import RunStore


logger = get_logger("pipeline.ledger")


def new_run_id(
    run_type: RunType,
    strategy: Strategy,
    portfolio_id: str | None = None,
) -> str:
    if run_type == RunType.MONTHLY_REVIEW and portfolio_id:
        return f"REBAL-{portfolio_id[:10]}-{int(time.time() * 1000)}"
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    return f"IPB-{strategy.value.upper()}-{stamp}-{uuid.uuid4().hex[:6]}"


class PipelineRunLedger:
    """Append-only run record: counts only move forward, terminal runs are frozen."""

    def __init__(self, store: RunStore):
        self.store = store
        self.run: PortfolioRun | None = None
        self.persistence_errors: list[str] = []

    @property
    def run_id(self) -> str:
        return self._require_run().id

    def _require_run(self) -> PortfolioRun:
        if self.run is None:
            raise RunStateError("Run has not been started")
        return self.run

    def _require_open(self) -> PortfolioRun:
        run = self._require_run()
        if run.status.is_terminal:
            raise RunStateError(
                f"Run {run.id} is {run.status.value}",
                details={"run_id": run.id, "status": run.status.value},
            )
        return run

    async def _persist(self, **fields: Any) -> None:
        run = self._require_run()
        try:
            await self.store.update_run(run.id, **fields)
        except Exception as e:
            message = f"Failed to persist run {run.id} fields {sorted(fields)}: {e}"
            logger.error(message)
            self.persistence_errors.append(message)

    async def start(
        self,
        run_type: RunType,
        strategy: Strategy,
        config_snapshot: dict[str, Any] | None = None,
        portfolio_id: str | None = None,
        run_id: str | None = None,
    ) -> str:
        if self.run is not None:
            raise RunStateError(f"Ledger already tracks run {self.run.id}")
        self.run = PortfolioRun(
            id=run_id or new_run_id(run_type, strategy, portfolio_id),
            portfolio_id=portfolio_id,
            run_type=run_type,
            strategy=strategy,
            config_snapshot=config_snapshot or {},
        )
        try:
            await self.store.create_run(self.run.model_dump())
        except Exception as e:
            raise PersistenceFailure(
                f"Could not create run {self.run.id}: {e}",
                details={"run_id": self.run.id},
            ) from e
        logger.info(f"Started {run_type.value} run {self.run.id} ({strategy.value})")
        return self.run.id

    async def record_tier1(self, input_count: int, output_count: int) -> None:
        run = self._require_open()
        run.tier1_input_count = input_count
        run.tier1_output_count = output_count
        run.tier1_completed_at = datetime.now(UTC)
        await self._persist(
            tier1_input_count=input_count,
            tier1_output_count=output_count,
            tier1_completed_at=run.tier1_completed_at,
        )

    async def record_tier2(
        self, input_count: int, output_count: int, rejected_count: int
    ) -> None:
        run = self._require_open()
        run.tier2_input_count = input_count
        run.tier2_output_count = output_count
        run.tier2_rejected_count = rejected_count
        run.tier2_completed_at = datetime.now(UTC)
        await self._persist(
            tier2_input_count=input_count,
            tier2_output_count=output_count,
            tier2_rejected_count=rejected_count,
            tier2_completed_at=run.tier2_completed_at,
        )

    async def record_tier3(self, input_count: int, output_count: int) -> None:
        run = self._require_open()
        run.tier3_input_count = input_count
        run.tier3_output_count = output_count
        run.tier3_completed_at = datetime.now(UTC)
        await self._persist(
            tier3_input_count=input_count,
            tier3_output_count=output_count,
            tier3_completed_at=run.tier3_completed_at,
        )

    async def link_portfolio(self, portfolio_id: str) -> None:
        run = self._require_open()
        run.portfolio_id = portfolio_id
        await self._persist(portfolio_id=portfolio_id)

    async def complete(self, final_portfolio_count: int) -> None:
        run = self._require_open()
        run.status = RunStatus.COMPLETED
        run.final_portfolio_count = final_portfolio_count
        run.completed_at = datetime.now(UTC)
        await self._persist(
            status=run.status.value,
            final_portfolio_count=final_portfolio_count,
            completed_at=run.completed_at,
        )
        logger.info(f"Run {run.id} completed with {final_portfolio_count} holdings")

    async def fail(self, error_message: str) -> None:
        run = self._require_open()
        run.status = RunStatus.FAILED
        run.error_message = error_message
        run.completed_at = datetime.now(UTC)
        await self._persist(
            status=run.status.value,
            error_message=error_message,
            completed_at=run.completed_at,
        )
        logger.error(f"Run {run.id} failed: {error_message}")
