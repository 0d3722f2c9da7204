"""Pipeline run API routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, status

from stockfunnel.api.dependencies import get_orchestrator, get_store
from stockfunnel.api.schemas import RunResponse
from stockfunnel.core.exceptions import NotFoundError
from stockfunnel.pipeline.orchestrator import PipelineOrchestrator
from stockfunnel.pipeline.schemas import ConstructionResult
from stockfunnel.repositories.protocols import PipelineStore


router = APIRouter(prefix="/pipeline", tags=["Pipeline"])


@router.post(
    "/runs",
    response_model=ConstructionResult,
    status_code=status.HTTP_201_CREATED,
    summary="Build a portfolio",
    description=(
        "Run the universe through Tier 1 screening, Tier 2 triage, Tier 3 "
        "research and construction. Invalid configs return 422 and are "
        "recorded as failed runs."
    ),
)
async def create_run(
    payload: dict[str, Any] = Body(default_factory=dict),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> ConstructionResult:
    return await orchestrator.construct(payload)


@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(
    run_id: str,
    store: PipelineStore = Depends(get_store),
) -> RunResponse:
    run = await store.get_run(run_id)
    if not run:
        raise NotFoundError(f"Run {run_id} not found")
    return RunResponse.model_validate(run)
