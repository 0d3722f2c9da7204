"""API request/response schemas."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response schema (RFC 7807 inspired)."""

    error: str = Field(..., description="Error code", examples=["NOT_FOUND"])
    message: str = Field(..., description="Human-readable error message")
    status: int = Field(..., description="HTTP status code")
    details: Optional[Dict[str, Any]] = Field(
        default=None, description="Additional error details"
    )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Overall health status", examples=["healthy", "unhealthy"])
    version: str = Field(..., description="Application version")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    checks: Dict[str, bool] = Field(default_factory=dict, description="Individual service health checks")


class RunResponse(BaseModel):
    """Stored pipeline run ledger entry."""

    id: str
    portfolio_id: Optional[str] = None
    run_type: str
    strategy: str
    status: str
    tier1_input_count: int = 0
    tier1_output_count: int = 0
    tier2_input_count: int = 0
    tier2_output_count: int = 0
    tier2_rejected_count: int = 0
    tier3_input_count: int = 0
    tier3_output_count: int = 0
    final_portfolio_count: int = 0
    config_snapshot: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class HoldingResponse(BaseModel):
    ticker: str
    shares: int
    avg_cost: float
    current_price: Optional[float] = None
    sector: Optional[str] = None
    company_name: Optional[str] = None
    conviction_score: Optional[int] = None
    conviction_level: Optional[str] = None
    market_value: float = 0.0


class PortfolioDetailResponse(BaseModel):
    """Portfolio with its current holdings."""

    id: str
    name: str
    strategy: str
    initial_capital: float
    cash_balance: float
    holdings_value: float
    total_value: float
    holdings: List[HoldingResponse] = Field(default_factory=list)
