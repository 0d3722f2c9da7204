"""SQLAlchemy ORM models for stockfunnel.

Tables: portfolios, holdings, transactions, snapshots, portfolio runs,
per-ticker stock analyses and triage decisions.

Usage:
    from stockfunnel.database.orm import Portfolio
    from stockfunnel.database.connection import get_session

    async with get_session() as session:
        portfolio = await session.get(Portfolio, portfolio_id)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all ORM models with naming convention."""
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


def _uuid() -> str:
    return str(uuid.uuid4())


# =============================================================================
# PORTFOLIOS
# =============================================================================


class Portfolio(Base):
    """Portfolio built by a construction run."""
    __tablename__ = "portfolios"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    strategy: Mapped[str] = mapped_column(String(20), nullable=False)
    initial_capital: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    cash_balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    construction_run_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    holdings: Mapped[list[Holding]] = relationship(back_populates="portfolio", cascade="all, delete-orphan")
    transactions: Mapped[list[Transaction]] = relationship(back_populates="portfolio", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("strategy IN ('value', 'growth', 'balanced')", name="strategy"),
        CheckConstraint("cash_balance >= 0", name="cash_non_negative"),
    )


class Holding(Base):
    """Current position in a portfolio."""
    __tablename__ = "holdings"

    id: Mapped[int] = mapped_column(primary_key=True)
    portfolio_id: Mapped[str] = mapped_column(ForeignKey("portfolios.id", ondelete="CASCADE"), nullable=False)
    ticker: Mapped[str] = mapped_column(String(20), nullable=False)
    company_name: Mapped[str | None] = mapped_column(String(255))
    sector: Mapped[str | None] = mapped_column(String(100))
    shares: Mapped[int] = mapped_column(Integer, nullable=False)
    avg_cost: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    current_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    conviction_score: Mapped[int | None] = mapped_column(Integer)
    conviction_level: Mapped[str | None] = mapped_column(String(20))
    last_analysis_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    portfolio: Mapped[Portfolio] = relationship(back_populates="holdings")

    __table_args__ = (
        UniqueConstraint("portfolio_id", "ticker", name="uq_holdings_portfolio_ticker"),
        CheckConstraint("shares > 0", name="shares_positive"),
        Index("idx_holdings_portfolio", "portfolio_id"),
    )


class Transaction(Base):
    """Ledger of executed buys and sells."""
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(primary_key=True)
    portfolio_id: Mapped[str] = mapped_column(ForeignKey("portfolios.id", ondelete="CASCADE"), nullable=False)
    ticker: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(10), nullable=False)
    shares: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    total_value: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    conviction_score: Mapped[int | None] = mapped_column(Integer)
    run_id: Mapped[str | None] = mapped_column(String(64))
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    portfolio: Mapped[Portfolio] = relationship(back_populates="transactions")

    __table_args__ = (
        CheckConstraint("action IN ('BUY', 'SELL')", name="action"),
        CheckConstraint("shares > 0", name="shares_positive"),
        Index("idx_transactions_portfolio", "portfolio_id"),
        Index("idx_transactions_executed", "executed_at", postgresql_ops={"executed_at": "DESC"}),
    )


class Snapshot(Base):
    """Point-in-time portfolio valuation."""
    __tablename__ = "portfolio_snapshots"

    id: Mapped[int] = mapped_column(primary_key=True)
    portfolio_id: Mapped[str] = mapped_column(ForeignKey("portfolios.id", ondelete="CASCADE"), nullable=False)
    total_value: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    cash_balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    holdings_value: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    holdings_data: Mapped[list] = mapped_column(JSONB, nullable=False)
    run_id: Mapped[str | None] = mapped_column(String(64))
    snapshot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_snapshots_portfolio", "portfolio_id", "snapshot_at"),
    )


# =============================================================================
# PIPELINE RUNS
# =============================================================================


class PortfolioRun(Base):
    """Audit record of a construction or review run."""
    __tablename__ = "portfolio_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    portfolio_id: Mapped[str | None] = mapped_column(String(36))
    run_type: Mapped[str] = mapped_column(String(20), nullable=False)
    strategy: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")
    tier1_input_count: Mapped[int] = mapped_column(Integer, default=0)
    tier1_output_count: Mapped[int] = mapped_column(Integer, default=0)
    tier1_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    tier2_input_count: Mapped[int] = mapped_column(Integer, default=0)
    tier2_output_count: Mapped[int] = mapped_column(Integer, default=0)
    tier2_rejected_count: Mapped[int] = mapped_column(Integer, default=0)
    tier2_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    tier3_input_count: Mapped[int] = mapped_column(Integer, default=0)
    tier3_output_count: Mapped[int] = mapped_column(Integer, default=0)
    tier3_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    final_portfolio_count: Mapped[int] = mapped_column(Integer, default=0)
    config_snapshot: Mapped[dict | None] = mapped_column(JSONB)
    error_message: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint("status IN ('running', 'completed', 'failed')", name="status"),
        CheckConstraint("run_type IN ('CONSTRUCTION', 'MONTHLY_REVIEW')", name="run_type"),
        Index("idx_portfolio_runs_portfolio", "portfolio_id"),
        Index("idx_portfolio_runs_started", "started_at", postgresql_ops={"started_at": "DESC"}),
    )


class StockAnalysis(Base):
    """Tier 3 result for one ticker within a run."""
    __tablename__ = "stock_analyses"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[str] = mapped_column(ForeignKey("portfolio_runs.id", ondelete="CASCADE"), nullable=False)
    ticker: Mapped[str] = mapped_column(String(20), nullable=False)
    company_name: Mapped[str | None] = mapped_column(String(255))
    sector: Mapped[str | None] = mapped_column(String(100))
    current_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    tier1_score: Mapped[int | None] = mapped_column(Integer)
    tier2_decision: Mapped[str | None] = mapped_column(String(20))
    conviction_score: Mapped[int | None] = mapped_column(Integer)
    conviction_level: Mapped[str | None] = mapped_column(String(20))
    dcf_intrinsic_value: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    comparable_implied_value: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    dcf_upside_pct: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    raw_risk_score: Mapped[Decimal | None] = mapped_column(Numeric(4, 1))
    sentiment_score: Mapped[int | None] = mapped_column(Integer)
    earnings_sentiment: Mapped[str | None] = mapped_column(String(10))
    suggested_weight: Mapped[Decimal | None] = mapped_column(Numeric(6, 2))
    research_summary: Mapped[str | None] = mapped_column(Text)
    investment_thesis: Mapped[str | None] = mapped_column(Text)
    reasoning: Mapped[str | None] = mapped_column(Text)
    conviction_breakdown: Mapped[dict | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("run_id", "ticker", name="uq_stock_analyses_run_ticker"),
        Index("idx_stock_analyses_ticker", "ticker"),
    )


class TriageRecord(Base):
    """Tier 2 decision for one ticker within a run."""
    __tablename__ = "triage_decisions"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[str] = mapped_column(ForeignKey("portfolio_runs.id", ondelete="CASCADE"), nullable=False)
    ticker: Mapped[str] = mapped_column(String(20), nullable=False)
    tier1_score: Mapped[int] = mapped_column(Integer, nullable=False)
    decision: Mapped[str] = mapped_column(String(20), nullable=False)
    red_flags: Mapped[list] = mapped_column(JSONB, default=list)
    green_flags: Mapped[list] = mapped_column(JSONB, default=list)
    reasoning: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint(
            "decision IN ('PASS', 'FAST_TRACK', 'REJECT', 'NEEDS_REVIEW')",
            name="decision",
        ),
        Index("idx_triage_decisions_run", "run_id"),
    )
