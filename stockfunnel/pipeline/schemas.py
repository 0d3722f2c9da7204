"""
Pydantic schemas for the investment funnel.

All data structures passed between the scorer, screener, triage, conviction,
construction, rebalance and ledger stages.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =============================================================================
# Enums
# =============================================================================


class Strategy(str, Enum):
    """Scoring and conviction weighting profile."""

    VALUE = "value"
    GROWTH = "growth"
    BALANCED = "balanced"


class TriageDecision(str, Enum):
    """Tier 2 outcome for a candidate."""

    PASS = "PASS"
    FAST_TRACK = "FAST_TRACK"
    REJECT = "REJECT"
    NEEDS_REVIEW = "NEEDS_REVIEW"


class ConvictionLevel(str, Enum):
    """Discrete bucket of a conviction score."""

    VERY_HIGH = "VERY_HIGH"
    HIGH = "HIGH"
    MODERATE = "MODERATE"
    LOW = "LOW"
    VERY_LOW = "VERY_LOW"


class HoldingAction(str, Enum):
    """Review outcome for an existing holding."""

    HOLD = "HOLD"
    TRIM = "TRIM"
    SELL = "SELL"
    ADD = "ADD"


class TradeAction(str, Enum):
    """Proposed rebalance trade."""

    SELL = "SELL"
    TRIM = "TRIM"
    ADD = "ADD"
    BUY = "BUY"

    @property
    def side(self) -> "TransactionSide":
        if self in (TradeAction.SELL, TradeAction.TRIM):
            return TransactionSide.SELL
        return TransactionSide.BUY


class TransactionSide(str, Enum):
    """Side of a recorded transaction."""

    BUY = "BUY"
    SELL = "SELL"


class RunStatus(str, Enum):
    """Lifecycle of a pipeline run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class RunType(str, Enum):
    """Kind of pipeline run."""

    CONSTRUCTION = "CONSTRUCTION"
    MONTHLY_REVIEW = "MONTHLY_REVIEW"


class AnalysisKind(str, Enum):
    """Qualitative analysis requested per ticker."""

    DCF = "dcf"
    COMPARABLE = "comparable"
    SENTIMENT = "sentiment"
    RISK = "risk"
    EARNINGS = "earnings"


class PipelineStage(str, Enum):
    """Construction state machine stages."""

    PENDING = "pending"
    TIER1 = "tier1"
    TIER2 = "tier2"
    TIER3 = "tier3"
    CONSTRUCTION = "construction"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# Tier 1: metrics and scores
# =============================================================================


class StockMetrics(BaseModel):
    """Immutable snapshot of a ticker's fundamentals.

    Percent-type fields (dividend yield, margins, growth, 52-week change) are
    expressed in percent, not fractions.
    """

    model_config = ConfigDict(frozen=True)

    ticker: str
    company_name: str | None = None
    sector: str | None = None
    price: float | None = None
    market_cap: float | None = None
    pe_ratio: float | None = None
    pb_ratio: float | None = None
    ps_ratio: float | None = None
    dividend_yield: float | None = None
    profit_margin: float | None = None
    roe: float | None = None
    current_ratio: float | None = None
    debt_to_equity: float | None = None
    revenue_growth: float | None = None
    earnings_growth: float | None = None
    beta: float | None = None
    week52_change: float | None = None

    @field_validator("ticker", mode="before")
    @classmethod
    def uppercase_ticker(cls, v: str) -> str:
        return v.upper().strip()


class ScoreResult(BaseModel):
    """Five-factor score for one ticker under one strategy."""

    ticker: str
    company_name: str | None = None
    sector: str | None = None
    price: float | None = None
    market_cap: float | None = None
    pe_ratio: float | None = None
    beta: float | None = None
    profit_margin: float | None = None
    value_score: int = Field(..., ge=0, le=100)
    quality_score: int = Field(..., ge=0, le=100)
    risk_score: int = Field(..., ge=0, le=100)
    growth_score: int = Field(..., ge=0, le=100)
    momentum_score: int = Field(..., ge=0, le=100)
    total_score: int = Field(..., ge=0, le=100)
    strategy: Strategy


class FailedTicker(BaseModel):
    """A ticker excluded from a batch with the reason it failed."""

    ticker: str
    reason: str


class ScreeningBatch(BaseModel):
    """Output of a batch screening pass."""

    strategy: Strategy
    results: list[ScoreResult] = Field(default_factory=list)
    failed: list[FailedTicker] = Field(default_factory=list)
    total: int = 0

    @property
    def success_count(self) -> int:
        return len(self.results)


class Tier1Config(BaseModel):
    """Thresholds for the Tier 1 quantitative filter."""

    min_score: int = Field(45, ge=0, le=100)
    max_candidates: int = Field(80, ge=1)
    require_positive_fcf: bool = True
    max_pe: float = Field(100, gt=0)
    min_market_cap: float = Field(1e9, ge=0)


class Tier1Rejections(BaseModel):
    """Rejection counters by reason."""

    low_score: int = 0
    negative_fcf: int = 0
    high_pe: int = 0
    low_market_cap: int = 0
    data_error: int = 0

    @property
    def total(self) -> int:
        return (
            self.low_score
            + self.negative_fcf
            + self.high_pe
            + self.low_market_cap
            + self.data_error
        )


class Tier1Result(BaseModel):
    """Candidates that survived the Tier 1 filter."""

    candidates: list[ScoreResult] = Field(default_factory=list)
    total_screened: int = 0
    rejections: Tier1Rejections = Field(default_factory=Tier1Rejections)


class RankedCandidate(BaseModel):
    """Candidate admitted by sector-capped ranking with a suggested weight."""

    rank: int
    score: ScoreResult
    sector: str
    weight: float


class RankingExclusions(BaseModel):
    low_score: int = 0
    sector_limit: int = 0


class RankingResult(BaseModel):
    """Sector-constrained ranked list."""

    candidates: list[RankedCandidate] = Field(default_factory=list)
    sector_breakdown: dict[str, int] = Field(default_factory=dict)
    excluded: RankingExclusions = Field(default_factory=RankingExclusions)


# =============================================================================
# Tier 2: triage
# =============================================================================


class EarningsRecord(BaseModel):
    """Reported vs estimated EPS for one quarter."""

    actual: float | None = None
    estimate: float | None = None

    @property
    def surprise_pct(self) -> float | None:
        if self.actual is None or self.estimate is None or self.estimate == 0:
            return None
        return (self.actual - self.estimate) / abs(self.estimate) * 100

    @property
    def missed(self) -> bool:
        return (
            self.actual is not None
            and self.estimate is not None
            and self.actual < self.estimate
        )


class QualitativeChecks(BaseModel):
    """Lightweight qualitative data used by triage."""

    ticker: str
    strong_buy: int = 0
    buy: int = 0
    hold: int = 0
    sell: int = 0
    strong_sell: int = 0
    target_mean_price: float | None = None
    current_price: float | None = None
    short_percent_of_float: float | None = None
    earnings: list[EarningsRecord] = Field(
        default_factory=list, description="Most recent quarter first"
    )
    beta: float | None = None
    upgrades_90d: int = 0
    downgrades_90d: int = 0

    @property
    def total_ratings(self) -> int:
        return self.strong_buy + self.buy + self.hold + self.sell + self.strong_sell


class TriageCandidate(BaseModel):
    """Tier 1 survivor handed to triage."""

    ticker: str
    tier1_score: int
    sector: str | None = None
    company_name: str | None = None

    @classmethod
    def from_score(cls, score: ScoreResult) -> "TriageCandidate":
        return cls(
            ticker=score.ticker,
            tier1_score=score.total_score,
            sector=score.sector,
            company_name=score.company_name,
        )


class TriageVerdict(BaseModel):
    """Tier 2 decision with its supporting flags."""

    ticker: str
    tier1_score: int
    sector: str | None = None
    company_name: str | None = None
    decision: TriageDecision
    red_flags: list[str] = Field(default_factory=list)
    green_flags: list[str] = Field(default_factory=list)
    reasoning: str
    analyst_consensus: str | None = None
    target_upside: float | None = None
    short_interest_risk: str | None = None
    earnings_sentiment: str | None = None
    risk_level: str | None = None
    rating_trend: str | None = None


class Tier2Result(BaseModel):
    """Finalists and the rest of the triage output."""

    finalists: list[TriageVerdict] = Field(default_factory=list)
    rejected: list[TriageVerdict] = Field(default_factory=list)
    needs_review: list[TriageVerdict] = Field(default_factory=list)

    @property
    def fast_tracked(self) -> int:
        return sum(1 for v in self.finalists if v.decision == TriageDecision.FAST_TRACK)

    @property
    def total(self) -> int:
        return len(self.finalists) + len(self.rejected) + len(self.needs_review)


# =============================================================================
# Tier 3: conviction
# =============================================================================


class AnalysisTexts(BaseModel):
    """Free text returned by the qualitative provider, one per kind."""

    dcf: str | None = None
    comparable: str | None = None
    sentiment: str | None = None
    risk: str | None = None
    earnings: str | None = None

    def get(self, kind: AnalysisKind) -> str | None:
        return getattr(self, kind.value)

    @property
    def available(self) -> list[AnalysisKind]:
        return [k for k in AnalysisKind if self.get(k)]


class ConvictionInput(BaseModel):
    """Everything the synthesizer needs for one ticker."""

    ticker: str
    tier1_score: int = Field(..., ge=0, le=100)
    tier2_decision: TriageDecision = TriageDecision.PASS
    sector: str | None = None
    company_name: str | None = None
    current_price: float | None = None
    analyses: AnalysisTexts = Field(default_factory=AnalysisTexts)
    # Pre-computed figures take precedence over values parsed from text
    dcf_upside: float | None = None
    peer_upside: float | None = None
    risk_score: float | None = Field(None, ge=1, le=10)


class ComponentScores(BaseModel):
    valuation: int
    sentiment: int
    risk: int
    earnings: int
    quality: int


class ConvictionResult(BaseModel):
    """Synthesized conviction for one ticker."""

    ticker: str
    sector: str | None = None
    company_name: str | None = None
    current_price: float | None = None
    strategy: Strategy
    tier1_score: int
    tier2_decision: TriageDecision
    conviction_score: int = Field(..., ge=0, le=100)
    conviction_level: ConvictionLevel
    components: ComponentScores
    dcf_upside: float | None = None
    peer_upside: float | None = None
    composite_upside: float | None = None
    intrinsic_value: float | None = None
    implied_value: float | None = None
    raw_risk_score: float | None = None
    sentiment_label: str | None = None
    bull_case: list[str] = Field(default_factory=list)
    bear_case: list[str] = Field(default_factory=list)
    key_risks: list[str] = Field(default_factory=list)
    suggested_weight: float
    max_weight: float
    reasoning: str


class ConvictionSummary(BaseModel):
    """Counts per level and the average conviction of a batch."""

    total: int = 0
    by_level: dict[ConvictionLevel, int] = Field(default_factory=dict)
    average_conviction: float = 0.0


# =============================================================================
# Construction
# =============================================================================


class SelectedPosition(BaseModel):
    ticker: str
    sector: str | None = None
    company_name: str | None = None
    price: float | None = None
    conviction_score: int
    conviction_level: ConvictionLevel
    weight: float
    max_weight: float
    composite_upside: float | None = None


class RejectedCandidate(BaseModel):
    ticker: str
    conviction_score: int
    conviction_level: ConvictionLevel
    reason: str


class SelectionResult(BaseModel):
    """Admission outcome for every Tier 3 result."""

    selected: list[SelectedPosition] = Field(default_factory=list)
    rejected: list[RejectedCandidate] = Field(default_factory=list)
    average_conviction: int = 0
    average_upside: float | None = None

    @property
    def total_weight(self) -> float:
        return round(sum(p.weight for p in self.selected), 4)


class AllocationConfig(BaseModel):
    """Capital allocation constraints (percent units)."""

    capital: float = Field(100_000, gt=0)
    cash_reserve_pct: float = Field(5.0, ge=0, lt=100)
    max_sector_pct: float = Field(25.0, gt=0, le=100)
    max_position_pct: float = Field(10.0, gt=0, le=100)
    min_position_pct: float = Field(2.0, ge=0, le=100)

    @model_validator(mode="after")
    def check_bounds(self) -> "AllocationConfig":
        if self.min_position_pct > self.max_position_pct:
            raise ValueError("min_position_pct must not exceed max_position_pct")
        return self


class Allocation(BaseModel):
    ticker: str
    sector: str
    weight: float
    shares: int
    price: float
    value: float
    conviction_score: int
    conviction_level: ConvictionLevel


class SectorAllocation(BaseModel):
    count: int = 0
    weight: float = 0.0
    tickers: list[str] = Field(default_factory=list)


class AllocationResult(BaseModel):
    """Positions sized in shares with the resulting sector exposure."""

    capital: float
    positions: list[Allocation] = Field(default_factory=list)
    sector_breakdown: dict[str, SectorAllocation] = Field(default_factory=dict)
    invested: float = 0.0
    cash: float = 0.0

    @property
    def total_weight(self) -> float:
        return round(sum(p.weight for p in self.positions), 4)


# =============================================================================
# Configuration
# =============================================================================


class PipelineConfig(BaseModel):
    """User-facing construction parameters."""

    strategy: Strategy = Strategy.BALANCED
    portfolio_name: str | None = None
    initial_capital: float = Field(100_000, gt=0)
    target_holdings: int = Field(12, ge=1, le=100)
    cash_reserve_pct: float = Field(5.0, ge=0, lt=100)
    max_sector_pct: float = Field(25.0, gt=0, le=100)
    max_position_pct: float = Field(10.0, gt=0, le=100)
    min_position_pct: float = Field(2.0, ge=0, le=100)
    tier1_min_score: int = Field(50, ge=0, le=100)
    tier1_max_candidates: int = Field(80, ge=1)
    tier2_max_finalists: int = Field(25, ge=1)
    fast_track_threshold: int = Field(70, ge=0, le=100)
    tier3_min_conviction: int = Field(50, ge=0, le=100)
    universe: list[str] | None = Field(
        None, description="Tickers to screen (None = bundled S&P 500)"
    )

    @field_validator("universe", mode="before")
    @classmethod
    def uppercase_universe(cls, v):
        if v is None:
            return v
        if isinstance(v, str):
            v = v.split(",")
        return [s.strip().upper() for s in v if s and s.strip()]

    @model_validator(mode="after")
    def check_position_bounds(self) -> "PipelineConfig":
        if self.min_position_pct > self.max_position_pct:
            raise ValueError("min_position_pct must not exceed max_position_pct")
        if self.max_position_pct > 100 - self.cash_reserve_pct:
            raise ValueError("max_position_pct cannot exceed investable percent")
        return self

    def run_snapshot(self) -> dict[str, Any]:
        """Config snapshot stored on the run ledger."""
        return {
            "strategy": self.strategy.value,
            "tier1_min_score": self.tier1_min_score,
            "tier1_max_candidates": self.tier1_max_candidates,
            "tier2_max_finalists": self.tier2_max_finalists,
            "fast_track_threshold": self.fast_track_threshold,
            "tier3_min_conviction": self.tier3_min_conviction,
            "max_sector_pct": self.max_sector_pct,
            "min_position_pct": self.min_position_pct,
            "max_position_pct": self.max_position_pct,
            "target_holdings": self.target_holdings,
            "cash_reserve_pct": self.cash_reserve_pct,
        }

    def tier1(self) -> Tier1Config:
        return Tier1Config(
            min_score=self.tier1_min_score,
            max_candidates=self.tier1_max_candidates,
        )

    def allocation(self) -> AllocationConfig:
        return AllocationConfig(
            capital=self.initial_capital,
            cash_reserve_pct=self.cash_reserve_pct,
            max_sector_pct=self.max_sector_pct,
            max_position_pct=self.max_position_pct,
            min_position_pct=self.min_position_pct,
        )


class RebalanceConfig(BaseModel):
    """Thresholds and limits for a monthly review."""

    sell_threshold: int = Field(40, ge=0, le=100)
    hold_threshold: int = Field(50, ge=0, le=100)
    buy_threshold: int = Field(60, ge=0, le=100)
    max_sells: int = Field(3, ge=0)
    max_buys: int = Field(3, ge=0)
    max_turnover_pct: float = Field(20.0, ge=0, le=100)
    min_position_pct: float = Field(2.0, ge=0, le=100)
    max_position_pct: float = Field(10.0, gt=0, le=100)
    target_cash_pct: float = Field(5.0, ge=0, lt=100)
    run_full_analysis: bool = True
    screen_new_candidates: bool = True
    new_candidate_limit: int = Field(10, ge=0)
    execute: bool = False

    @model_validator(mode="after")
    def check_thresholds(self) -> "RebalanceConfig":
        if not self.sell_threshold <= self.hold_threshold <= self.buy_threshold:
            raise ValueError("thresholds must satisfy sell <= hold <= buy")
        if self.min_position_pct > self.max_position_pct:
            raise ValueError("min_position_pct must not exceed max_position_pct")
        return self


# =============================================================================
# Holdings, runs and rebalance output
# =============================================================================


class Holding(BaseModel):
    """A position held in a portfolio."""

    portfolio_id: str
    ticker: str
    shares: int = Field(..., ge=0)
    avg_cost: float = Field(..., ge=0)
    current_price: float | None = None
    sector: str | None = None
    company_name: str | None = None
    conviction_score: int | None = None
    conviction_level: ConvictionLevel | None = None
    last_analysis_date: datetime | None = None


class PortfolioRun(BaseModel):
    """Audit record of a pipeline execution."""

    id: str
    portfolio_id: str | None = None
    run_type: RunType
    strategy: Strategy
    status: RunStatus = RunStatus.RUNNING
    tier1_input_count: int = 0
    tier1_output_count: int = 0
    tier1_completed_at: datetime | None = None
    tier2_input_count: int = 0
    tier2_output_count: int = 0
    tier2_rejected_count: int = 0
    tier2_completed_at: datetime | None = None
    tier3_input_count: int = 0
    tier3_output_count: int = 0
    tier3_completed_at: datetime | None = None
    final_portfolio_count: int = 0
    config_snapshot: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None


class HoldingReview(BaseModel):
    """Fresh look at one holding."""

    ticker: str
    sector: str | None = None
    shares: int
    avg_cost: float
    current_price: float
    market_value: float
    gain_pct: float
    weight: float
    previous_conviction: int | None = None
    new_conviction: int
    conviction_delta: int | None = None
    conviction: ConvictionResult
    action: HoldingAction
    reason: str


class Trade(BaseModel):
    """A proposed rebalance trade."""

    priority: int
    ticker: str
    action: TradeAction
    shares: int = Field(..., ge=0)
    price: float
    value: float
    reason: str
    conviction_score: int | None = None
    sector: str | None = None


class ExecutedTrade(BaseModel):
    trade: Trade
    executed: bool
    error: str | None = None


class RebalanceResult(BaseModel):
    """Outcome of a monthly review."""

    run_id: str
    portfolio_id: str
    status: RunStatus
    reviews: list[HoldingReview] = Field(default_factory=list)
    new_candidates: list[ConvictionResult] = Field(default_factory=list)
    trades: list[Trade] = Field(default_factory=list)
    executions: list[ExecutedTrade] = Field(default_factory=list)
    turnover_pct: float = 0.0
    total_value: float = 0.0
    cash_before: float = 0.0
    cash_after: float = 0.0
    summary: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class StageFailure(BaseModel):
    """A per-ticker failure surfaced in a run result."""

    stage: PipelineStage
    ticker: str
    reason: str


class ConstructionResult(BaseModel):
    """Outcome of a full funnel run."""

    run_id: str
    status: RunStatus
    stage: PipelineStage
    strategy: Strategy
    portfolio_id: str | None = None
    tier1: Tier1Result | None = None
    tier2: Tier2Result | None = None
    tier3: list[ConvictionResult] = Field(default_factory=list)
    tier3_summary: ConvictionSummary | None = None
    selection: SelectionResult | None = None
    allocation: AllocationResult | None = None
    failures: list[StageFailure] = Field(default_factory=list)
    error: str | None = None
    duration_seconds: float = 0.0
