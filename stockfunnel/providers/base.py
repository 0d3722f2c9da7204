"""
Provider protocols for market data and qualitative analysis.

Pipeline stages depend only on these protocols; concrete implementations
live next to this module.
"""

from typing import Any, Optional, Protocol, runtime_checkable

from stockfunnel.pipeline.schemas import AnalysisKind, QualitativeChecks, StockMetrics


# =============================================================================
# Market Data
# =============================================================================


@runtime_checkable
class MarketDataProvider(Protocol):
    """Protocol for fundamentals, triage checks and quotes."""

    async def get_metrics(self, ticker: str) -> Optional[StockMetrics]:
        """Fundamentals snapshot, or None when the ticker has no data."""
        ...

    async def get_quality_checks(self, ticker: str) -> QualitativeChecks:
        """Analyst, short interest, earnings and rating data for triage."""
        ...

    async def get_price(self, ticker: str) -> Optional[float]:
        """Latest trade price."""
        ...


# =============================================================================
# Qualitative Analysis
# =============================================================================


@runtime_checkable
class QualitativeAnalysisProvider(Protocol):
    """Protocol for free-text analysis generators."""

    async def analyze(
        self,
        ticker: str,
        kind: AnalysisKind,
        context: dict[str, Any],
    ) -> Optional[str]:
        """Return analysis text, or None when the analysis could not be produced."""
        ...
