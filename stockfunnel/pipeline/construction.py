"""
Portfolio construction.

``select`` admits Tier 3 results by conviction and normalizes their
suggested weights. ``allocate`` turns the admitted positions into share
counts under cash reserve, position and sector limits.
"""

from __future__ import annotations

import math

from stockfunnel.core.logging import get_logger
from stockfunnel.pipeline.schemas import (
    Allocation,
    AllocationConfig,
    AllocationResult,
    ConvictionResult,
    RejectedCandidate,
    SectorAllocation,
    SelectedPosition,
    SelectionResult,
)


logger = get_logger("pipeline.construction")


def _floor1(value: float) -> float:
    return math.floor(value * 10 + 1e-9) / 10


def _sector(position) -> str:
    return position.sector or "Unknown"


def _sector_weights(weights: dict[str, float], sectors: dict[str, str]) -> dict[str, float]:
    totals: dict[str, float] = {}
    for ticker, weight in weights.items():
        totals[sectors[ticker]] = totals.get(sectors[ticker], 0.0) + weight
    return totals


def _apply_sector_cap(
    weights: dict[str, float],
    sectors: dict[str, str],
    max_sector_pct: float,
    floor: bool = False,
) -> dict[str, float]:
    """Scale every overweight sector down to the cap."""
    totals = _sector_weights(weights, sectors)
    adjusted = {}
    for ticker, weight in weights.items():
        sector_total = totals[sectors[ticker]]
        if sector_total > max_sector_pct:
            weight = weight * max_sector_pct / sector_total
            if floor:
                weight = _floor1(weight)
        adjusted[ticker] = weight
    return adjusted


def _normalize(weights: dict[str, float], target_total: float) -> dict[str, float]:
    current = sum(weights.values())
    if current <= 0:
        return weights
    factor = target_total / current
    return {t: round(w * factor, 1) for t, w in weights.items()}


def _clamp(weights: dict[str, float], low: float, high: float) -> dict[str, float]:
    return {t: min(max(w, low), high) for t, w in weights.items()}


class PortfolioConstructor:
    """Chooses and sizes holdings from conviction results."""

    def __init__(self, max_holdings: int = 12, min_conviction: int = 50):
        self.max_holdings = max_holdings
        self.min_conviction = min_conviction

    def select(
        self,
        results: list[ConvictionResult],
        max_holdings: int | None = None,
        min_conviction: int | None = None,
    ) -> SelectionResult:
        """Admit candidates by descending conviction.

        Every input ends up either selected or rejected with a reason.
        Suggested weights of the admitted set are rescaled to 100% when they
        do not already sum to it, then capped at each position's max weight.
        """
        max_holdings = self.max_holdings if max_holdings is None else max_holdings
        min_conviction = self.min_conviction if min_conviction is None else min_conviction

        ranked = sorted(
            enumerate(results), key=lambda e: (-e[1].conviction_score, e[0])
        )
        admitted: list[ConvictionResult] = []
        rejected: list[RejectedCandidate] = []

        for _, r in ranked:
            if r.conviction_score < min_conviction:
                reason = f"Below minimum conviction ({r.conviction_score} < {min_conviction})"
            elif len(admitted) >= max_holdings:
                reason = f"Portfolio full ({max_holdings} holdings)"
            else:
                admitted.append(r)
                continue
            rejected.append(
                RejectedCandidate(
                    ticker=r.ticker,
                    conviction_score=r.conviction_score,
                    conviction_level=r.conviction_level,
                    reason=reason,
                )
            )

        total = sum(r.suggested_weight for r in admitted)
        scale = 100 / total if total > 0 and total != 100 else 1.0

        selected = []
        for r in admitted:
            weight = _floor1(r.suggested_weight * scale) if scale != 1.0 else r.suggested_weight
            selected.append(
                SelectedPosition(
                    ticker=r.ticker,
                    sector=r.sector,
                    company_name=r.company_name,
                    price=r.current_price,
                    conviction_score=r.conviction_score,
                    conviction_level=r.conviction_level,
                    weight=min(weight, r.max_weight),
                    max_weight=r.max_weight,
                    composite_upside=r.composite_upside,
                )
            )

        upsides = [r.composite_upside for r in admitted if r.composite_upside is not None]
        result = SelectionResult(
            selected=selected,
            rejected=rejected,
            average_conviction=(
                round(sum(r.conviction_score for r in admitted) / len(admitted))
                if admitted
                else 0
            ),
            average_upside=round(sum(upsides) / len(upsides), 1) if upsides else None,
        )
        logger.info(
            f"Selected {len(selected)} of {len(results)} candidates "
            f"(avg conviction {result.average_conviction})"
        )
        return result

    def allocate(
        self,
        selection: SelectionResult,
        config: AllocationConfig | None = None,
    ) -> AllocationResult:
        """Size positions in shares.

        Resulting weights never exceed the position or sector caps and sum to
        at most ``100 - cash_reserve_pct``.
        """
        config = config or AllocationConfig()
        positions = selection.selected
        if not positions:
            return AllocationResult(capital=config.capital, cash=config.capital)

        target_total = 100 - config.cash_reserve_pct
        sectors = {p.ticker: _sector(p) for p in positions}

        weights = {p.ticker: p.weight for p in positions}
        weights = _clamp(weights, config.min_position_pct, config.max_position_pct)
        weights = _apply_sector_cap(weights, sectors, config.max_sector_pct)
        weights = _normalize(weights, target_total)
        weights = _clamp(weights, config.min_position_pct, config.max_position_pct)
        weights = _normalize(weights, target_total)

        # Renormalizing can push positions or sectors back over their caps
        weights = {t: min(w, config.max_position_pct) for t, w in weights.items()}
        weights = _apply_sector_cap(weights, sectors, config.max_sector_pct, floor=True)
        total = sum(weights.values())
        if total > target_total:
            weights = {t: _floor1(w * target_total / total) for t, w in weights.items()}

        allocations: list[Allocation] = []
        breakdown: dict[str, SectorAllocation] = {}
        for p in positions:
            weight = weights[p.ticker]
            price = p.price or 0.0
            shares = math.floor(weight / 100 * config.capital / price) if price > 0 else 0
            if shares == 0:
                logger.warning(f"{p.ticker}: allocation of {weight}% buys no shares at {price}")
            allocations.append(
                Allocation(
                    ticker=p.ticker,
                    sector=sectors[p.ticker],
                    weight=weight,
                    shares=shares,
                    price=price,
                    value=round(shares * price, 2),
                    conviction_score=p.conviction_score,
                    conviction_level=p.conviction_level,
                )
            )
            bucket = breakdown.setdefault(sectors[p.ticker], SectorAllocation())
            bucket.count += 1
            bucket.weight = round(bucket.weight + weight, 4)
            bucket.tickers.append(p.ticker)

        invested = round(sum(a.value for a in allocations), 2)
        return AllocationResult(
            capital=config.capital,
            positions=allocations,
            sector_breakdown=breakdown,
            invested=invested,
            cash=round(config.capital - invested, 2),
        )
