"""Stock funnel: screen, triage, synthesize conviction, build and rebalance portfolios."""

__version__ = "0.1.0"
