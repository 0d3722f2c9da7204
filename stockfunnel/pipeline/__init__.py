"""Investment funnel stages: scoring, triage, conviction, construction, rebalance."""
