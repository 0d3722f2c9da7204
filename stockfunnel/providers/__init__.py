"""Market data and qualitative analysis providers."""
