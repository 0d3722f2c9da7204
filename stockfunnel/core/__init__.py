"""Core infrastructure: settings, logging, errors, rate limiting."""
