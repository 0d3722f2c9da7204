"""HTTP API: application factory, dependencies and routes."""
