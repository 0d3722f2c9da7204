"""Persistence: store protocols and ORM-backed repositories."""
