"""Shared utilities: confirmation gate, logging, resilience."""
