"""Resilience helpers shared by the provider adapters."""
