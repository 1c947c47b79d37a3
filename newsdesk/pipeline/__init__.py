"""Fetch pipeline - tiered orchestrator, outbox sync, bulk downloads and the CLI."""
