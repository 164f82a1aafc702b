"""
mnemo Test Suite.

- unit/: store adapters, selector, provider gateway, job queue, pipeline,
  reconciliation sweep, orchestrator
- integration/: HTTP surface end to end against a temporary SQLite file
- conftest.py: Shared fixtures and in-memory store/provider doubles

Run tests with: pytest
"""
