"""
sitestack Test Suite.

- unit/: Engine, state store, providers and CLI tests
- integration/: End-to-end reconcile runs against the in-memory control plane
- conftest.py: Shared fixtures and test configuration

Run tests with: pytest
"""
