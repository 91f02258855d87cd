"""
pgpitr Test Suite.

This package contains:
- unit/: Unit tests (in-memory engine and storage, SQLite catalog)
- integration/: Recovery scenarios and the HTTP trigger API
- e2e/: End-to-end tests against a real PostgreSQL and object store
"""
