"""
Sofa SDK Test Suite.

This package contains:
- unit/: Unit tests (no external dependencies)
- integration/: Integration tests (in-memory server over httpx)
- e2e/: End-to-end tests (live database server)
"""
