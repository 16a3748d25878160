"""
EavDB Test Suite.

This package contains:
- unit/: Unit tests (codec, filters, caches, single store components)
- integration/: Driver tests over a temporary SQLite file
"""
