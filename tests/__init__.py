"""
SkillMirror test suite.

- tests/unit/         : SQLite-backed and in-memory tests, no external services
- tests/integration/  : PostgreSQL via testcontainers (skipped without Docker)

Tests follow Arrange / Act / Assert and are grouped in ``Test*`` classes.
"""
