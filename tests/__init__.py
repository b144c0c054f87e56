"""
pgarchive sidecar test suite.

This package contains:
- fakes.py: scripted archiving tool, clocks and object builders
- unit/: Unit tests (no external dependencies)
- integration/: Component wiring tests (in-memory control plane, fake tool,
  temporary spool directories)
"""
