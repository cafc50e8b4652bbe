"""
distssh Test Suite.

This package contains:
- unit/: Unit tests (temporary SQLite files, fake clocks and probes)
- integration/: Integration tests (real subprocesses, several processes
  sharing one database, the command line)
"""
