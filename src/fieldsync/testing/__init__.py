"""Test support utilities for the fieldsync package.

Everything here is free of pytest fixtures so it can be imported from any
test context, and from local development scripts that run the engine
without PostgreSQL.
"""

from __future__ import annotations

from fieldsync.testing.memory import InMemorySyncStore

__all__ = ["InMemorySyncStore"]
