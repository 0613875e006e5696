"""Persistence interfaces.

These protocols define the persistence boundary. Implementations can be backed by
PostgreSQL / SQLite (see `dcaguard.storage.sql`) or kept in memory.
"""

from .interfaces import ExecutionLedger, StrategyStore

__all__ = ["ExecutionLedger", "StrategyStore"]
