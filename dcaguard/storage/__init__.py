"""Storage implementations of the persistence interfaces.

In-memory stores are used for tests and when no database is configured; the
SQL stores back a PostgreSQL (or SQLite) database through SQLAlchemy.
"""

from .memory_stores import InMemoryExecutionLedger, InMemoryStrategyStore
from .sql import SqlConfig, SqlExecutionLedger, SqlStrategyStore
