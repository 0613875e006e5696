"""SQL storage (PostgreSQL recommended, SQLite for local runs and tests).

Notes
- We avoid logging connection URLs to prevent accidental secret leakage.
"""

from .config import SqlConfig
from .stores import SqlExecutionLedger, SqlStrategyStore, create_sql_stores
