#!/usr/bin/env python3
"""Initialize the database schema.

Runs the SQL in db/schema.sql against the database pointed to by DATABASE_URL.

Usage:
  python -m db.init_db

Requirements:
  - DATABASE_URL must be set (PostgreSQL or SQLite URL)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Iterable

from sqlalchemy import create_engine

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


def _iter_sql_statements(sql: str) -> Iterable[str]:
    """Split a SQL script into executable statements.

    Supports:
    - `--` line comments
    - quoted strings (single and double quotes)

    This is intentionally simple and designed for our schema.sql (no $$ quoting).
    """

    buf: list[str] = []
    in_single = False
    in_double = False
    i = 0
    while i < len(sql):
        ch = sql[i]

        if not in_single and not in_double and ch == "-" and i + 1 < len(sql) and sql[i + 1] == "-":
            while i < len(sql) and sql[i] not in ("\n", "\r"):
                i += 1
            continue

        if ch == "'" and not in_double:
            # Doubled '' is an escaped quote, not the end of the string
            if in_single and i + 1 < len(sql) and sql[i + 1] == "'":
                buf.append("''")
                i += 2
                continue
            in_single = not in_single
            buf.append(ch)
            i += 1
            continue

        if ch == '"' and not in_single:
            in_double = not in_double
            buf.append(ch)
            i += 1
            continue

        if ch == ";" and not in_single and not in_double:
            stmt = "".join(buf).strip()
            buf = []
            if stmt:
                yield stmt
            i += 1
            continue

        buf.append(ch)
        i += 1

    tail = "".join(buf).strip()
    if tail:
        yield tail


def apply_schema(engine: Any, schema_path: Path = SCHEMA_PATH) -> int:
    """Execute every statement of the schema file. Returns the statement count.

    Statements use IF NOT EXISTS, so applying twice is harmless.
    """
    schema_sql = schema_path.read_text(encoding="utf-8")
    statements = list(_iter_sql_statements(schema_sql))

    # Execute schema as individual statements to stay driver-agnostic.
    raw = engine.raw_connection()
    try:
        cur = raw.cursor()
        for stmt in statements:
            cur.execute(stmt)
        raw.commit()
    finally:
        raw.close()

    logger.info("Applied %d schema statements", len(statements))
    return len(statements)


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise SystemExit("DATABASE_URL is not set")

    engine = create_engine(database_url, echo=False)
    apply_schema(engine)

    print("Database schema applied")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
