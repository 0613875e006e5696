from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from db.init_db import apply_schema
from dcaguard.automation.ledger import LedgerEntry, validate_entry
from dcaguard.automation.rules import (
    Strategy,
    StrategyConfig,
    apply_execution,
    new_strategy,
    with_status,
)
from dcaguard.errors import DCAGuardError, StrategyNotFoundError
from dcaguard.persistence.interfaces import ExecutionLedger, StrategyStore
from dcaguard.storage.sql.config import SqlConfig
from dcaguard.types import ExecutionAttempt, StrategyStatus

logger = logging.getLogger(__name__)

# Optimistic updates retry this many times before giving up.
MAX_UPDATE_ATTEMPTS = 5

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def _ts_to_db(dt: datetime) -> str:
    """Fixed-width UTC string so that lexical order is chronological."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _ts_from_db(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromisoformat(str(value))


def _build_engine(config: SqlConfig) -> Engine:
    # Do not log the URL (it may contain secrets).
    engine = create_engine(config.database_url, echo=False, pool_pre_ping=True)
    if config.create_schema:
        apply_schema(engine)
    return engine


def create_sql_stores(config: SqlConfig) -> tuple[SqlStrategyStore, SqlExecutionLedger]:
    """Build both SQL stores on one shared engine."""
    engine = _build_engine(config)
    return SqlStrategyStore(config=config, engine=engine), SqlExecutionLedger(config=config, engine=engine)


class _SqlStore:
    def __init__(self, *, config: SqlConfig, engine: Engine | None = None) -> None:
        self._config = config
        self._engine = engine

    def _get_engine(self) -> Engine:
        if self._engine is None:
            self._engine = _build_engine(self._config)
        return self._engine


_STRATEGY_COLUMNS = """
    id, name, network, wallet_address, from_token, to_token, amount, cadence,
    max_gas_price_gwei, slippage_tolerance, total_budget, status, executed_amount,
    execution_count, last_execution, next_execution, created_at, policy_ids
"""


def _row_to_strategy(row: Mapping[str, Any]) -> Strategy:
    config = StrategyConfig(
        name=row["name"],
        network=row["network"],
        from_token=row["from_token"],
        to_token=row["to_token"],
        amount=Decimal(row["amount"]),
        cadence=row["cadence"],
        max_gas_price_gwei=Decimal(row["max_gas_price_gwei"]),
        slippage_tolerance=Decimal(row["slippage_tolerance"]),
        total_budget=Decimal(row["total_budget"]),
        wallet_address=row["wallet_address"] or "",
    )
    return Strategy(
        id=row["id"],
        config=config,
        created_at=_ts_from_db(row["created_at"]),
        next_execution=_ts_from_db(row["next_execution"]),
        status=row["status"],
        executed_amount=Decimal(row["executed_amount"]),
        execution_count=int(row["execution_count"]),
        last_execution=_ts_from_db(row["last_execution"]) if row["last_execution"] else None,
        policy_ids=tuple(json.loads(row["policy_ids"] or "[]")),
    )


class SqlStrategyStore(_SqlStore, StrategyStore):
    """Strategy store backed by SQLAlchemy.

    Counter updates are optimistic: the UPDATE only matches when the row still
    carries the execution count it was read with, so two writers can never both
    apply against the same stale snapshot.
    """

    def create(self, config: StrategyConfig, *, now: datetime | None = None) -> Strategy:
        strategy = new_strategy(config, now=now or datetime.now(timezone.utc))
        stmt = text(
            f"""
            INSERT INTO dca_strategies ({_STRATEGY_COLUMNS})
            VALUES (
                :id, :name, :network, :wallet_address, :from_token, :to_token, :amount, :cadence,
                :max_gas_price_gwei, :slippage_tolerance, :total_budget, :status, :executed_amount,
                :execution_count, :last_execution, :next_execution, :created_at, :policy_ids
            )
            """
        )
        with self._get_engine().begin() as conn:
            conn.execute(
                stmt,
                {
                    "id": strategy.id,
                    "name": config.name,
                    "network": config.network,
                    "wallet_address": config.wallet_address,
                    "from_token": config.from_token,
                    "to_token": config.to_token,
                    "amount": str(config.amount),
                    "cadence": config.cadence,
                    "max_gas_price_gwei": str(config.max_gas_price_gwei),
                    "slippage_tolerance": str(config.slippage_tolerance),
                    "total_budget": str(config.total_budget),
                    "status": strategy.status,
                    "executed_amount": str(strategy.executed_amount),
                    "execution_count": strategy.execution_count,
                    "last_execution": None,
                    "next_execution": _ts_to_db(strategy.next_execution),
                    "created_at": _ts_to_db(strategy.created_at),
                    "policy_ids": "[]",
                },
            )
        return strategy

    def _fetch(self, conn: Connection, strategy_id: str) -> Strategy:
        stmt = text(f"SELECT {_STRATEGY_COLUMNS} FROM dca_strategies WHERE id = :id")
        row = conn.execute(stmt, {"id": strategy_id}).mappings().fetchone()
        if row is None:
            raise StrategyNotFoundError(strategy_id)
        return _row_to_strategy(row)

    def get(self, strategy_id: str) -> Strategy:
        with self._get_engine().begin() as conn:
            return self._fetch(conn, strategy_id)

    def list(
        self,
        *,
        status: StrategyStatus | None = None,
        due_before: datetime | None = None,
    ) -> Sequence[Strategy]:
        where = ["1 = 1"]
        params: dict[str, Any] = {}
        if status is not None:
            where.append("status = :status")
            params["status"] = status
        if due_before is not None:
            where.append("next_execution <= :due_before")
            params["due_before"] = _ts_to_db(due_before)
        clause = " AND ".join(where)

        stmt = text(
            f"""
            SELECT {_STRATEGY_COLUMNS}
            FROM dca_strategies
            WHERE {clause}
            ORDER BY next_execution ASC, id ASC
            """
        )
        with self._get_engine().begin() as conn:
            rows = conn.execute(stmt, params).mappings().fetchall()
        return [_row_to_strategy(row) for row in rows]

    def apply_execution_result(self, strategy_id: str, executed_amount: Decimal, timestamp: datetime) -> Strategy:
        stmt = text(
            """
            UPDATE dca_strategies
            SET executed_amount = :executed_amount,
                execution_count = :execution_count,
                last_execution = :last_execution,
                next_execution = :next_execution,
                status = :status
            WHERE id = :id AND execution_count = :expected_count
            """
        )
        for _ in range(MAX_UPDATE_ATTEMPTS):
            with self._get_engine().begin() as conn:
                current = self._fetch(conn, strategy_id)
                updated = apply_execution(current, executed_amount=executed_amount, timestamp=timestamp)
                result = conn.execute(
                    stmt,
                    {
                        "id": strategy_id,
                        "expected_count": current.execution_count,
                        "executed_amount": str(updated.executed_amount),
                        "execution_count": updated.execution_count,
                        "last_execution": _ts_to_db(timestamp),
                        "next_execution": _ts_to_db(updated.next_execution),
                        "status": updated.status,
                    },
                )
                if result.rowcount == 1:
                    return updated
            logger.warning("Concurrent update on strategy %s, retrying", strategy_id)
        raise DCAGuardError(f"Could not apply execution to strategy {strategy_id}: too many concurrent updates")

    def set_status(self, strategy_id: str, status: StrategyStatus) -> Strategy:
        stmt = text("UPDATE dca_strategies SET status = :status WHERE id = :id AND status = :expected")
        for _ in range(MAX_UPDATE_ATTEMPTS):
            with self._get_engine().begin() as conn:
                current = self._fetch(conn, strategy_id)
                updated = with_status(current, status)
                if updated.status == current.status:
                    return current
                result = conn.execute(stmt, {"id": strategy_id, "status": updated.status, "expected": current.status})
                if result.rowcount == 1:
                    return updated
        raise DCAGuardError(f"Could not update status of strategy {strategy_id}: too many concurrent updates")

    def attach_policy_ids(self, strategy_id: str, policy_ids: Sequence[str]) -> Strategy:
        with self._get_engine().begin() as conn:
            current = self._fetch(conn, strategy_id)
            merged = list(current.policy_ids) + list(policy_ids)
            conn.execute(
                text("UPDATE dca_strategies SET policy_ids = :policy_ids WHERE id = :id"),
                {"id": strategy_id, "policy_ids": json.dumps(merged)},
            )
            return self._fetch(conn, strategy_id)

    def claim(self, strategy_id: str, *, owner: str, now: datetime, expires_at: datetime) -> bool:
        stmt = text(
            """
            UPDATE dca_strategies
            SET claimed_by = :owner, claim_expires_at = :expires_at
            WHERE id = :id
              AND (claimed_by IS NULL OR claim_expires_at < :now)
            """
        )
        with self._get_engine().begin() as conn:
            result = conn.execute(
                stmt,
                {
                    "id": strategy_id,
                    "owner": owner,
                    "now": _ts_to_db(now),
                    "expires_at": _ts_to_db(expires_at),
                },
            )
            if result.rowcount == 1:
                return True
            # Distinguish "held by someone else" from "no such strategy".
            self._fetch(conn, strategy_id)
            return False

    def release(self, strategy_id: str, *, owner: str) -> None:
        stmt = text(
            """
            UPDATE dca_strategies
            SET claimed_by = NULL, claim_expires_at = NULL
            WHERE id = :id AND claimed_by = :owner
            """
        )
        with self._get_engine().begin() as conn:
            conn.execute(stmt, {"id": strategy_id, "owner": owner})


class SqlExecutionLedger(_SqlStore, ExecutionLedger):
    """Append-only ledger table; `seq` is allocated per strategy inside the insert transaction."""

    def _next_seq(self, conn: Connection, strategy_id: str) -> int:
        stmt = text("SELECT COALESCE(MAX(seq), 0) + 1 FROM dca_ledger_entries WHERE strategy_id = :strategy_id")
        return int(conn.execute(stmt, {"strategy_id": strategy_id}).scalar_one())

    def append(self, entry: LedgerEntry) -> None:
        validate_entry(entry)
        attempt = entry.attempt
        insert = text(
            """
            INSERT INTO dca_ledger_entries (
                entry_id, strategy_id, seq, outcome, reason, transaction_ref, amount, from_token,
                to_token, max_gas_price_wei, wallet_address, attempt_trigger, attempted_at, recorded_at
            )
            VALUES (
                :entry_id, :strategy_id, :seq, :outcome, :reason, :transaction_ref, :amount, :from_token,
                :to_token, :max_gas_price_wei, :wallet_address, :attempt_trigger, :attempted_at, :recorded_at
            )
            """
        )
        params = {
            "entry_id": entry.entry_id,
            "strategy_id": attempt.strategy_id,
            "outcome": entry.outcome,
            "reason": entry.reason,
            "transaction_ref": entry.transaction_ref,
            "amount": str(attempt.amount),
            "from_token": attempt.from_token,
            "to_token": attempt.to_token,
            "max_gas_price_wei": str(attempt.max_gas_price_wei),
            "wallet_address": attempt.wallet_address,
            "attempt_trigger": attempt.trigger,
            "attempted_at": _ts_to_db(attempt.timestamp),
            "recorded_at": _ts_to_db(entry.timestamp),
        }
        for _ in range(MAX_UPDATE_ATTEMPTS):
            try:
                with self._get_engine().begin() as conn:
                    conn.execute(insert, {**params, "seq": self._next_seq(conn, attempt.strategy_id)})
                return
            except IntegrityError:
                # Another writer took the same seq; allocate again.
                logger.warning("Ledger seq conflict on strategy %s, retrying", attempt.strategy_id)
        raise DCAGuardError(
            f"Could not append ledger entry for strategy {attempt.strategy_id}: too many concurrent appends"
        )

    def list_by_strategy(self, strategy_id: str, *, limit: Optional[int] = None) -> Sequence[LedgerEntry]:
        stmt = text(
            """
            SELECT entry_id, strategy_id, seq, outcome, reason, transaction_ref, amount, from_token,
                   to_token, max_gas_price_wei, wallet_address, attempt_trigger, attempted_at, recorded_at
            FROM dca_ledger_entries
            WHERE strategy_id = :strategy_id
            ORDER BY seq ASC
            """
        )
        with self._get_engine().begin() as conn:
            rows = conn.execute(stmt, {"strategy_id": strategy_id}).mappings().fetchall()

        entries = [
            LedgerEntry(
                attempt=ExecutionAttempt(
                    strategy_id=row["strategy_id"],
                    amount=Decimal(row["amount"]),
                    from_token=row["from_token"],
                    to_token=row["to_token"],
                    max_gas_price_wei=int(row["max_gas_price_wei"]),
                    wallet_address=row["wallet_address"] or "",
                    timestamp=_ts_from_db(row["attempted_at"]),
                    trigger=row["attempt_trigger"],
                ),
                outcome=row["outcome"],
                reason=row["reason"],
                transaction_ref=row["transaction_ref"],
                timestamp=_ts_from_db(row["recorded_at"]),
                entry_id=row["entry_id"],
            )
            for row in rows
        ]
        if limit is not None:
            entries = entries[-limit:]
        return entries
