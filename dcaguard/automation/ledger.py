"""Execution ledger records.

Every execution attempt ends in exactly one append-only ledger entry. Strategy
counters are derived from `approved-executed` entries only, which makes the
ledger the source of truth for reconciliation.

All timestamps use timezone-aware UTC datetimes for consistency.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Literal, Optional, Sequence

from dcaguard.errors import ValidationError
from dcaguard.types import ExecutionAttempt

if TYPE_CHECKING:
    from dcaguard.persistence.interfaces import ExecutionLedger, StrategyStore

Outcome = Literal["approved-executed", "approved-failed-downstream", "rejected"]

OUTCOMES: tuple[str, ...] = ("approved-executed", "approved-failed-downstream", "rejected")


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    ts = str(value)
    # Normalize common ISO 8601 variant with trailing 'Z' (UTC)
    if ts.endswith("Z"):
        ts = ts[:-1] + "+00:00"
    return datetime.fromisoformat(ts)


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable outcome of one execution attempt."""

    attempt: ExecutionAttempt
    outcome: Outcome
    reason: Optional[str] = None
    transaction_ref: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def strategy_id(self) -> str:
        return self.attempt.strategy_id

    @property
    def amount(self) -> Decimal:
        return self.attempt.amount

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        result["attempt"]["timestamp"] = self.attempt.timestamp.isoformat()
        result["attempt"]["amount"] = str(self.attempt.amount)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerEntry:
        """Create from dictionary produced by `to_dict`."""
        attempt_data = dict(data["attempt"])
        attempt_data["amount"] = Decimal(str(attempt_data["amount"]))
        attempt_data["max_gas_price_wei"] = int(attempt_data["max_gas_price_wei"])
        attempt_data["timestamp"] = _parse_timestamp(attempt_data["timestamp"])
        return cls(
            attempt=ExecutionAttempt(**attempt_data),
            outcome=data["outcome"],
            reason=data.get("reason"),
            transaction_ref=data.get("transaction_ref"),
            timestamp=_parse_timestamp(data["timestamp"]),
            entry_id=data.get("entry_id") or uuid.uuid4().hex,
        )


def validate_entry(entry: LedgerEntry) -> None:
    """Reject malformed entries. Business outcomes are never rejected."""
    if not entry.attempt.strategy_id:
        raise ValidationError("ledger entry is missing its strategy reference", field="strategy_id")
    if entry.outcome not in OUTCOMES:
        raise ValidationError(f"unknown ledger outcome: {entry.outcome!r}", field="outcome")


def executed_total(entries: Sequence[LedgerEntry]) -> Decimal:
    """Sum of amounts for entries that actually executed."""
    return sum((e.amount for e in entries if e.outcome == "approved-executed"), Decimal("0"))


@dataclass(frozen=True)
class ReconciliationReport:
    strategy_id: str
    ledger_executed_amount: Decimal
    store_executed_amount: Decimal
    ledger_execution_count: int
    store_execution_count: int

    @property
    def consistent(self) -> bool:
        return (
            self.ledger_executed_amount == self.store_executed_amount
            and self.ledger_execution_count == self.store_execution_count
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy_id": self.strategy_id,
            "ledger_executed_amount": str(self.ledger_executed_amount),
            "store_executed_amount": str(self.store_executed_amount),
            "ledger_execution_count": self.ledger_execution_count,
            "store_execution_count": self.store_execution_count,
            "consistent": self.consistent,
        }


def reconcile(*, store: StrategyStore, ledger: ExecutionLedger, strategy_id: str) -> ReconciliationReport:
    """Recompute spend from the ledger and compare with the store counters."""
    strategy = store.get(strategy_id)
    entries = ledger.list_by_strategy(strategy_id)
    executed = [e for e in entries if e.outcome == "approved-executed"]
    return ReconciliationReport(
        strategy_id=strategy_id,
        ledger_executed_amount=executed_total(entries),
        store_executed_amount=strategy.executed_amount,
        ledger_execution_count=len(executed),
        store_execution_count=strategy.execution_count,
    )
