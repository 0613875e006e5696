from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Sequence

from dcaguard.automation.ledger import LedgerEntry, validate_entry
from dcaguard.automation.rules import (
    Strategy,
    StrategyConfig,
    apply_execution,
    new_strategy,
    with_status,
)
from dcaguard.errors import StrategyNotFoundError
from dcaguard.persistence.interfaces import ExecutionLedger, StrategyStore
from dcaguard.types import StrategyStatus


class InMemoryStrategyStore(StrategyStore):
    """Process-local strategy store. Strategies are immutable snapshots swapped under a lock."""

    def __init__(self) -> None:
        self._strategies: dict[str, Strategy] = {}
        self._claims: dict[str, tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def create(self, config: StrategyConfig, *, now: datetime | None = None) -> Strategy:
        strategy = new_strategy(config, now=now or datetime.now(timezone.utc))
        with self._lock:
            self._strategies[strategy.id] = strategy
        return strategy

    def get(self, strategy_id: str) -> Strategy:
        with self._lock:
            return self._get_locked(strategy_id)

    def _get_locked(self, strategy_id: str) -> Strategy:
        try:
            return self._strategies[strategy_id]
        except KeyError:
            raise StrategyNotFoundError(strategy_id) from None

    def list(
        self,
        *,
        status: StrategyStatus | None = None,
        due_before: datetime | None = None,
    ) -> Sequence[Strategy]:
        with self._lock:
            strategies = list(self._strategies.values())
        if status is not None:
            strategies = [s for s in strategies if s.status == status]
        if due_before is not None:
            strategies = [s for s in strategies if s.next_execution <= due_before]
        return sorted(strategies, key=lambda s: (s.next_execution, s.id))

    def apply_execution_result(self, strategy_id: str, executed_amount: Decimal, timestamp: datetime) -> Strategy:
        with self._lock:
            updated = apply_execution(
                self._get_locked(strategy_id),
                executed_amount=executed_amount,
                timestamp=timestamp,
            )
            self._strategies[strategy_id] = updated
        return updated

    def set_status(self, strategy_id: str, status: StrategyStatus) -> Strategy:
        with self._lock:
            updated = with_status(self._get_locked(strategy_id), status)
            self._strategies[strategy_id] = updated
        return updated

    def attach_policy_ids(self, strategy_id: str, policy_ids: Sequence[str]) -> Strategy:
        with self._lock:
            current = self._get_locked(strategy_id)
            updated = replace(current, policy_ids=current.policy_ids + tuple(policy_ids))
            self._strategies[strategy_id] = updated
        return updated

    def claim(self, strategy_id: str, *, owner: str, now: datetime, expires_at: datetime) -> bool:
        with self._lock:
            self._get_locked(strategy_id)
            holder = self._claims.get(strategy_id)
            if holder is not None and holder[1] >= now:
                return False
            self._claims[strategy_id] = (owner, expires_at)
            return True

    def release(self, strategy_id: str, *, owner: str) -> None:
        with self._lock:
            holder = self._claims.get(strategy_id)
            if holder is not None and holder[0] == owner:
                del self._claims[strategy_id]


class InMemoryExecutionLedger(ExecutionLedger):
    """Append-only list of ledger entries."""

    def __init__(self) -> None:
        self._entries: list[LedgerEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: LedgerEntry) -> None:
        validate_entry(entry)
        with self._lock:
            self._entries.append(entry)

    def list_by_strategy(self, strategy_id: str, *, limit: Optional[int] = None) -> Sequence[LedgerEntry]:
        with self._lock:
            entries = [e for e in self._entries if e.strategy_id == strategy_id]
        if limit is not None:
            entries = entries[-limit:]
        return entries

    def clear(self) -> None:
        """Clear all entries (for testing)."""
        with self._lock:
            self._entries.clear()
