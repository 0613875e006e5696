from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol, Sequence

from dcaguard.automation.ledger import LedgerEntry
from dcaguard.automation.rules import Strategy, StrategyConfig
from dcaguard.types import StrategyStatus


class StrategyStore(Protocol):
    def create(self, config: StrategyConfig, *, now: datetime | None = None) -> Strategy:
        """Validate the config and persist a new active strategy."""

    def get(self, strategy_id: str) -> Strategy:
        """Fetch a strategy. Raises StrategyNotFoundError when unknown."""

    def list(
        self,
        *,
        status: StrategyStatus | None = None,
        due_before: datetime | None = None,
    ) -> Sequence[Strategy]:
        """List strategies, optionally only those with the given status / due by a time."""

    def apply_execution_result(self, strategy_id: str, executed_amount: Decimal, timestamp: datetime) -> Strategy:
        """Atomically fold a confirmed execution into the counters."""

    def set_status(self, strategy_id: str, status: StrategyStatus) -> Strategy:
        """Pause or resume. No-op for completed strategies."""

    def attach_policy_ids(self, strategy_id: str, policy_ids: Sequence[str]) -> Strategy:
        """Record remote policy rule ids against a strategy."""

    def claim(self, strategy_id: str, *, owner: str, now: datetime, expires_at: datetime) -> bool:
        """Take the execution claim on a strategy.

        Succeeds when the strategy is unclaimed or the previous claim expired
        before `now`. Raises StrategyNotFoundError when unknown. Only the claim holder may run
        an attempt through guard, gateway, ledger and counters.
        """

    def release(self, strategy_id: str, *, owner: str) -> None:
        """Drop the claim if `owner` still holds it."""


class ExecutionLedger(Protocol):
    def append(self, entry: LedgerEntry) -> None:
        """Append an entry. Raises ValidationError only for malformed input."""

    def list_by_strategy(self, strategy_id: str, *, limit: Optional[int] = None) -> Sequence[LedgerEntry]:
        """Entries for one strategy, oldest first."""
