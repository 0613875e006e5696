"""Strategy configuration and lifecycle rules.

Defines the immutable strategy configuration, the mutable execution counters,
cadence periods, creation-time validation and the counter update applied after
a confirmed execution.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from dcaguard.errors import BudgetInvariantError, ValidationError
from dcaguard.networks import is_supported_network
from dcaguard.types import Cadence, StrategyStatus

CADENCE_PERIODS: dict[str, timedelta] = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(hours=24),
    "weekly": timedelta(days=7),
}


def cadence_period(cadence: str) -> timedelta:
    """Minimum interval between two executions for a cadence."""
    try:
        return CADENCE_PERIODS[cadence]
    except KeyError:
        raise ValidationError(f"Unknown cadence: {cadence}", field="cadence") from None


def parse_decimal(value: Any, *, field: str) -> Decimal:
    """Parse user input into a finite Decimal."""
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a decimal number, got {value!r}", field=field) from None
    if not parsed.is_finite():
        raise ValidationError(f"{field} must be a decimal number, got {value!r}", field=field)
    return parsed


def parse_positive_decimal(value: Any, *, field: str) -> Decimal:
    """Parse user input into a strictly positive Decimal."""
    parsed = parse_decimal(value, field=field)
    if parsed <= 0:
        raise ValidationError(f"{field} must be positive, got {value!r}", field=field)
    return parsed


@dataclass(frozen=True)
class StrategyConfig:
    """User-declared recurring trade parameters (immutable once created)."""

    name: str
    network: str
    from_token: str
    to_token: str
    amount: Decimal  # per-execution amount, in from_token units
    cadence: Cadence
    max_gas_price_gwei: Decimal
    slippage_tolerance: Decimal  # percent
    total_budget: Decimal  # same unit as amount
    wallet_address: str = ""

    @classmethod
    def from_input(cls, data: dict[str, Any]) -> StrategyConfig:
        """Build a config from raw creation input, parsing numeric strings."""
        config = cls(
            name=str(data.get("name") or "").strip(),
            network=str(data.get("network") or "").strip(),
            from_token=str(data.get("from_token") or "").strip(),
            to_token=str(data.get("to_token") or "").strip(),
            amount=parse_positive_decimal(data.get("amount"), field="amount"),
            cadence=data.get("cadence"),  # type: ignore[arg-type]
            max_gas_price_gwei=parse_positive_decimal(data.get("max_gas_price_gwei"), field="max_gas_price_gwei"),
            slippage_tolerance=parse_decimal(data.get("slippage_tolerance"), field="slippage_tolerance"),
            total_budget=parse_positive_decimal(data.get("total_budget"), field="total_budget"),
            wallet_address=str(data.get("wallet_address") or "").strip(),
        )
        validate_strategy_config(config)
        return config


def validate_strategy_config(config: StrategyConfig) -> None:
    """Raise ValidationError if the config cannot be turned into a strategy."""
    if config.amount <= 0:
        raise ValidationError("amount must be positive", field="amount")
    if config.total_budget < config.amount:
        raise ValidationError(
            f"total_budget {config.total_budget} is smaller than amount {config.amount}",
            field="total_budget",
        )
    if config.cadence not in CADENCE_PERIODS:
        raise ValidationError(f"cadence must be one of {sorted(CADENCE_PERIODS)}", field="cadence")
    if not config.from_token or not config.to_token:
        raise ValidationError("token pair must not be empty", field="from_token")
    if config.from_token == config.to_token:
        raise ValidationError("from_token and to_token must differ", field="to_token")
    if config.max_gas_price_gwei <= 0:
        raise ValidationError("max_gas_price_gwei must be positive", field="max_gas_price_gwei")
    if config.slippage_tolerance < 0 or config.slippage_tolerance > 100:
        raise ValidationError("slippage_tolerance must be between 0 and 100", field="slippage_tolerance")
    if not is_supported_network(config.network):
        raise ValidationError(f"Unsupported network: {config.network}", field="network")


@dataclass(frozen=True)
class Strategy:
    """A strategy with its immutable config and mutable execution counters."""

    id: str
    config: StrategyConfig
    created_at: datetime
    next_execution: datetime
    status: StrategyStatus = "active"
    executed_amount: Decimal = Decimal("0")
    execution_count: int = 0
    last_execution: Optional[datetime] = None
    policy_ids: tuple[str, ...] = field(default_factory=tuple)

    @property
    def remaining_budget(self) -> Decimal:
        return self.config.total_budget - self.executed_amount

    def is_due(self, now: datetime) -> bool:
        return self.status == "active" and self.next_execution <= now


def new_strategy(config: StrategyConfig, *, now: datetime, strategy_id: Optional[str] = None) -> Strategy:
    """Validate a config and build a fresh active strategy."""
    validate_strategy_config(config)
    return Strategy(
        id=strategy_id or f"dca-{uuid.uuid4().hex}",
        config=config,
        created_at=now,
        next_execution=now + cadence_period(config.cadence),
    )


def apply_execution(strategy: Strategy, *, executed_amount: Decimal, timestamp: datetime) -> Strategy:
    """Return the strategy with a confirmed execution folded into its counters.

    The strategy completes when the budget is fully spent, or when a partial
    top-up (smaller than the per-execution amount) leaves less than one full
    amount in the budget.
    """
    if executed_amount <= 0:
        raise ValidationError("executed_amount must be positive", field="executed_amount")

    total = strategy.executed_amount + executed_amount
    if total > strategy.config.total_budget:
        raise BudgetInvariantError(
            f"Strategy {strategy.id}: {total} would exceed budget {strategy.config.total_budget}"
        )

    remaining = strategy.config.total_budget - total
    status = strategy.status
    if remaining == 0:
        status = "completed"
    elif executed_amount < strategy.config.amount and remaining < strategy.config.amount:
        status = "completed"

    return replace(
        strategy,
        executed_amount=total,
        execution_count=strategy.execution_count + 1,
        last_execution=timestamp,
        next_execution=timestamp + cadence_period(strategy.config.cadence),
        status=status,
    )


def with_status(strategy: Strategy, status: StrategyStatus) -> Strategy:
    """Pause or resume; completed strategies cannot be reactivated."""
    if status not in ("active", "paused"):
        raise ValidationError(f"status must be 'active' or 'paused', got {status!r}", field="status")
    if strategy.status == "completed":
        return strategy
    return replace(strategy, status=status)
