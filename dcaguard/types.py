from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Literal, Mapping, Optional

Cadence = Literal["hourly", "daily", "weekly"]
StrategyStatus = Literal["active", "paused", "completed"]
AttemptTrigger = Literal["scheduled", "manual"]


@dataclass(frozen=True)
class ExecutionAttempt:
    """One scheduled or manual trigger of a strategy.

    `max_gas_price_wei` is expressed in the smallest denomination; the
    strategy ceiling is configured in Gwei and normalized by the guard.
    Timestamps are expected to be timezone-aware (UTC).
    """

    strategy_id: str
    amount: Decimal
    from_token: str
    to_token: str
    max_gas_price_wei: int
    wallet_address: str
    timestamp: datetime
    trigger: AttemptTrigger = "scheduled"


@dataclass(frozen=True)
class TransactionIntent:
    """Approved swap handed to the signing gateway."""

    strategy_id: str
    wallet_address: str
    network: str
    from_token: str
    to_token: str
    amount: Decimal
    max_gas_price_wei: int
    slippage_tolerance: Decimal
    router_address: str
    value_wei: int = 0
    metadata: Optional[Mapping[str, str]] = None


@dataclass(frozen=True)
class SigningResult:
    success: bool
    transaction_ref: Optional[str] = None
    reason: Optional[str] = None
    raw: Optional[Mapping[str, object]] = None
