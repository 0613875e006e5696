"""Execution guard for DCA strategies.

Implements the six checks a proposed execution must pass. Checks are pure:
they read the attempt and the strategy snapshot only, and time comes from the
attempt timestamp, so evaluating twice yields the same decision.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional, Protocol, Sequence

from dcaguard.networks import gwei_to_wei, wei_to_gwei
from dcaguard.types import ExecutionAttempt

from .rules import Strategy, cadence_period

GuardReason = Literal[
    "strategy-not-active",
    "token-pair-mismatch",
    "amount-exceeds-per-execution-limit",
    "gas-price-too-high",
    "cadence-not-elapsed",
    "budget-exhausted",
]

# Reasons that clear up on their own; the scheduler retries them next tick.
RETRYABLE_REASONS = frozenset(
    {
        "gas-price-too-high",
        "cadence-not-elapsed",
        "signing-timeout",
        "signing-failed",
        "signing-unavailable",
    }
)


def is_retryable(reason: Optional[str]) -> bool:
    """True if an outcome with this reason may succeed without reconfiguration."""
    return reason in RETRYABLE_REASONS


@dataclass(frozen=True)
class GuardDecision:
    approved: bool
    reason: Optional[GuardReason] = None
    message: str = "ok"

    @property
    def retryable(self) -> bool:
        return is_retryable(self.reason)


APPROVED = GuardDecision(approved=True)


class GuardCheck(Protocol):
    def check(self, *, attempt: ExecutionAttempt, strategy: Strategy) -> Optional[GuardDecision]:
        """Return a rejection, or None when the check passes."""


def _reject(reason: GuardReason, message: str) -> GuardDecision:
    return GuardDecision(approved=False, reason=reason, message=message)


# ========== Concrete Guard Check Implementations ==========


class StatusCheck:
    """Strategy must be active."""

    def check(self, *, attempt: ExecutionAttempt, strategy: Strategy) -> Optional[GuardDecision]:
        if strategy.status != "active":
            return _reject("strategy-not-active", f"Strategy {strategy.id} is {strategy.status}")
        return None


class TokenPairCheck:
    """Attempt must swap exactly the configured pair."""

    def check(self, *, attempt: ExecutionAttempt, strategy: Strategy) -> Optional[GuardDecision]:
        config = strategy.config
        if attempt.from_token != config.from_token or attempt.to_token != config.to_token:
            return _reject(
                "token-pair-mismatch",
                f"Token pair mismatch. Expected {config.from_token}->{config.to_token}, "
                f"got {attempt.from_token}->{attempt.to_token}",
            )
        return None


class AmountCheck:
    """Attempt may not exceed the per-execution amount."""

    def check(self, *, attempt: ExecutionAttempt, strategy: Strategy) -> Optional[GuardDecision]:
        if attempt.amount > strategy.config.amount:
            return _reject(
                "amount-exceeds-per-execution-limit",
                f"Amount {attempt.amount} exceeds strategy limit {strategy.config.amount}",
            )
        return None


class GasPriceCheck:
    """Attempt gas price (wei) may not exceed the configured ceiling (Gwei)."""

    def check(self, *, attempt: ExecutionAttempt, strategy: Strategy) -> Optional[GuardDecision]:
        ceiling_wei = gwei_to_wei(strategy.config.max_gas_price_gwei)
        if attempt.max_gas_price_wei > ceiling_wei:
            return _reject(
                "gas-price-too-high",
                f"Gas price too high. Current: {wei_to_gwei(attempt.max_gas_price_wei)} Gwei, "
                f"Max: {strategy.config.max_gas_price_gwei} Gwei",
            )
        return None


class CadenceCheck:
    """Enough time must have passed since the last execution."""

    def check(self, *, attempt: ExecutionAttempt, strategy: Strategy) -> Optional[GuardDecision]:
        if strategy.last_execution is None:
            return None

        elapsed = attempt.timestamp - strategy.last_execution
        period = cadence_period(strategy.config.cadence)
        if elapsed < period:
            hours = elapsed.total_seconds() / 3600
            return _reject(
                "cadence-not-elapsed",
                f"{strategy.config.cadence} cadence not elapsed. Last execution was {hours:.1f} hours ago",
            )
        return None


class BudgetCheck:
    """Executed amount plus this attempt must stay within the total budget."""

    def check(self, *, attempt: ExecutionAttempt, strategy: Strategy) -> Optional[GuardDecision]:
        if strategy.executed_amount + attempt.amount > strategy.config.total_budget:
            return _reject(
                "budget-exhausted",
                f"Budget exhausted. Executed: {strategy.executed_amount}, "
                f"Requested: {attempt.amount}, Budget: {strategy.config.total_budget}",
            )
        return None


DEFAULT_CHECKS: tuple[GuardCheck, ...] = (
    StatusCheck(),
    TokenPairCheck(),
    AmountCheck(),
    GasPriceCheck(),
    CadenceCheck(),
    BudgetCheck(),
)


def run_guard_checks(
    *,
    checks: Sequence[GuardCheck],
    attempt: ExecutionAttempt,
    strategy: Strategy,
) -> GuardDecision:
    for check in checks:
        rejection = check.check(attempt=attempt, strategy=strategy)
        if rejection is not None:
            return rejection
    return APPROVED


def evaluate(attempt: ExecutionAttempt, strategy: Strategy) -> GuardDecision:
    """Decide whether `attempt` may fire against `strategy`. First failure wins."""
    return run_guard_checks(checks=DEFAULT_CHECKS, attempt=attempt, strategy=strategy)
