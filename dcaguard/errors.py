"""Exception hierarchy for the DCA guard.

Guard rejections are not exceptions; they are `GuardDecision` values. The
errors below cover invalid input and broken invariants only.
"""

from __future__ import annotations


class DCAGuardError(Exception):
    """Base class for all domain errors."""


class ValidationError(DCAGuardError, ValueError):
    """Raised when user input or a ledger entry is malformed."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class StrategyNotFoundError(DCAGuardError, KeyError):
    """Raised when a strategy id is unknown to the store."""

    def __init__(self, strategy_id: str) -> None:
        super().__init__(strategy_id)
        self.strategy_id = strategy_id

    def __str__(self) -> str:
        return f"Strategy not found: {self.strategy_id}"


class BudgetInvariantError(DCAGuardError):
    """Raised when applying an execution would exceed the strategy budget."""


class PolicyRegistrationError(DCAGuardError):
    """Raised by a policy registrar when a rule could not be registered."""
