"""DCA automation engine.

This package defines strategy rules, the execution guard, the execution ledger
and the orchestration between scheduler, guard and signing gateway.

Default must remain simulation / dry-run.
"""

from .guard import (
    AmountCheck,
    BudgetCheck,
    CadenceCheck,
    GasPriceCheck,
    GuardCheck,
    GuardDecision,
    GuardReason,
    StatusCheck,
    TokenPairCheck,
    evaluate,
    is_retryable,
    run_guard_checks,
)
from .ledger import LedgerEntry, Outcome, ReconciliationReport, executed_total, reconcile
from .rules import (
    CADENCE_PERIODS,
    Strategy,
    StrategyConfig,
    apply_execution,
    cadence_period,
    new_strategy,
    validate_strategy_config,
)

__all__ = [
    # Rules
    "CADENCE_PERIODS",
    "Strategy",
    "StrategyConfig",
    "apply_execution",
    "cadence_period",
    "new_strategy",
    "validate_strategy_config",
    # Guard
    "GuardCheck",
    "GuardDecision",
    "GuardReason",
    "evaluate",
    "is_retryable",
    "run_guard_checks",
    "StatusCheck",
    "TokenPairCheck",
    "AmountCheck",
    "GasPriceCheck",
    "CadenceCheck",
    "BudgetCheck",
    # Ledger
    "LedgerEntry",
    "Outcome",
    "ReconciliationReport",
    "executed_total",
    "reconcile",
]
