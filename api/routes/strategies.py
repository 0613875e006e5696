"""API routes for DCA strategies."""

from __future__ import annotations

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from dcaguard.automation.guard import is_retryable
from dcaguard.automation.ledger import LedgerEntry, reconcile
from dcaguard.automation.orchestrator import (
    ExecutionReport,
    StrategyOrchestrator,
    build_orchestrator_from_env,
)
from dcaguard.automation.rules import Strategy, StrategyConfig
from dcaguard.errors import StrategyNotFoundError, ValidationError

router = APIRouter(prefix="/strategies", tags=["strategies"])

# Global orchestrator (initialized on first use)
_orchestrator: StrategyOrchestrator | None = None


def get_orchestrator() -> StrategyOrchestrator:
    """Get or initialize the orchestrator singleton."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator_from_env()
    return _orchestrator


def set_orchestrator(orchestrator: StrategyOrchestrator | None) -> None:
    """Replace the orchestrator (tests)."""
    global _orchestrator
    _orchestrator = orchestrator


class CreateStrategyRequest(BaseModel):
    """Strategy creation input. Numeric fields accept decimal strings."""

    name: str = Field(..., min_length=1)
    network: str
    from_token: str = Field(..., min_length=1)
    to_token: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    cadence: Literal["hourly", "daily", "weekly"]
    max_gas_price_gwei: Decimal = Field(..., gt=0)
    slippage_tolerance: Decimal = Field(..., ge=0, le=100)
    total_budget: Decimal = Field(..., gt=0)
    wallet_address: str = ""


class ExecuteRequest(BaseModel):
    """Manual trigger. Omitted fields default to the strategy configuration."""

    amount: Optional[Decimal] = Field(None, gt=0)
    from_token: Optional[str] = None
    to_token: Optional[str] = None
    max_gas_price_wei: Optional[int] = Field(None, ge=0)
    wallet_address: Optional[str] = None


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def _strategy_to_response(strategy: Strategy) -> dict[str, Any]:
    config = strategy.config
    return {
        "id": strategy.id,
        "name": config.name,
        "network": config.network,
        "wallet_address": config.wallet_address,
        "status": strategy.status,
        "config": {
            "from_token": config.from_token,
            "to_token": config.to_token,
            "amount": str(config.amount),
            "cadence": config.cadence,
            "max_gas_price_gwei": str(config.max_gas_price_gwei),
            "slippage_tolerance": str(config.slippage_tolerance),
            "total_budget": str(config.total_budget),
        },
        "executed_amount": str(strategy.executed_amount),
        "remaining_budget": str(strategy.remaining_budget),
        "execution_count": strategy.execution_count,
        "last_execution": _iso(strategy.last_execution),
        "next_execution": _iso(strategy.next_execution),
        "created_at": _iso(strategy.created_at),
        "policy_ids": list(strategy.policy_ids),
    }


def _report_to_response(report: ExecutionReport) -> dict[str, Any]:
    return {
        "outcome": report.outcome,
        "approved": report.decision.approved,
        "reason": report.reason,
        "message": report.decision.message,
        "retryable": is_retryable(report.reason),
        "transaction_ref": report.transaction_ref,
        "entry_id": report.entry_id,
        "strategy": _strategy_to_response(report.strategy),
    }


def _entry_to_response(entry: LedgerEntry) -> dict[str, Any]:
    return entry.to_dict()


def _not_found(exc: StrategyNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail={"error": "not_found", "message": str(exc)})


@router.post("", status_code=201)
async def create_strategy(request: CreateStrategyRequest) -> dict[str, Any]:
    """Create a strategy and register its remote policies (best-effort)."""
    orchestrator = get_orchestrator()
    try:
        config = StrategyConfig.from_input(request.model_dump())
        creation = await orchestrator.create_strategy(config)
    except ValidationError as e:
        raise HTTPException(
            status_code=400,
            detail={"error": "validation_error", "field": e.field, "message": str(e)},
        ) from e

    return {
        "success": True,
        "strategy": _strategy_to_response(creation.strategy),
        "policy_ids": list(creation.registration.policy_ids),
        "warnings": creation.warnings,
    }


@router.get("")
async def list_strategies(
    status: Optional[Literal["active", "paused", "completed"]] = Query(None, description="Filter by status"),
) -> dict[str, Any]:
    orchestrator = get_orchestrator()
    strategies = await asyncio.to_thread(orchestrator.store.list, status=status)
    return {"strategies": [_strategy_to_response(s) for s in strategies], "count": len(strategies)}


@router.get("/{strategy_id}")
async def get_strategy(strategy_id: str) -> dict[str, Any]:
    orchestrator = get_orchestrator()
    try:
        strategy = await asyncio.to_thread(orchestrator.store.get, strategy_id)
    except StrategyNotFoundError as e:
        raise _not_found(e) from e
    return _strategy_to_response(strategy)


@router.post("/{strategy_id}/pause")
async def pause_strategy(strategy_id: str) -> dict[str, Any]:
    try:
        strategy = await get_orchestrator().pause(strategy_id)
    except StrategyNotFoundError as e:
        raise _not_found(e) from e
    return _strategy_to_response(strategy)


@router.post("/{strategy_id}/resume")
async def resume_strategy(strategy_id: str) -> dict[str, Any]:
    """Resume a paused strategy. Completed strategies stay completed."""
    try:
        strategy = await get_orchestrator().resume(strategy_id)
    except StrategyNotFoundError as e:
        raise _not_found(e) from e
    return _strategy_to_response(strategy)


@router.post("/{strategy_id}/execute")
async def execute_strategy(strategy_id: str, request: Optional[ExecuteRequest] = None) -> dict[str, Any]:
    """Execute now. Bypasses the schedule, not the guard.

    Guard rejections and downstream failures are normal outcomes (HTTP 200)
    carrying an enumerated reason.
    """
    request = request or ExecuteRequest()
    try:
        report = await get_orchestrator().execute_now(
            strategy_id,
            amount=request.amount,
            from_token=request.from_token,
            to_token=request.to_token,
            max_gas_price_wei=request.max_gas_price_wei,
            wallet_address=request.wallet_address,
        )
    except StrategyNotFoundError as e:
        raise _not_found(e) from e
    return _report_to_response(report)


@router.get("/{strategy_id}/ledger")
async def get_strategy_ledger(
    strategy_id: str,
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Most recent N entries"),
) -> dict[str, Any]:
    orchestrator = get_orchestrator()
    try:
        await asyncio.to_thread(orchestrator.store.get, strategy_id)
    except StrategyNotFoundError as e:
        raise _not_found(e) from e
    entries = await asyncio.to_thread(orchestrator.ledger.list_by_strategy, strategy_id, limit=limit)
    return {"strategy_id": strategy_id, "entries": [_entry_to_response(e) for e in entries], "count": len(entries)}


@router.get("/{strategy_id}/reconcile")
async def reconcile_strategy(strategy_id: str) -> dict[str, Any]:
    """Recompute spend from the ledger and compare with the stored counters."""
    orchestrator = get_orchestrator()
    try:
        report = await asyncio.to_thread(
            reconcile,
            store=orchestrator.store,
            ledger=orchestrator.ledger,
            strategy_id=strategy_id,
        )
    except StrategyNotFoundError as e:
        raise _not_found(e) from e
    return report.to_dict()
