"""Strategy Orchestrator - DCA scheduling daemon.

This module implements the sweep loop that:
1. Loads active strategies whose next execution is due
2. Runs the execution guard for each attempt
3. Hands approved swaps to the signing gateway (bounded by a timeout)
4. Records every outcome in the ledger, then advances strategy counters

Attempts for one strategy are serialized by a per-strategy lock plus a
store-level claim, so that a sweep tick and a manual "execute now" can never
both spend the same budget, even when they run in different processes.
Default behavior is simulation (dry_run=True).
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional, Protocol

from dcaguard.automation.guard import GuardDecision, evaluate
from dcaguard.automation.ledger import LedgerEntry, Outcome
from dcaguard.automation.rules import Strategy, StrategyConfig
from dcaguard.errors import DCAGuardError
from dcaguard.execution.http_gateway import HttpSigningGateway
from dcaguard.execution.interfaces import SigningGateway, build_transaction_intent
from dcaguard.execution.simulated import SimulatedSigningGateway
from dcaguard.networks import gwei_to_wei
from dcaguard.persistence.interfaces import ExecutionLedger, StrategyStore
from dcaguard.policies.registrar import (
    HttpPolicyRegistrar,
    NullPolicyRegistrar,
    PolicyRegistrar,
    PolicyRegistration,
    register_strategy_policies,
)
from dcaguard.types import ExecutionAttempt, SigningResult

logger = logging.getLogger(__name__)

# Report reason when a signed swap could not be folded into the strategy counters.
COUNTER_UPDATE_FAILED = "counter-update-failed"


class GasPriceProvider(Protocol):
    """Protocol for the gas price a scheduled attempt is willing to pay."""

    async def get_gas_price_wei(self, network: str) -> int:
        """Return the current gas price for a network, in wei."""
        ...


@dataclass(frozen=True)
class ExecutionReport:
    """What happened to one execution attempt."""

    attempt: ExecutionAttempt
    decision: GuardDecision
    outcome: Outcome
    strategy: Strategy
    reason: Optional[str] = None
    transaction_ref: Optional[str] = None
    entry_id: Optional[str] = None

    @property
    def executed(self) -> bool:
        return self.outcome == "approved-executed"


@dataclass(frozen=True)
class StrategyCreation:
    strategy: Strategy
    registration: PolicyRegistration

    @property
    def warnings(self) -> list[str]:
        return list(self.registration.errors)


@dataclass
class OrchestratorConfig:
    """Configuration for the strategy orchestrator."""

    # Sweep interval in seconds
    poll_interval: int = 60

    # Bound on a single signing gateway call
    signing_timeout: float = 30.0

    # Bound on a single policy registration call
    registrar_timeout: float = 10.0

    # Simulation mode (default: True for safety)
    dry_run: bool = True

    # Stop after N sweeps (None = run forever)
    max_iterations: Optional[int] = None

    # How often a blocked attempt re-checks the strategy claim
    claim_poll_interval: float = 0.05

    # Claim lease beyond signing_timeout, so a crashed holder's claim expires
    claim_margin: float = 30.0


class StrategyOrchestrator:
    """Main DCA loop orchestrator.

    Coordinates between:
    - Strategy store (configuration and counters)
    - Execution guard (pure decision)
    - Signing gateway (simulated or remote)
    - Execution ledger (append-only outcomes)
    - Policy registrar (creation time only)
    """

    def __init__(
        self,
        *,
        config: OrchestratorConfig,
        store: StrategyStore,
        ledger: ExecutionLedger,
        gateway: Optional[SigningGateway] = None,
        registrar: Optional[PolicyRegistrar] = None,
        gas_price_provider: Optional[GasPriceProvider] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.store = store
        self.ledger = ledger
        self.gateway = gateway or SimulatedSigningGateway()
        self.registrar = registrar or NullPolicyRegistrar()
        self.gas_price_provider = gas_price_provider
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        # Identifies this process in strategy claims
        self.owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

        self._locks: dict[str, asyncio.Lock] = {}
        self._running = False
        self._iteration = 0

    def _lock_for(self, strategy_id: str) -> asyncio.Lock:
        lock = self._locks.get(strategy_id)
        if lock is None:
            lock = self._locks[strategy_id] = asyncio.Lock()
        return lock

    def _forget_lock(self, strategy: Strategy) -> None:
        # Completed strategies never execute again.
        lock = self._locks.get(strategy.id)
        if strategy.status == "completed" and lock is not None and not lock.locked():
            del self._locks[strategy.id]

    async def _claim(self, strategy_id: str) -> None:
        """Block until this orchestrator holds the strategy's store-level claim.

        The in-process lock only serializes attempts within one process; the
        claim also serializes the API process against a separate scheduler.
        """
        lease = timedelta(seconds=self.config.signing_timeout + self.config.claim_margin)
        while True:
            now = datetime.now(timezone.utc)
            claimed = await asyncio.to_thread(
                self.store.claim,
                strategy_id,
                owner=self.owner,
                now=now,
                expires_at=now + lease,
            )
            if claimed:
                return
            logger.debug(f"Strategy {strategy_id} is claimed elsewhere, waiting")
            await asyncio.sleep(self.config.claim_poll_interval)

    # ---------------------------------------------------------------------
    # Strategy lifecycle
    # ---------------------------------------------------------------------

    async def create_strategy(self, config: StrategyConfig, *, now: Optional[datetime] = None) -> StrategyCreation:
        """Create a strategy locally, then register its remote policies best-effort.

        Raises ValidationError before anything is persisted. Registration
        failures only produce warnings; the strategy stays active.
        """
        strategy = await asyncio.to_thread(self.store.create, config, now=now or self.clock())
        logger.info(
            f"Created strategy {strategy.id}: {config.amount} {config.from_token} -> {config.to_token} "
            f"{config.cadence} on {config.network}"
        )

        registration = await register_strategy_policies(
            registrar=self.registrar,
            strategy=strategy,
            timeout=self.config.registrar_timeout,
        )
        if registration.policy_ids:
            strategy = await asyncio.to_thread(self.store.attach_policy_ids, strategy.id, registration.policy_ids)

        return StrategyCreation(strategy=strategy, registration=registration)

    async def pause(self, strategy_id: str) -> Strategy:
        strategy = await asyncio.to_thread(self.store.set_status, strategy_id, "paused")
        logger.info(f"Strategy {strategy_id} is {strategy.status}")
        return strategy

    async def resume(self, strategy_id: str) -> Strategy:
        strategy = await asyncio.to_thread(self.store.set_status, strategy_id, "active")
        logger.info(f"Strategy {strategy_id} is {strategy.status}")
        return strategy

    # ---------------------------------------------------------------------
    # Execution pipeline
    # ---------------------------------------------------------------------

    async def _gas_price_for(self, strategy: Strategy) -> int:
        if self.gas_price_provider is None:
            return gwei_to_wei(strategy.config.max_gas_price_gwei)
        return await self.gas_price_provider.get_gas_price_wei(strategy.config.network)

    async def _sign(self, strategy: Strategy, attempt: ExecutionAttempt) -> SigningResult:
        intent = build_transaction_intent(attempt=attempt, strategy=strategy)
        if self.config.dry_run:
            logger.info(f"DRY RUN: swap {attempt.amount} {attempt.from_token} -> {attempt.to_token}")
        try:
            return await asyncio.wait_for(
                self.gateway.sign_and_execute(intent),
                timeout=self.config.signing_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Signing gateway timed out after {self.config.signing_timeout}s for {strategy.id}")
            return SigningResult(success=False, reason="signing-timeout")
        except Exception as e:
            logger.exception(f"Signing gateway error for {strategy.id}: {e}")
            return SigningResult(success=False, reason="signing-unavailable")

    async def execute_attempt(self, attempt: ExecutionAttempt) -> ExecutionReport:
        """Run guard -> gateway -> ledger -> counters for one attempt, serialized per strategy.

        Serialization is two-level: a per-strategy asyncio lock within this
        process and a store claim across processes sharing the database.
        """
        async with self._lock_for(attempt.strategy_id):
            await self._claim(attempt.strategy_id)
            try:
                report = await self._execute_claimed(attempt)
            finally:
                await asyncio.to_thread(self.store.release, attempt.strategy_id, owner=self.owner)
        self._forget_lock(report.strategy)
        return report

    async def _execute_claimed(self, attempt: ExecutionAttempt) -> ExecutionReport:
        strategy = await asyncio.to_thread(self.store.get, attempt.strategy_id)
        decision = evaluate(attempt, strategy)

        if not decision.approved:
            logger.warning(f"Attempt rejected for {strategy.id}: {decision.reason} ({decision.message})")
            entry = LedgerEntry(attempt=attempt, outcome="rejected", reason=decision.reason)
            await asyncio.to_thread(self.ledger.append, entry)
            return ExecutionReport(
                attempt=attempt,
                decision=decision,
                outcome="rejected",
                strategy=strategy,
                reason=decision.reason,
                entry_id=entry.entry_id,
            )

        result = await self._sign(strategy, attempt)

        if not result.success:
            reason = result.reason or "signing-failed"
            logger.warning(f"Approved attempt for {strategy.id} failed downstream: {reason}")
            entry = LedgerEntry(attempt=attempt, outcome="approved-failed-downstream", reason=reason)
            await asyncio.to_thread(self.ledger.append, entry)
            return ExecutionReport(
                attempt=attempt,
                decision=decision,
                outcome="approved-failed-downstream",
                strategy=strategy,
                reason=reason,
                entry_id=entry.entry_id,
            )

        entry = LedgerEntry(
            attempt=attempt,
            outcome="approved-executed",
            transaction_ref=result.transaction_ref,
        )
        await asyncio.to_thread(self.ledger.append, entry)
        try:
            strategy = await asyncio.to_thread(
                self.store.apply_execution_result,
                strategy.id,
                attempt.amount,
                attempt.timestamp,
            )
        except DCAGuardError as e:
            # The swap was signed, so its ledger entry stands; reconciliation reports the drift.
            logger.exception(
                f"Swap {result.transaction_ref} for {strategy.id} executed but counters were not updated: {e}"
            )
            strategy = await asyncio.to_thread(self.store.get, strategy.id)
            return ExecutionReport(
                attempt=attempt,
                decision=decision,
                outcome="approved-executed",
                strategy=strategy,
                reason=COUNTER_UPDATE_FAILED,
                transaction_ref=result.transaction_ref,
                entry_id=entry.entry_id,
            )
        logger.info(
            f"Executed {attempt.amount} {attempt.from_token} -> {attempt.to_token} for {strategy.id} "
            f"({strategy.executed_amount}/{strategy.config.total_budget}, status={strategy.status})"
        )
        return ExecutionReport(
            attempt=attempt,
            decision=decision,
            outcome="approved-executed",
            strategy=strategy,
            transaction_ref=result.transaction_ref,
            entry_id=entry.entry_id,
        )

    async def execute_now(
        self,
        strategy_id: str,
        *,
        amount: Optional[Decimal] = None,
        from_token: Optional[str] = None,
        to_token: Optional[str] = None,
        max_gas_price_wei: Optional[int] = None,
        wallet_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ExecutionReport:
        """Manual trigger. Skips the schedule-due check, never the guard.

        Unspecified attempt fields default to the strategy's own configuration.
        """
        strategy = await asyncio.to_thread(self.store.get, strategy_id)
        attempt = ExecutionAttempt(
            strategy_id=strategy_id,
            amount=amount if amount is not None else strategy.config.amount,
            from_token=from_token or strategy.config.from_token,
            to_token=to_token or strategy.config.to_token,
            max_gas_price_wei=(
                max_gas_price_wei if max_gas_price_wei is not None else await self._gas_price_for(strategy)
            ),
            wallet_address=wallet_address or strategy.config.wallet_address,
            timestamp=now or self.clock(),
            trigger="manual",
        )
        return await self.execute_attempt(attempt)

    async def _build_scheduled_attempt(self, strategy: Strategy, now: datetime) -> ExecutionAttempt:
        # The final execution spends whatever is left so the strategy can complete.
        amount = min(strategy.config.amount, strategy.remaining_budget)
        return ExecutionAttempt(
            strategy_id=strategy.id,
            amount=amount,
            from_token=strategy.config.from_token,
            to_token=strategy.config.to_token,
            max_gas_price_wei=await self._gas_price_for(strategy),
            wallet_address=strategy.config.wallet_address,
            timestamp=now,
            trigger="scheduled",
        )

    async def _process_strategy(self, strategy: Strategy, now: datetime) -> Optional[ExecutionReport]:
        """Process a single due strategy."""
        try:
            if strategy.remaining_budget <= 0:
                logger.warning(f"Strategy {strategy.id} is active with no remaining budget")
                return None
            attempt = await self._build_scheduled_attempt(strategy, now)
            return await self.execute_attempt(attempt)
        except Exception as e:
            logger.exception(f"Error processing strategy {strategy.id}: {e}")
            return None

    async def sweep(self, now: Optional[datetime] = None) -> list[ExecutionReport]:
        """Attempt every active strategy whose next execution is due.

        Rejected or failed attempts leave `next_execution` untouched, so they
        are retried on the next sweep.
        """
        now = now or self.clock()
        try:
            due = await asyncio.to_thread(self.store.list, status="active", due_before=now)
        except Exception as e:
            # Skip this tick; the daemon keeps running and retries on the next one.
            logger.exception(f"Failed to load due strategies: {e}")
            return []
        if not due:
            return []

        logger.info(f"Sweep at {now.isoformat()}: {len(due)} strategies due")
        results = await asyncio.gather(*(self._process_strategy(s, now) for s in due))
        return [r for r in results if r is not None]

    async def run_once(self) -> list[ExecutionReport]:
        """Run one iteration of the sweep loop."""
        self._iteration += 1
        logger.debug(f"=== Orchestrator iteration {self._iteration} ===")
        return await self.sweep()

    async def run(self) -> None:
        """Run the sweep loop."""
        logger.info("Starting DCA Strategy Orchestrator")
        logger.info(f"Config: poll_interval={self.config.poll_interval}s, signing_timeout={self.config.signing_timeout}s")
        logger.info(f"Mode: {'SIMULATION' if self.config.dry_run else 'LIVE SIGNING'}")

        self._running = True

        try:
            while self._running:
                await self.run_once()

                if self.config.max_iterations and self._iteration >= self.config.max_iterations:
                    logger.info(f"Reached max iterations ({self.config.max_iterations})")
                    break

                logger.debug(f"Sleeping {self.config.poll_interval}s until next sweep")
                await asyncio.sleep(self.config.poll_interval)

        except asyncio.CancelledError:
            logger.info("Orchestrator cancelled")
        finally:
            self._running = False
            logger.info("Orchestrator stopped")

    def stop(self) -> None:
        """Signal the orchestrator to stop."""
        self._running = False


# ========== Wiring ==========


def build_stores_from_env() -> tuple[StrategyStore, ExecutionLedger]:
    """SQL stores when DATABASE_URL is set, in-memory stores otherwise."""
    from dcaguard.storage.memory_stores import InMemoryExecutionLedger, InMemoryStrategyStore
    from dcaguard.storage.sql import SqlConfig, create_sql_stores

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        logger.warning("DATABASE_URL not set, strategies will not survive a restart")
        return InMemoryStrategyStore(), InMemoryExecutionLedger()
    return create_sql_stores(SqlConfig(database_url=database_url))


def build_orchestrator_from_env(config: Optional[OrchestratorConfig] = None) -> StrategyOrchestrator:
    config = config or OrchestratorConfig()
    store, ledger = build_stores_from_env()

    gateway: SigningGateway
    if config.dry_run:
        gateway = SimulatedSigningGateway()
    else:
        gateway = HttpSigningGateway(timeout=config.signing_timeout)

    registrar: PolicyRegistrar = NullPolicyRegistrar()
    if os.environ.get("POLICY_REGISTRAR_URL"):
        registrar = HttpPolicyRegistrar(timeout=config.registrar_timeout)

    return StrategyOrchestrator(
        config=config,
        store=store,
        ledger=ledger,
        gateway=gateway,
        registrar=registrar,
    )


# ========== CLI Entry Point ==========


async def main():
    """Run the orchestrator from command line."""
    import argparse

    parser = argparse.ArgumentParser(description="Run the DCA strategy scheduler")
    parser.add_argument("--interval", type=int, default=60, help="Sweep interval in seconds")
    parser.add_argument("--signing-timeout", type=float, default=30.0, help="Signing gateway timeout in seconds")
    parser.add_argument("--live", action="store_true", help="Sign through SIGNING_GATEWAY_URL (default: simulate)")
    parser.add_argument("--iterations", type=int, help="Max sweeps (default: infinite)")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # A standalone scheduler only sees strategies created by the API through a shared database.
    if not os.environ.get("DATABASE_URL"):
        raise SystemExit("DATABASE_URL is not set; run the scheduler inside the API with DCA_API_SCHEDULER=1 instead")

    config = OrchestratorConfig(
        poll_interval=args.interval,
        signing_timeout=args.signing_timeout,
        dry_run=not args.live,
        max_iterations=args.iterations,
    )
    orchestrator = build_orchestrator_from_env(config)
    await orchestrator.run()


if __name__ == "__main__":
    asyncio.run(main())
