"""Tests for the strategy orchestrator: scheduling, manual triggers and failures."""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import httpx
import pytest

from dcaguard.automation.ledger import reconcile
from dcaguard.automation.orchestrator import (
    COUNTER_UPDATE_FAILED,
    OrchestratorConfig,
    StrategyOrchestrator,
    main,
)
from dcaguard.errors import BudgetInvariantError, PolicyRegistrationError, StrategyNotFoundError, ValidationError
from dcaguard.execution.simulated import SimulatedSigningGateway
from dcaguard.networks import UNISWAP_V3_ROUTER
from dcaguard.policies.registrar import HttpPolicyRegistrar
from dcaguard.storage.memory_stores import InMemoryStrategyStore

GWEI = 1_000_000_000


class BrokenGateway:
    async def sign_and_execute(self, intent):
        raise RuntimeError("connection reset")


class FixedGasPrice:
    def __init__(self, gwei: int) -> None:
        self.gwei = gwei

    async def get_gas_price_wei(self, network: str) -> int:
        return self.gwei * GWEI


class RecordingRegistrar:
    def __init__(self) -> None:
        self.rules = []

    async def register(self, rule) -> str:
        self.rules.append(rule)
        return f"policy-{len(self.rules)}"


class SlowRegistrar:
    async def register(self, rule) -> str:
        await asyncio.sleep(5)
        return "never"


class RejectingRegistrar:
    async def register(self, rule) -> str:
        raise PolicyRegistrationError("HTTP 503")


class CrashingRegistrar:
    async def register(self, rule) -> str:
        raise RuntimeError("unexpected payload")


def _orchestrator(store, ledger, base_time, **kwargs) -> StrategyOrchestrator:
    config_kwargs = {
        "poll_interval": 0,
        "signing_timeout": kwargs.pop("signing_timeout", 1.0),
        "registrar_timeout": kwargs.pop("registrar_timeout", 0.05),
        "max_iterations": kwargs.pop("max_iterations", None),
    }
    clock = kwargs.pop("clock", lambda: base_time)
    return StrategyOrchestrator(
        config=OrchestratorConfig(**config_kwargs),
        store=store,
        ledger=ledger,
        clock=clock,
        **kwargs,
    )


class TestManualExecution:
    """Budget walkthrough: 100 per run, 250 total, daily."""

    @pytest.mark.asyncio
    async def test_budget_walkthrough(self, orchestrator, make_config, base_time) -> None:
        creation = await orchestrator.create_strategy(make_config(), now=base_time)
        strategy_id = creation.strategy.id
        t1 = base_time + timedelta(hours=1)

        first = await orchestrator.execute_now(strategy_id, now=t1)
        assert first.outcome == "approved-executed"
        assert first.transaction_ref.startswith("0x")
        assert first.strategy.executed_amount == Decimal("100")
        assert first.strategy.next_execution == t1 + timedelta(hours=24)

        too_soon = await orchestrator.execute_now(strategy_id, now=t1 + timedelta(hours=1))
        assert too_soon.outcome == "rejected"
        assert too_soon.reason == "cadence-not-elapsed"
        assert too_soon.strategy.executed_amount == Decimal("100")

        second = await orchestrator.execute_now(strategy_id, now=t1 + timedelta(hours=24))
        assert second.executed
        assert second.strategy.executed_amount == Decimal("200")
        assert second.strategy.status == "active"

        over_budget = await orchestrator.execute_now(strategy_id, now=t1 + timedelta(hours=48))
        assert over_budget.reason == "budget-exhausted"
        assert over_budget.decision.retryable is False
        assert over_budget.strategy.status == "active"

        top_up = await orchestrator.execute_now(strategy_id, amount=Decimal("50"), now=t1 + timedelta(hours=48))
        assert top_up.executed
        assert top_up.strategy.executed_amount == Decimal("250")
        assert top_up.strategy.status == "completed"

        after = await orchestrator.execute_now(strategy_id, amount=Decimal("1"), now=t1 + timedelta(days=30))
        assert after.reason == "strategy-not-active"

        entries = orchestrator.ledger.list_by_strategy(strategy_id)
        assert [e.outcome for e in entries] == [
            "approved-executed",
            "rejected",
            "approved-executed",
            "rejected",
            "approved-executed",
            "rejected",
        ]
        assert all(e.attempt.trigger == "manual" for e in entries)
        report = reconcile(store=orchestrator.store, ledger=orchestrator.ledger, strategy_id=strategy_id)
        assert report.consistent

    @pytest.mark.asyncio
    async def test_manual_trigger_bypasses_schedule_not_guard(self, orchestrator, make_config, base_time) -> None:
        creation = await orchestrator.create_strategy(make_config(), now=base_time)

        # Not due until base_time + 24h, but a manual trigger may fire right away.
        report = await orchestrator.execute_now(creation.strategy.id, now=base_time + timedelta(minutes=5))
        assert report.executed

        rejected = await orchestrator.execute_now(
            creation.strategy.id,
            max_gas_price_wei=80 * GWEI,
            now=base_time + timedelta(days=2),
        )
        assert rejected.reason == "gas-price-too-high"
        assert rejected.decision.retryable is True

    @pytest.mark.asyncio
    async def test_wrong_pair_rejected(self, orchestrator, make_config, base_time) -> None:
        creation = await orchestrator.create_strategy(make_config(), now=base_time)

        report = await orchestrator.execute_now(creation.strategy.id, to_token="WBTC", now=base_time)

        assert report.reason == "token-pair-mismatch"
        assert orchestrator.store.get(creation.strategy.id).execution_count == 0

    @pytest.mark.asyncio
    async def test_unknown_strategy(self, orchestrator) -> None:
        with pytest.raises(StrategyNotFoundError):
            await orchestrator.execute_now("dca-missing")

    @pytest.mark.asyncio
    async def test_intent_passed_to_gateway(self, orchestrator, gateway, make_config, base_time) -> None:
        creation = await orchestrator.create_strategy(make_config(), now=base_time)

        await orchestrator.execute_now(creation.strategy.id, now=base_time)

        [intent] = gateway.intents
        assert intent.router_address == UNISWAP_V3_ROUTER
        assert intent.value_wei == 0
        assert intent.max_gas_price_wei == 50 * GWEI
        assert intent.metadata["trigger"] == "manual"


class TestSweep:
    @pytest.mark.asyncio
    async def test_schedule_runs_to_completion(self, orchestrator, make_config, base_time) -> None:
        creation = await orchestrator.create_strategy(make_config(), now=base_time)
        strategy_id = creation.strategy.id

        assert await orchestrator.sweep(now=base_time + timedelta(hours=23)) == []

        reports = []
        for day in (1, 2, 3):
            reports.extend(await orchestrator.sweep(now=base_time + timedelta(days=day)))

        assert [r.attempt.amount for r in reports] == [Decimal("100"), Decimal("100"), Decimal("50")]
        assert all(r.executed for r in reports)
        strategy = orchestrator.store.get(strategy_id)
        assert strategy.status == "completed"
        assert strategy.executed_amount == Decimal("250")
        assert await orchestrator.sweep(now=base_time + timedelta(days=10)) == []

    @pytest.mark.asyncio
    async def test_sweep_skips_paused_strategies(self, orchestrator, make_config, base_time) -> None:
        creation = await orchestrator.create_strategy(make_config(), now=base_time)
        paused = await orchestrator.pause(creation.strategy.id)
        assert paused.status == "paused"

        assert await orchestrator.sweep(now=base_time + timedelta(days=2)) == []

        await orchestrator.resume(creation.strategy.id)
        reports = await orchestrator.sweep(now=base_time + timedelta(days=2))
        assert [r.outcome for r in reports] == ["approved-executed"]

    @pytest.mark.asyncio
    async def test_paused_manual_trigger_rejected(self, orchestrator, make_config, base_time) -> None:
        creation = await orchestrator.create_strategy(make_config(), now=base_time)
        await orchestrator.pause(creation.strategy.id)

        report = await orchestrator.execute_now(creation.strategy.id, now=base_time)

        assert report.reason == "strategy-not-active"

    @pytest.mark.asyncio
    async def test_high_gas_retried_next_sweep(self, store, ledger, make_config, base_time) -> None:
        gas = FixedGasPrice(80)
        orchestrator = _orchestrator(store, ledger, base_time, gas_price_provider=gas)
        creation = await orchestrator.create_strategy(make_config(), now=base_time)
        due = creation.strategy.next_execution

        [rejected] = await orchestrator.sweep(now=due)
        assert rejected.reason == "gas-price-too-high"
        assert store.get(creation.strategy.id).next_execution == due

        gas.gwei = 20
        [executed] = await orchestrator.sweep(now=due + timedelta(minutes=1))
        assert executed.executed
        assert executed.attempt.max_gas_price_wei == 20 * GWEI

    @pytest.mark.asyncio
    async def test_sweep_handles_many_strategies(self, orchestrator, make_config, base_time) -> None:
        for i in range(5):
            await orchestrator.create_strategy(make_config(name=f"dca-{i}", cadence="hourly"), now=base_time)

        reports = await orchestrator.sweep(now=base_time + timedelta(hours=1))

        assert len(reports) == 5
        assert all(r.executed for r in reports)

    @pytest.mark.asyncio
    async def test_run_stops_after_max_iterations(self, store, ledger, make_config, base_time) -> None:
        orchestrator = _orchestrator(
            store,
            ledger,
            base_time,
            max_iterations=2,
            clock=lambda: base_time + timedelta(hours=25),
        )
        creation = await orchestrator.create_strategy(make_config(), now=base_time)

        await orchestrator.run()

        assert store.get(creation.strategy.id).execution_count == 1
        assert len(ledger.list_by_strategy(creation.strategy.id)) == 1


class TestDownstreamFailures:
    @pytest.mark.asyncio
    async def test_signing_timeout_is_retried(self, store, ledger, make_config, base_time) -> None:
        orchestrator = _orchestrator(
            store,
            ledger,
            base_time,
            signing_timeout=0.05,
            gateway=SimulatedSigningGateway(delay_seconds=1.0),
        )
        creation = await orchestrator.create_strategy(make_config(), now=base_time)
        due = creation.strategy.next_execution

        [failed] = await orchestrator.sweep(now=due)

        assert failed.outcome == "approved-failed-downstream"
        assert failed.reason == "signing-timeout"
        assert failed.decision.approved is True
        strategy = store.get(creation.strategy.id)
        assert strategy.executed_amount == Decimal("0")
        assert strategy.execution_count == 0
        assert strategy.next_execution == due

        orchestrator.gateway = SimulatedSigningGateway()
        [retried] = await orchestrator.sweep(now=due + timedelta(minutes=1))

        assert retried.executed
        assert [e.outcome for e in ledger.list_by_strategy(creation.strategy.id)] == [
            "approved-failed-downstream",
            "approved-executed",
        ]

    @pytest.mark.asyncio
    async def test_gateway_failure_reason_recorded(self, store, ledger, make_config, base_time) -> None:
        orchestrator = _orchestrator(
            store, ledger, base_time, gateway=SimulatedSigningGateway(fail_reason="signing-failed")
        )
        creation = await orchestrator.create_strategy(make_config(), now=base_time)

        report = await orchestrator.execute_now(creation.strategy.id, now=base_time)

        assert report.reason == "signing-failed"
        [entry] = ledger.list_by_strategy(creation.strategy.id)
        assert entry.outcome == "approved-failed-downstream"
        assert entry.reason == "signing-failed"

    @pytest.mark.asyncio
    async def test_gateway_exception_is_unavailable(self, store, ledger, make_config, base_time) -> None:
        orchestrator = _orchestrator(store, ledger, base_time, gateway=BrokenGateway())
        creation = await orchestrator.create_strategy(make_config(), now=base_time)

        report = await orchestrator.execute_now(creation.strategy.id, now=base_time)

        assert report.outcome == "approved-failed-downstream"
        assert report.reason == "signing-unavailable"
        assert store.get(creation.strategy.id).execution_count == 0


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_manual_triggers_execute_once(self, store, ledger, make_config, base_time) -> None:
        orchestrator = _orchestrator(store, ledger, base_time, gateway=SimulatedSigningGateway(delay_seconds=0.01))
        creation = await orchestrator.create_strategy(make_config(), now=base_time)

        reports = await asyncio.gather(
            *(orchestrator.execute_now(creation.strategy.id, now=base_time) for _ in range(5))
        )

        outcomes = sorted(r.outcome for r in reports)
        assert outcomes.count("approved-executed") == 1
        assert {r.reason for r in reports if not r.executed} == {"cadence-not-elapsed"}
        assert store.get(creation.strategy.id).executed_amount == Decimal("100")

    @pytest.mark.asyncio
    async def test_sweep_and_manual_trigger_race(self, store, ledger, make_config, base_time) -> None:
        orchestrator = _orchestrator(store, ledger, base_time, gateway=SimulatedSigningGateway(delay_seconds=0.01))
        creation = await orchestrator.create_strategy(make_config(total_budget=Decimal("100")), now=base_time)
        due = creation.strategy.next_execution

        sweep_reports, manual = await asyncio.gather(
            orchestrator.sweep(now=due),
            orchestrator.execute_now(creation.strategy.id, now=due),
        )

        reports = [*sweep_reports, manual]
        assert sum(1 for r in reports if r.executed) == 1
        strategy = store.get(creation.strategy.id)
        assert strategy.executed_amount == Decimal("100")
        assert strategy.status == "completed"
        assert reconcile(store=store, ledger=ledger, strategy_id=strategy.id).consistent


class TestStrategyCreation:
    @pytest.mark.asyncio
    async def test_invalid_config_not_persisted(self, orchestrator, make_config) -> None:
        with pytest.raises(ValidationError):
            await orchestrator.create_strategy(make_config(total_budget=Decimal("10")))
        assert orchestrator.store.list() == []

    @pytest.mark.asyncio
    async def test_unconfigured_registrar_only_warns(self, orchestrator, make_config, base_time) -> None:
        creation = await orchestrator.create_strategy(make_config(), now=base_time)

        assert creation.strategy.status == "active"
        assert creation.strategy.policy_ids == ()
        assert creation.warnings == ["max-gas-price: policy registrar not configured"]

        report = await orchestrator.execute_now(creation.strategy.id, now=base_time)
        assert report.executed

    @pytest.mark.asyncio
    async def test_policy_ids_attached(self, store, ledger, make_config, base_time) -> None:
        registrar = RecordingRegistrar()
        orchestrator = _orchestrator(store, ledger, base_time, registrar=registrar)

        creation = await orchestrator.create_strategy(
            make_config(from_token="ETH", to_token="USDC", amount=Decimal("0.5"), total_budget=Decimal("5")),
            now=base_time,
        )

        assert creation.warnings == []
        assert creation.strategy.policy_ids == ("policy-1", "policy-2")
        assert store.get(creation.strategy.id).policy_ids == ("policy-1", "policy-2")
        assert [r.kind for r in registrar.rules] == ["max-gas-price", "max-transaction-value"]

    @pytest.mark.asyncio
    async def test_registrar_timeout_keeps_strategy(self, store, ledger, make_config, base_time) -> None:
        orchestrator = _orchestrator(store, ledger, base_time, registrar=SlowRegistrar(), registrar_timeout=0.01)

        creation = await orchestrator.create_strategy(make_config(), now=base_time)

        assert creation.strategy.status == "active"
        assert creation.strategy.policy_ids == ()
        assert "timed out" in creation.warnings[0]

    @pytest.mark.asyncio
    async def test_registrar_failure_does_not_change_decisions(self, store, ledger, make_config, base_time) -> None:
        failing = _orchestrator(store, ledger, base_time, registrar=RejectingRegistrar())
        working = _orchestrator(store, ledger, base_time, registrar=RecordingRegistrar())

        without = await failing.create_strategy(make_config(), now=base_time)
        with_policies = await working.create_strategy(make_config(), now=base_time)
        assert without.warnings == ["max-gas-price: HTTP 503"]

        t = base_time + timedelta(hours=1)
        first = await failing.execute_now(without.strategy.id, max_gas_price_wei=80 * GWEI, now=t)
        second = await working.execute_now(with_policies.strategy.id, max_gas_price_wei=80 * GWEI, now=t)
        assert first.decision == second.decision


class FlakyListStore(InMemoryStrategyStore):
    """Store whose first `list` call fails, like a dropped database connection."""

    def __init__(self, failures: int = 1) -> None:
        super().__init__()
        self.failures = failures

    def list(self, **kwargs):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("database is locked")
        return super().list(**kwargs)


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_sweep_survives_list_failure(self, ledger, make_config, base_time) -> None:
        store = FlakyListStore()
        orchestrator = _orchestrator(store, ledger, base_time)
        creation = await orchestrator.create_strategy(make_config(), now=base_time)
        due = creation.strategy.next_execution

        assert await orchestrator.sweep(now=due) == []

        [report] = await orchestrator.sweep(now=due)
        assert report.executed

    @pytest.mark.asyncio
    async def test_run_keeps_going_after_list_failure(self, ledger, make_config, base_time) -> None:
        store = FlakyListStore()
        orchestrator = _orchestrator(
            store,
            ledger,
            base_time,
            max_iterations=2,
            clock=lambda: base_time + timedelta(hours=25),
        )
        creation = await orchestrator.create_strategy(make_config(), now=base_time)

        await orchestrator.run()

        assert store.failures == 0
        assert store.get(creation.strategy.id).execution_count == 1

    @pytest.mark.asyncio
    async def test_counter_update_failure_is_reported(self, store, ledger, make_config, base_time) -> None:
        orchestrator = _orchestrator(store, ledger, base_time)
        creation = await orchestrator.create_strategy(make_config(), now=base_time)

        with patch.object(
            store, "apply_execution_result", side_effect=BudgetInvariantError("counters moved underneath")
        ):
            report = await orchestrator.execute_now(creation.strategy.id, now=base_time)

        assert report.outcome == "approved-executed"
        assert report.reason == COUNTER_UPDATE_FAILED
        assert report.transaction_ref.startswith("0x")
        assert report.strategy.execution_count == 0
        [entry] = ledger.list_by_strategy(creation.strategy.id)
        assert entry.outcome == "approved-executed"
        assert not reconcile(store=store, ledger=ledger, strategy_id=creation.strategy.id).consistent


class TestStrategyClaims:
    @pytest.mark.asyncio
    async def test_claim_released_after_execution(self, orchestrator, store, make_config, base_time) -> None:
        creation = await orchestrator.create_strategy(make_config(), now=base_time)

        await orchestrator.execute_now(creation.strategy.id, now=base_time)

        assert store.claim(creation.strategy.id, owner="other-process", now=base_time, expires_at=base_time)

    @pytest.mark.asyncio
    async def test_claim_released_after_rejection(self, orchestrator, store, make_config, base_time) -> None:
        creation = await orchestrator.create_strategy(make_config(), now=base_time)

        report = await orchestrator.execute_now(creation.strategy.id, amount=Decimal("500"), now=base_time)

        assert not report.executed
        assert store.claim(creation.strategy.id, owner="other-process", now=base_time, expires_at=base_time)

    @pytest.mark.asyncio
    async def test_foreign_claim_blocks_execution(self, orchestrator, store, ledger, make_config, base_time) -> None:
        creation = await orchestrator.create_strategy(make_config(), now=base_time)
        strategy_id = creation.strategy.id
        now = datetime.now(timezone.utc)
        assert store.claim(strategy_id, owner="scheduler-host", now=now, expires_at=now + timedelta(minutes=5))

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(orchestrator.execute_now(strategy_id, now=base_time), timeout=0.2)
        assert ledger.list_by_strategy(strategy_id) == []

        store.release(strategy_id, owner="scheduler-host")
        report = await orchestrator.execute_now(strategy_id, now=base_time)
        assert report.executed

    @pytest.mark.asyncio
    async def test_expired_claim_is_taken_over(self, orchestrator, store, make_config, base_time) -> None:
        creation = await orchestrator.create_strategy(make_config(), now=base_time)
        now = datetime.now(timezone.utc)
        store.claim(creation.strategy.id, owner="crashed-host", now=now, expires_at=now - timedelta(minutes=1))

        report = await asyncio.wait_for(orchestrator.execute_now(creation.strategy.id, now=base_time), timeout=1)

        assert report.executed

    @pytest.mark.asyncio
    async def test_lock_dropped_when_strategy_completes(self, orchestrator, make_config, base_time) -> None:
        creation = await orchestrator.create_strategy(make_config(total_budget=Decimal("100")), now=base_time)
        partial = await orchestrator.create_strategy(make_config(), now=base_time)

        done = await orchestrator.execute_now(creation.strategy.id, now=base_time)
        ongoing = await orchestrator.execute_now(partial.strategy.id, now=base_time)

        assert done.strategy.status == "completed"
        assert creation.strategy.id not in orchestrator._locks
        assert ongoing.strategy.status == "active"
        assert partial.strategy.id in orchestrator._locks


class TestUnexpectedRegistrarResponses:
    @pytest.mark.asyncio
    async def test_non_object_response_keeps_strategy(self, store, ledger, make_config, base_time) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=["ok"])))
        registrar = HttpPolicyRegistrar("https://custody.test/api", organization_id="org-1", client=client)
        orchestrator = _orchestrator(store, ledger, base_time, registrar=registrar)

        creation = await orchestrator.create_strategy(make_config(), now=base_time)

        assert creation.strategy.status == "active"
        assert creation.strategy.policy_ids == ()
        assert creation.warnings == ["max-gas-price: registrar returned list, expected an object"]
        assert [s.id for s in store.list()] == [creation.strategy.id]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_registrar_crash_keeps_strategy(self, store, ledger, make_config, base_time) -> None:
        orchestrator = _orchestrator(store, ledger, base_time, registrar=CrashingRegistrar())

        creation = await orchestrator.create_strategy(make_config(), now=base_time)

        assert creation.strategy.status == "active"
        assert "unexpected registrar error" in creation.warnings[0]
        assert len(store.list()) == 1


class TestSchedulerEntryPoint:
    @pytest.mark.asyncio
    async def test_requires_shared_database(self, monkeypatch) -> None:
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setattr(sys, "argv", ["run_scheduler"])

        with pytest.raises(SystemExit, match="DATABASE_URL"):
            await main()
