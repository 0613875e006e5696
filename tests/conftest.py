"""Shared test fixtures for pytest.

Provides common strategy configs, stores and an orchestrator wired with the
simulated signing gateway.
"""

from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable

import pytest

from dcaguard.automation.orchestrator import OrchestratorConfig, StrategyOrchestrator
from dcaguard.automation.rules import StrategyConfig
from dcaguard.execution.simulated import SimulatedSigningGateway
from dcaguard.storage.memory_stores import InMemoryExecutionLedger, InMemoryStrategyStore
from dcaguard.storage.sql import SqlConfig, create_sql_stores

BASE_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def base_time() -> datetime:
    return BASE_TIME


@pytest.fixture
def make_config() -> Callable[..., StrategyConfig]:
    """Factory for strategy configs.

    Defaults mirror the walkthrough strategy: 100 USDC into ETH daily,
    250 USDC budget, 50 Gwei gas ceiling on ethereum.
    """

    def _make(**overrides: Any) -> StrategyConfig:
        values: dict[str, Any] = {
            "name": "Weekly ETH stack",
            "network": "ethereum",
            "from_token": "USDC",
            "to_token": "ETH",
            "amount": Decimal("100"),
            "cadence": "daily",
            "max_gas_price_gwei": Decimal("50"),
            "slippage_tolerance": Decimal("1"),
            "total_budget": Decimal("250"),
            "wallet_address": "0x1111111111111111111111111111111111111111",
        }
        values.update(overrides)
        return StrategyConfig(**values)

    return _make


@pytest.fixture
def store() -> InMemoryStrategyStore:
    return InMemoryStrategyStore()


@pytest.fixture
def ledger() -> InMemoryExecutionLedger:
    return InMemoryExecutionLedger()


@pytest.fixture
def gateway() -> SimulatedSigningGateway:
    return SimulatedSigningGateway()


@pytest.fixture
def orchestrator(
    store: InMemoryStrategyStore,
    ledger: InMemoryExecutionLedger,
    gateway: SimulatedSigningGateway,
) -> StrategyOrchestrator:
    return StrategyOrchestrator(
        config=OrchestratorConfig(poll_interval=1, signing_timeout=1.0, registrar_timeout=0.5),
        store=store,
        ledger=ledger,
        gateway=gateway,
        clock=lambda: BASE_TIME,
    )


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'dcaguard.db'}"


@pytest.fixture
def sql_stores(sqlite_url: str):
    """SQL strategy store and ledger on a throwaway SQLite file."""
    return create_sql_stores(SqlConfig(database_url=sqlite_url))
