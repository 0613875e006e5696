from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Protocol, Sequence

import httpx

from dcaguard.automation.rules import Strategy
from dcaguard.errors import PolicyRegistrationError
from dcaguard.networks import ether_to_wei, get_network, gwei_to_wei, is_native_token

logger = logging.getLogger(__name__)

RuleKind = Literal["max-gas-price", "max-transaction-value"]


@dataclass(frozen=True)
class PolicyRule:
    """Declarative rule submitted to the custody policy engine.

    `threshold` is in wei for both kinds.
    """

    network: str
    kind: RuleKind
    threshold: int
    name: str
    effect: Literal["EFFECT_ALLOW", "EFFECT_DENY"] = "EFFECT_ALLOW"
    notes: str = ""

    @property
    def condition(self) -> str:
        blockchain = get_network(self.network).blockchain
        scope = f"activity.parameters.blockchain == '{blockchain}'"
        if self.kind == "max-gas-price":
            return f"{scope} && eth.tx.gas_price <= {self.threshold}"
        return f"{scope} && eth.tx.value <= {self.threshold}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "network": self.network,
            "kind": self.kind,
            "threshold": str(self.threshold),
            "policyName": self.name,
            "effect": self.effect,
            "condition": self.condition,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class PolicyRegistration:
    """Best-effort outcome of registering a strategy's rules."""

    strategy_id: str
    policy_ids: tuple[str, ...] = ()
    errors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return not self.errors


class PolicyRegistrar(Protocol):
    async def register(self, rule: PolicyRule) -> str:
        """Register a rule and return its id. Raises PolicyRegistrationError."""


def build_policy_rules(strategy: Strategy) -> list[PolicyRule]:
    """Translate a strategy's guard parameters into remote rules.

    Every strategy gets a gas-price ceiling on its network. Strategies that
    spend the native token also cap the transaction value at one execution.
    """
    config = strategy.config
    pair = f"{config.from_token}->{config.to_token}"
    rules = [
        PolicyRule(
            network=config.network,
            kind="max-gas-price",
            threshold=gwei_to_wei(config.max_gas_price_gwei),
            name=f"DCA - {config.name} - {pair} Gas Limit",
            notes=f"Automated DCA strategy {strategy.id}: max gas {config.max_gas_price_gwei} Gwei on {config.network}",
        )
    ]
    if is_native_token(config.network, config.from_token):
        rules.append(
            PolicyRule(
                network=config.network,
                kind="max-transaction-value",
                threshold=ether_to_wei(config.amount),
                name=f"DCA - {config.name} - {pair} Value Limit",
                notes=f"Automated DCA strategy {strategy.id}: max {config.amount} {config.from_token} per swap",
            )
        )
    return rules


async def register_strategy_policies(
    *,
    registrar: PolicyRegistrar,
    strategy: Strategy,
    timeout: float,
    rules: Optional[Sequence[PolicyRule]] = None,
) -> PolicyRegistration:
    """Submit every rule for a strategy; failures are collected, never raised."""
    policy_ids: list[str] = []
    errors: list[str] = []

    for rule in rules if rules is not None else build_policy_rules(strategy):
        try:
            policy_id = await asyncio.wait_for(registrar.register(rule), timeout=timeout)
        except asyncio.TimeoutError:
            errors.append(f"{rule.kind}: registrar timed out after {timeout}s")
        except PolicyRegistrationError as exc:
            errors.append(f"{rule.kind}: {exc}")
        except Exception as exc:
            # Creation must never fail because of the registrar.
            logger.exception(f"Unexpected registrar error for strategy {strategy.id}: {exc}")
            errors.append(f"{rule.kind}: unexpected registrar error: {exc}")
        else:
            policy_ids.append(policy_id)

    for error in errors:
        logger.warning(f"Policy registration failed for strategy {strategy.id}: {error}")
    if policy_ids:
        logger.info(f"Registered {len(policy_ids)} policies for strategy {strategy.id}")

    return PolicyRegistration(strategy_id=strategy.id, policy_ids=tuple(policy_ids), errors=tuple(errors))


class NullPolicyRegistrar:
    """Registrar used when no policy service is configured."""

    async def register(self, rule: PolicyRule) -> str:
        raise PolicyRegistrationError("policy registrar not configured")


class HttpPolicyRegistrar:
    """Registers rules with the custody service over HTTP."""

    DEFAULT_TIMEOUT = 10.0  # seconds

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        organization_id: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = (base_url or os.environ.get("POLICY_REGISTRAR_URL") or "").rstrip("/")
        self.api_key = api_key or os.environ.get("POLICY_REGISTRAR_API_KEY")
        self.organization_id = organization_id or os.environ.get("POLICY_ORGANIZATION_ID")
        self.timeout = timeout
        self._client = client

        if not self.base_url:
            logger.warning("POLICY_REGISTRAR_URL not configured")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    async def register(self, rule: PolicyRule) -> str:
        if not self.base_url:
            raise PolicyRegistrationError("policy registrar not configured")

        payload = rule.to_payload()
        if self.organization_id:
            payload["organizationId"] = self.organization_id

        try:
            response = await self._get_client().post(f"{self.base_url}/policies", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise PolicyRegistrationError(f"registrar returned HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise PolicyRegistrationError(f"registrar unreachable: {exc}") from exc
        except ValueError as exc:
            raise PolicyRegistrationError("registrar returned invalid JSON") from exc

        if not isinstance(data, dict):
            raise PolicyRegistrationError(f"registrar returned {type(data).__name__}, expected an object")

        policy_id = data.get("policyId") or (data.get("activity") or {}).get("id")
        if not policy_id:
            raise PolicyRegistrationError("registrar response has no policy id")
        return str(policy_id)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
