from __future__ import annotations

from typing import Protocol

from dcaguard.automation.rules import Strategy
from dcaguard.networks import ether_to_wei, get_network, is_native_token
from dcaguard.types import ExecutionAttempt, SigningResult, TransactionIntent


class SigningGateway(Protocol):
    """Protocol for signing and submitting an approved swap."""

    async def sign_and_execute(self, intent: TransactionIntent) -> SigningResult:
        """Sign the intent and return the execution result.

        Callers bound this call with a timeout; implementations should not
        retry internally.
        """


def build_transaction_intent(*, attempt: ExecutionAttempt, strategy: Strategy) -> TransactionIntent:
    """Turn a guard-approved attempt into the swap handed to the gateway.

    The swap targets the network's DEX router. Native-token sources carry the
    amount as transaction value; token sources send no value.
    """
    config = strategy.config
    network = get_network(config.network)
    value_wei = ether_to_wei(attempt.amount) if is_native_token(config.network, attempt.from_token) else 0
    return TransactionIntent(
        strategy_id=strategy.id,
        wallet_address=attempt.wallet_address or config.wallet_address,
        network=config.network,
        from_token=attempt.from_token,
        to_token=attempt.to_token,
        amount=attempt.amount,
        max_gas_price_wei=attempt.max_gas_price_wei,
        slippage_tolerance=config.slippage_tolerance,
        router_address=network.dex_router,
        value_wei=value_wei,
        metadata={"strategy_name": config.name, "trigger": attempt.trigger},
    )
