from __future__ import annotations

import asyncio
import logging
import secrets
from collections import deque
from typing import Optional

from dcaguard.types import SigningResult, TransactionIntent

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 100


class SimulatedSigningGateway:
    """Simulation-mode gateway.

    Never signs anything. Returns a fabricated transaction hash after an
    optional delay, which lets tests exercise timeouts and downstream
    failures without a custody backend.
    """

    def __init__(
        self,
        *,
        delay_seconds: float = 0.0,
        fail_reason: Optional[str] = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        """Initialize the simulated gateway.

        Args:
            delay_seconds: How long each call sleeps before answering
            fail_reason: When set, every call fails with this reason
            history_size: Most recent intents kept in `intents`
        """
        self.delay_seconds = delay_seconds
        self.fail_reason = fail_reason
        self.intents: deque[TransactionIntent] = deque(maxlen=history_size)

    async def sign_and_execute(self, intent: TransactionIntent) -> SigningResult:
        self.intents.append(intent)
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)

        if self.fail_reason is not None:
            return SigningResult(success=False, reason=self.fail_reason)

        tx_hash = "0x" + secrets.token_hex(32)
        logger.info(
            "SIMULATED: swap %s %s -> %s on %s (%s)",
            intent.amount,
            intent.from_token,
            intent.to_token,
            intent.network,
            tx_hash,
        )
        return SigningResult(
            success=True,
            transaction_ref=tx_hash,
            raw={
                "simulated": True,
                "network": intent.network,
                "router": intent.router_address,
                "amount": str(intent.amount),
                "gas_price_wei": str(intent.max_gas_price_wei),
            },
        )
