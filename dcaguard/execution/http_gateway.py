"""HTTP client for a custody signing service."""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import httpx

from dcaguard.types import SigningResult, TransactionIntent

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "ACTIVITY_STATUS_COMPLETED"
STATUS_FAILED = "ACTIVITY_STATUS_FAILED"


class HttpSigningGateway:
    """Signing gateway that posts transaction intents to a custody service.

    The service evaluates its own policies before signing; a policy denial
    comes back as a failed activity and is reported as `signing-failed`.
    """

    DEFAULT_TIMEOUT = 30.0  # seconds

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            base_url: Service base URL. If not provided, reads SIGNING_GATEWAY_URL.
            api_key: Bearer token. If not provided, reads SIGNING_GATEWAY_API_KEY.
            timeout: HTTP timeout in seconds
            client: Pre-built client (tests)
        """
        self.base_url = (base_url or os.environ.get("SIGNING_GATEWAY_URL") or "").rstrip("/")
        self.api_key = api_key or os.environ.get("SIGNING_GATEWAY_API_KEY")
        self.timeout = timeout
        self._client = client

        if not self.base_url:
            logger.warning("SIGNING_GATEWAY_URL not configured")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    @staticmethod
    def _payload(intent: TransactionIntent) -> dict[str, Any]:
        return {
            "signWith": intent.wallet_address,
            "network": intent.network,
            "fromToken": intent.from_token,
            "toToken": intent.to_token,
            "amount": str(intent.amount),
            "transaction": {
                "to": intent.router_address,
                "value": str(intent.value_wei),
                "gasPrice": str(intent.max_gas_price_wei),
            },
            "slippageTolerance": str(intent.slippage_tolerance),
            "metadata": dict(intent.metadata or {}),
        }

    async def sign_and_execute(self, intent: TransactionIntent) -> SigningResult:
        if not self.base_url:
            return SigningResult(success=False, reason="signing-unavailable")

        try:
            response = await self._get_client().post(
                f"{self.base_url}/sign-transaction",
                json=self._payload(intent),
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(f"Signing gateway rejected request: {exc.response.status_code}")
            return SigningResult(success=False, reason="signing-failed", raw={"status_code": exc.response.status_code})
        except httpx.HTTPError as exc:
            logger.error(f"Signing gateway unreachable: {exc}")
            return SigningResult(success=False, reason="signing-unavailable")
        except ValueError:
            logger.error("Signing gateway returned invalid JSON")
            return SigningResult(success=False, reason="signing-failed")

        if not isinstance(data, dict):
            logger.error(f"Signing gateway returned {type(data).__name__}, expected an object")
            return SigningResult(success=False, reason="signing-failed")

        status = data.get("status")
        if status == STATUS_COMPLETED:
            return SigningResult(
                success=True,
                transaction_ref=data.get("txHash") or data.get("id"),
                raw=data,
            )

        message = (data.get("failure") or {}).get("message", "Transaction failed")
        logger.warning(f"Signing activity {data.get('id')} ended with {status}: {message}")
        return SigningResult(
            success=False,
            reason="signing-failed",
            raw={**data, "policy_violation": "policy" in message.lower()},
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
