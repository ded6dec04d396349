# orderflow/gateway.py
"""
Payment gateway client.

Thin wrapper over the gateway's REST API (token exchange, payment lookup,
payment cancel). No business rules live here and nothing is retried: callers
decide what a failure means for the order.

Every response body has the shape ``{"code": int, "message": str, "response": ...}``;
``code == 0`` is success. Gateway messages are passed through untouched.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from orderflow.config import Settings
from orderflow.errors import GatewayAuthError, GatewayLookupError, GatewayTransportError
from orderflow.log import get_logger
from orderflow.metrics import gateway_calls

logger = get_logger("gateway")


@dataclass(frozen=True)
class GatewayPaymentRecord:
    tx_id: str
    merchant_ref: str
    amount: int
    status: str
    pay_method: Optional[str] = None
    provider: Optional[str] = None


@dataclass(frozen=True)
class CancelResult:
    success: bool
    message: Optional[str] = None


def _whole_amount(value: Any) -> int:
    # Fractional amounts are malformed; no rounding
    if isinstance(value, bool):
        raise TypeError(f"amount must be a number, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise ValueError(f"amount must be a whole number, got {value!r}")


class GatewayClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        api_secret: Optional[str],
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._api_key = api_key
        self._api_secret = api_secret
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> "GatewayClient":
        return cls(
            base_url=settings.gateway_base_url,
            api_key=settings.gateway_api_key,
            api_secret=settings.gateway_api_secret,
            timeout=settings.gateway_timeout_secs,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GatewayClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def authenticate(self) -> str:
        """Exchange the configured credentials for a short-lived bearer token."""
        if not self._api_key or not self._api_secret:
            raise GatewayAuthError("Gateway credentials are not configured")

        data = self._call(
            "token",
            "POST",
            "/users/getToken",
            json={"imp_key": self._api_key, "imp_secret": self._api_secret},
        )
        if data.get("code") != 0:
            gateway_calls.labels("token", "rejected").inc()
            raise GatewayAuthError(f"Gateway authentication failed: {data.get('message')}")

        token = (data.get("response") or {}).get("access_token")
        if not token:
            gateway_calls.labels("token", "rejected").inc()
            raise GatewayAuthError("Gateway authentication returned no access token")
        gateway_calls.labels("token", "ok").inc()
        return token

    def fetch_payment(self, tx_id: str, token: str) -> GatewayPaymentRecord:
        data = self._call(
            "lookup",
            "GET",
            f"/payments/{tx_id}",
            headers={"Authorization": f"Bearer {token}"},
        )
        if data.get("code") != 0:
            gateway_calls.labels("lookup", "rejected").inc()
            raise GatewayLookupError(f"Payment lookup failed: {data.get('message')}")

        payment = data.get("response") or {}
        try:
            record = GatewayPaymentRecord(
                tx_id=payment["imp_uid"],
                merchant_ref=payment["merchant_uid"],
                amount=_whole_amount(payment["amount"]),
                status=payment["status"],
                pay_method=payment.get("pay_method"),
                provider=payment.get("pg_provider"),
            )
        except (KeyError, TypeError, ValueError) as e:
            gateway_calls.labels("lookup", "malformed").inc()
            raise GatewayTransportError(f"Malformed payment record from gateway: {e}") from e

        gateway_calls.labels("lookup", "ok").inc()
        return record

    def cancel_payment(self, tx_id: str, amount: int, reason: str, token: str) -> CancelResult:
        """Ask the gateway to cancel (refund) a payment.

        A refusal is an ordinary business outcome and comes back as
        ``CancelResult(success=False)``; only transport faults raise.
        """
        data = self._call(
            "cancel",
            "POST",
            "/payments/cancel",
            json={"imp_uid": tx_id, "amount": amount, "reason": reason},
            headers={"Authorization": f"Bearer {token}"},
        )
        if data.get("code") != 0:
            gateway_calls.labels("cancel", "rejected").inc()
            return CancelResult(success=False, message=data.get("message"))

        gateway_calls.labels("cancel", "ok").inc()
        return CancelResult(success=True, message=data.get("message"))

    def _call(self, operation: str, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            gateway_calls.labels(operation, "timeout").inc()
            logger.warning("gateway_timeout", operation=operation, path=path)
            raise GatewayTransportError(f"Gateway {operation} timed out") from e
        except httpx.HTTPError as e:
            gateway_calls.labels(operation, "transport_error").inc()
            logger.warning("gateway_transport_error", operation=operation, path=path, error=str(e))
            raise GatewayTransportError(f"Gateway {operation} request failed: {e}") from e

        # Business failures come back as non-2xx with a JSON body, so parse before judging status
        try:
            data = resp.json()
        except ValueError as e:
            gateway_calls.labels(operation, "malformed").inc()
            raise GatewayTransportError(
                f"Gateway {operation} returned a non-JSON response (HTTP {resp.status_code})"
            ) from e
        if not isinstance(data, dict):
            gateway_calls.labels(operation, "malformed").inc()
            raise GatewayTransportError(f"Gateway {operation} returned an unexpected body")
        return data
