"""Payment Reconciler and the SumUp hosted-checkout adapter.

The reconciler never infers an outcome from a failure to ask: transport
errors and unexpected gateway answers surface as GatewayUnavailable and
the caller leaves the order untouched.
"""
import secrets
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from . import config
from .errors import GatewayUnavailable
from .logs import get_logger
from .metrics import PAYMENT_RECONCILIATIONS
from .status import OrderStatus

logger = get_logger("payments")


class PaymentState(str, Enum):
    PAID = "PAID"
    FAILED = "FAILED"
    PENDING = "PENDING"
    UNKNOWN = "UNKNOWN"


PAYMENT_STATE_TRANSITIONS = {
    PaymentState.PAID: OrderStatus.PAYMENT_CONFIRMED,
    PaymentState.FAILED: OrderStatus.PAYMENT_FAILED,
}

_PAID = {"PAID", "SUCCESSFUL"}

HOSTED_CHECKOUT_URL = "https://checkout.sumup.com/pay/{checkout_id}"


def hosted_checkout_url(checkout_id: str) -> str:
    return HOSTED_CHECKOUT_URL.format(checkout_id=checkout_id)


def classify(raw_status: Optional[str]) -> PaymentState:
    status = (raw_status or "").strip().upper()
    if status in _PAID:
        return PaymentState.PAID
    if status == "FAILED":
        return PaymentState.FAILED
    if status == "PENDING":
        return PaymentState.PENDING
    return PaymentState.UNKNOWN


@dataclass
class Checkout:
    id: str
    url: str
    reference: str


@dataclass
class Reconciliation:
    state: PaymentState
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def target_status(self) -> Optional[OrderStatus]:
        return PAYMENT_STATE_TRANSITIONS.get(self.state)


class SumUpGateway:
    def __init__(
        self,
        base_url: str = config.SUMUP_BASE_URL,
        client_id: str = config.SUMUP_CLIENT_ID,
        client_secret: str = config.SUMUP_CLIENT_SECRET,
        merchant_email: str = config.SUMUP_MERCHANT_EMAIL,
        currency: str = config.SUMUP_CURRENCY,
        frontend_url: str = config.FRONTEND_URL,
        client: Optional[httpx.Client] = None,
    ):
        self.client = client or httpx.Client(base_url=base_url, timeout=config.HTTP_TIMEOUT_SECONDS)
        self.client_id = client_id
        self.client_secret = client_secret
        self.merchant_email = merchant_email
        self.currency = currency
        self.frontend_url = frontend_url.rstrip("/")

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            r = self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"SumUp request error: {e}") from e
        if not 200 <= r.status_code < 300:
            raise GatewayUnavailable(f"SumUp API error {r.status_code}: {r.text[:200]}")
        try:
            return r.json()
        except ValueError as e:
            raise GatewayUnavailable(f"Error parsing SumUp response: {e}") from e

    def access_token(self) -> str:
        if not (self.client_id and self.client_secret):
            raise GatewayUnavailable("SumUp credentials not configured")
        data = self._request(
            "POST",
            "/token",
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        token = data.get("access_token")
        if not token:
            raise GatewayUnavailable("SumUp token response carried no access_token")
        return token

    def get_checkout_status(self, checkout_id: str) -> Dict[str, Any]:
        token = self.access_token()
        return self._request(
            "GET",
            f"/v0.1/checkouts/{checkout_id}",
            headers={"Authorization": f"Bearer {token}"},
        )

    def create_checkout(self, order_id: int, amount: Decimal, description: str) -> Checkout:
        if not self.merchant_email:
            raise GatewayUnavailable("SumUp merchant email not configured")
        token = self.access_token()
        reference = f"ORDER-{order_id}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"
        data = self._request(
            "POST",
            "/v0.1/checkouts",
            headers={"Authorization": f"Bearer {token}"},
            json={
                "checkout_reference": reference,
                "amount": float(amount),
                "currency": self.currency,
                "pay_to_email": self.merchant_email,
                "description": description,
                "hosted_checkout": {"enabled": True},
                "redirect_url": f"{self.frontend_url}/order-confirmation",
                "custom_fields": {"order_id": str(order_id)},
            },
        )
        if "id" not in data:
            raise GatewayUnavailable("SumUp checkout response carried no id")
        return Checkout(id=data["id"], url=data.get("hosted_checkout_url", ""), reference=reference)


class PaymentReconciler:
    def __init__(self, gateway):
        self.gateway = gateway

    def reconcile(self, checkout_reference: str) -> Reconciliation:
        raw = self.gateway.get_checkout_status(checkout_reference)
        state = classify(raw.get("status"))
        PAYMENT_RECONCILIATIONS.labels(state.value).inc()
        logger.info(f"Checkout {checkout_reference} reported {raw.get('status')!r} -> {state.value}")
        return Reconciliation(state=state, raw=raw)
