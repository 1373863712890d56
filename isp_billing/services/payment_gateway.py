import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

import requests

from isp_billing.core.config import settings

_PAID_STATUSES = {"PAID", "COMPLETED", "SETTLED", "PAYMENT_SUCCESS", "SUCCESS"}
_DECLINED_STATUSES = {"DECLINED", "FAILED", "REJECTED", "EXPIRED", "CANCELLED", "VOIDED"}


class GatewayOutcome(str, Enum):
    SUCCESS = "success"
    DECLINED = "declined"
    RETRYABLE = "retryable"


@dataclass(frozen=True)
class GatewayChargeRequest:
    reference_no: str
    account_no: str
    amount: Decimal
    invoice_no: str | None = None


@dataclass(frozen=True)
class GatewayResult:
    outcome: GatewayOutcome
    detail: str | None = None
    transaction_ref: str | None = None
    payload: dict[str, Any] | None = None


class PaymentGateway(Protocol):
    name: str

    def charge(self, request: GatewayChargeRequest) -> GatewayResult:
        ...


def classify_gateway_status(status: str | None) -> GatewayOutcome:
    normalized = (status or "").strip().upper()
    if normalized in _PAID_STATUSES:
        return GatewayOutcome.SUCCESS
    if normalized in _DECLINED_STATUSES:
        return GatewayOutcome.DECLINED
    return GatewayOutcome.RETRYABLE


class HttpPaymentGateway:
    name = "http"

    def __init__(self, base_url: str, *, api_key: str | None = None, timeout_seconds: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def charge(self, request: GatewayChargeRequest) -> GatewayResult:
        body = {
            "reference_no": request.reference_no,
            "account_no": request.account_no,
            "amount": str(request.amount),
            "invoice_no": request.invoice_no,
        }
        try:
            response = requests.post(
                f"{self.base_url}/payments/charge",
                json=body,
                headers=self._headers(),
                timeout=self.timeout_seconds,
            )
        except requests.Timeout:
            return GatewayResult(outcome=GatewayOutcome.RETRYABLE, detail="Gateway timeout")
        except requests.RequestException as exc:
            return GatewayResult(outcome=GatewayOutcome.RETRYABLE, detail=f"Gateway unreachable: {exc}")

        if response.status_code >= 500:
            return GatewayResult(
                outcome=GatewayOutcome.RETRYABLE,
                detail=f"Gateway error {response.status_code}",
            )
        if response.status_code in (408, 429):
            return GatewayResult(
                outcome=GatewayOutcome.RETRYABLE,
                detail=f"Gateway busy {response.status_code}",
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if payload is not None and not isinstance(payload, dict):
            payload = {"body": payload}

        if response.status_code >= 400:
            message = payload.get("message") if payload else None
            return GatewayResult(
                outcome=GatewayOutcome.DECLINED,
                detail=str(message or f"Gateway rejected request ({response.status_code})"),
                payload=payload,
            )
        if payload is None:
            return GatewayResult(
                outcome=GatewayOutcome.RETRYABLE,
                detail=f"Unreadable gateway response ({response.status_code})",
            )

        gateway_status = payload.get("status")
        outcome = classify_gateway_status(gateway_status)
        return GatewayResult(
            outcome=outcome,
            detail=None if outcome == GatewayOutcome.SUCCESS else f"Gateway status {gateway_status!r}",
            transaction_ref=payload.get("transaction_ref") or payload.get("id"),
            payload=payload,
        )


class StubPaymentGateway:
    name = "stub"

    def charge(self, request: GatewayChargeRequest) -> GatewayResult:
        reference = f"stub-{uuid.uuid4().hex[:18]}"
        return GatewayResult(
            outcome=GatewayOutcome.SUCCESS,
            transaction_ref=reference,
            payload={"status": "PAID", "reference_no": request.reference_no},
        )


def _build_http_gateway() -> PaymentGateway:
    if not settings.payment_gateway_base_url:
        raise ValueError("PAYMENT_GATEWAY_BASE_URL is required for the http payment gateway")
    return HttpPaymentGateway(
        settings.payment_gateway_base_url,
        api_key=settings.payment_gateway_api_key,
        timeout_seconds=settings.payment_gateway_timeout_seconds,
    )


_PAYMENT_GATEWAYS = {
    "http": _build_http_gateway,
    "stub": StubPaymentGateway,
}


def get_payment_gateway(name: str | None = None) -> PaymentGateway:
    requested = settings.payment_gateway_provider if name is None else name
    normalized = (requested or "").strip().lower()
    factory = _PAYMENT_GATEWAYS.get(normalized)
    if not factory:
        available = ", ".join(sorted(_PAYMENT_GATEWAYS.keys()))
        raise ValueError(f"Unknown payment gateway '{requested}'. Available: {available}")
    return factory()
