from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Sequence

import httpx

SANDBOX_SNAP_URL = "https://app.sandbox.midtrans.com/snap/v1/transactions"
PRODUCTION_SNAP_URL = "https://app.midtrans.com/snap/v1/transactions"
SANDBOX_API_URL = "https://api.sandbox.midtrans.com/v2"
PRODUCTION_API_URL = "https://api.midtrans.com/v2"


@dataclass(frozen=True)
class CheckoutSession:
    checkout_url: str
    token: str


@dataclass(frozen=True)
class TransactionStatus:
    raw_status: Optional[str]
    payment_method: Optional[str] = None
    settled_at: Optional[str] = None


@dataclass(frozen=True)
class PayerInfo:
    name: str
    email: Optional[str] = None


class PaymentGateway(Protocol):
    def initiate(
        self,
        payment_reference: str,
        gross_amount: float,
        items: Sequence[dict],
        payer: PayerInfo,
    ) -> CheckoutSession: ...

    def query_status(self, payment_reference: str) -> TransactionStatus: ...


class PaymentInitiationError(Exception):
    """Raised when the gateway refuses or cannot create a transaction."""


class GatewayQueryError(Exception):
    """Raised when the gateway status endpoint cannot be reached."""


class MidtransGatewayClient:
    def __init__(
        self,
        server_key: str,
        production: bool = False,
        client: httpx.Client | None = None,
    ):
        self._auth = (server_key, "")
        self._snap_url = PRODUCTION_SNAP_URL if production else SANDBOX_SNAP_URL
        self._api_url = PRODUCTION_API_URL if production else SANDBOX_API_URL
        self._client = client or httpx.Client(timeout=10.0)

    def initiate(
        self,
        payment_reference: str,
        gross_amount: float,
        items: Sequence[dict],
        payer: PayerInfo,
    ) -> CheckoutSession:
        payload = {
            "transaction_details": {
                "order_id": payment_reference,
                "gross_amount": int(round(gross_amount)),
            },
            "item_details": [
                {
                    "id": item["id"],
                    "price": int(round(item["price"])),
                    "quantity": item["quantity"],
                    "name": item["name"][:50],
                }
                for item in items
            ],
            "customer_details": {"first_name": payer.name, "email": payer.email},
        }
        try:
            response = self._client.post(
                self._snap_url,
                json=payload,
                auth=self._auth,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise PaymentInitiationError(f"Payment-Gateway nicht erreichbar: {exc}") from exc

        if response.status_code >= 300:
            raise PaymentInitiationError(
                f"Zahlung konnte nicht gestartet werden ({response.status_code}): {response.text}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise PaymentInitiationError("Antwort des Payment-Gateways ist kein JSON.") from exc

        token = body.get("token") if isinstance(body, dict) else None
        redirect_url = body.get("redirect_url") if isinstance(body, dict) else None
        if not token or not redirect_url:
            raise PaymentInitiationError(f"Unvollständige Antwort des Payment-Gateways: {body}")
        return CheckoutSession(checkout_url=redirect_url, token=token)

    def query_status(self, payment_reference: str) -> TransactionStatus:
        try:
            response = self._client.get(
                f"{self._api_url}/{payment_reference}/status",
                auth=self._auth,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise GatewayQueryError(f"Status-Abfrage fehlgeschlagen: {exc}") from exc

        if response.status_code >= 400:
            return TransactionStatus(raw_status=None)
        try:
            body = response.json()
        except ValueError:
            return TransactionStatus(raw_status=None)
        if not isinstance(body, dict) or str(body.get("status_code", "200")).startswith("4"):
            # Midtrans meldet unbekannte Transaktionen mit HTTP 200 und status_code 404.
            return TransactionStatus(raw_status=None)
        return TransactionStatus(
            raw_status=body.get("transaction_status"),
            payment_method=body.get("payment_type"),
            settled_at=body.get("settlement_time"),
        )


class MockGatewayClient:
    """Fallback for local development without gateway credentials."""

    def __init__(self, default_status: str = "settlement"):
        self._default_status = default_status
        self._statuses: Dict[str, str] = {}

    def set_status(self, payment_reference: str, raw_status: str) -> None:
        self._statuses[payment_reference] = raw_status

    def initiate(
        self,
        payment_reference: str,
        gross_amount: float,
        items: Sequence[dict],
        payer: PayerInfo,
    ) -> CheckoutSession:
        token = f"mock-token-{uuid.uuid4()}"
        self._statuses.setdefault(payment_reference, self._default_status)
        return CheckoutSession(
            checkout_url=f"https://mock-gateway.local/checkout/{token}", token=token
        )

    def query_status(self, payment_reference: str) -> TransactionStatus:
        raw = self._statuses.get(payment_reference)
        if raw is None:
            return TransactionStatus(raw_status=None)
        return TransactionStatus(raw_status=raw, payment_method="mock")
