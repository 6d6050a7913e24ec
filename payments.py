"""
Paystack gateway adapter.

Only the three capabilities the order/payment core consumes are exposed:
initialize a payment, verify a reference, and check a webhook signature.
Network and gateway failures are mapped onto the shared error taxonomy;
everything that decides what a gateway answer *means* for orders and wallets
lives in ``reconciliation``.
"""
import hashlib
import hmac
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import structlog

from errors import BadRequest, ServiceUnavailable

log = structlog.get_logger(__name__)

DEFAULT_CHANNELS = ["card", "bank", "ussd", "qr", "mobile_money"]

# Paystack transaction states folded onto the three the core understands
_STATUS_MAP = {
    "success": "success",
    "failed": "failed",
    "abandoned": "failed",
    "reversed": "failed",
}


def generate_reference(prefix: str, user_id: str) -> str:
    millis = int(time.time() * 1000)
    return f"{prefix}_{user_id}_{millis}_{os.urandom(4).hex().upper()}"


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """HMAC-SHA512 of the raw request body, hex encoded, compared in constant time."""
    if not signature or not secret:
        return False
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(digest, signature)


@dataclass
class GatewayInitialization:
    authorization_url: str
    access_code: str
    reference: str


@dataclass
class GatewayVerification:
    status: str
    amount: int
    reference: str
    gateway_response: Optional[str] = None
    paid_at: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def amount_major(self) -> float:
        return self.amount / 100

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "GatewayVerification":
        return cls(
            status=_STATUS_MAP.get(str(data.get("status", "")).lower(), "pending"),
            amount=int(data.get("amount") or 0),
            reference=data.get("reference", ""),
            gateway_response=data.get("gateway_response"),
            paid_at=data.get("paid_at"),
            raw=data,
        )


class PaystackGateway:
    def __init__(self, secret_key: str, base_url: str = "https://api.paystack.co", timeout: float = 10,
                 client: Optional[httpx.Client] = None):
        self.secret_key = secret_key
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self.client.headers.update({"Authorization": f"Bearer {secret_key}"})

    @classmethod
    def from_settings(cls, settings) -> "PaystackGateway":
        return cls(settings.PAYSTACK_SECRET_KEY, settings.PAYSTACK_BASE_URL, settings.PAYSTACK_TIMEOUT)

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, path: str, action: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            log.error("gateway.timeout", path=path, error=str(exc))
            raise ServiceUnavailable("Payment gateway timed out, try again later")
        except httpx.HTTPError as exc:
            log.error("gateway.unreachable", path=path, error=str(exc))
            raise ServiceUnavailable("Payment gateway is unavailable, try again later")

        if response.status_code >= 500:
            log.error("gateway.server_error", path=path, status_code=response.status_code)
            raise ServiceUnavailable("Payment gateway is unavailable, try again later")
        try:
            body = response.json()
        except ValueError:
            raise ServiceUnavailable("Payment gateway returned an unreadable response")
        if not body.get("status"):
            raise BadRequest(f"Payment {action} failed: {body.get('message') or 'Unknown error'}")
        return body.get("data") or {}

    def initialize(self, email: str, amount_minor: int, reference: str, callback_url: str,
                   metadata: Optional[Dict[str, Any]] = None,
                   channels: Optional[List[str]] = None) -> GatewayInitialization:
        data = self._request("POST", "/transaction/initialize", "initialization", json={
            "email": email,
            "amount": amount_minor,
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata or {},
            "channels": channels or DEFAULT_CHANNELS,
        })
        log.info("gateway.initialized", reference=reference, amount=amount_minor)
        return GatewayInitialization(
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code", ""),
            reference=data.get("reference", reference),
        )

    def verify(self, reference: str) -> GatewayVerification:
        data = self._request("GET", f"/transaction/verify/{reference}", "verification")
        return GatewayVerification.from_payload(data)

    def validate_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        return verify_signature(raw_body, signature, self.secret_key)
