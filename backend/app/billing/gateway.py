"""Async PortOne V2 API wrapper: payments, billing keys, webhook signatures.

Every network call is a single attempt with no retry; callers own the retry
policy. Failures surface as :class:`GatewayError`. Only the handful of fields
the billing logic needs are projected into typed objects; the raw response is
kept alongside for audit.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.billing.exceptions import AuthenticationError, GatewayError
from app.config import settings
from app.models.payment import PaymentStatus

logger = logging.getLogger(__name__)

WEBHOOK_ID_HEADER = "webhook-id"
WEBHOOK_TIMESTAMP_HEADER = "webhook-timestamp"
WEBHOOK_SIGNATURE_HEADER = "webhook-signature"

# Gateway payment status -> local payment status
_STATUS_MAP: dict[str, PaymentStatus] = {
    "PAID": PaymentStatus.PAID,
    "PARTIAL_CANCELLED": PaymentStatus.PAID,
    "FAILED": PaymentStatus.FAILED,
    "CANCELLED": PaymentStatus.CANCELED,
    "READY": PaymentStatus.PENDING,
    "PAY_PENDING": PaymentStatus.PENDING,
    "VIRTUAL_ACCOUNT_ISSUED": PaymentStatus.PENDING,
}


@dataclass(frozen=True)
class GatewayPayment:
    """Typed projection of a gateway payment lookup."""

    payment_id: str
    status: PaymentStatus
    gateway_status: str
    amount_total: int | None
    method: str | None
    receipt_url: str | None
    transaction_id: str | None
    fail_reason: str | None
    raw: dict[str, Any] = field(repr=False, default_factory=dict)


@dataclass(frozen=True)
class GatewayBillingKey:
    """Typed projection of a billing-key lookup."""

    billing_key: str
    status: str
    card_issuer: str | None
    masked_number: str | None
    card_type: str | None
    raw: dict[str, Any] = field(repr=False, default_factory=dict)

    @property
    def is_issued(self) -> bool:
        return self.status == "ISSUED"


@dataclass(frozen=True)
class GatewayCharge:
    """Result of a billing-key charge."""

    payment_id: str
    paid_at: str | None
    transaction_id: str | None
    receipt_url: str | None
    raw: dict[str, Any] = field(repr=False, default_factory=dict)


def get_gateway_client() -> httpx.AsyncClient:
    """Create an authenticated HTTP client for the gateway API."""
    return httpx.AsyncClient(
        base_url=settings.portone_api_base_url,
        headers={
            "Authorization": f"PortOne {settings.portone_api_secret}",
            "Content-Type": "application/json",
        },
        timeout=settings.portone_timeout_seconds,
    )


def _require_credentials() -> None:
    if not settings.portone_api_secret or not settings.portone_store_id:
        logger.error("Gateway credentials are not configured")
        raise GatewayError("The payment system is not configured.")


async def _request(method: str, path: str, **kwargs: Any) -> dict[str, Any]:
    """Issue one gateway call and return the decoded JSON body."""
    _require_credentials()
    params = {"storeId": settings.portone_store_id, **kwargs.pop("params", {})}
    try:
        async with get_gateway_client() as client:
            response = await client.request(method, path, params=params, **kwargs)
    except httpx.HTTPError as e:
        logger.warning("Gateway %s %s unreachable: %s", method, path, e)
        raise GatewayError("The payment gateway could not be reached.") from e

    if response.is_error:
        logger.warning(
            "Gateway %s %s failed with %s: %s",
            method,
            path,
            response.status_code,
            response.text,
        )
        raise GatewayError(
            "The payment gateway rejected the request.",
            gateway_status=response.status_code,
            body=response.text,
        )

    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as e:
        raise GatewayError("The payment gateway returned an unreadable response.") from e


def create_payment_intent(
    payment_id: str,
    order_name: str,
    amount: int,
    customer: Mapping[str, Any],
    pay_method: str,
    custom_data: Mapping[str, Any] | None = None,
    channel_key: str | None = None,
) -> dict[str, Any]:
    """Build the request object the client SDK submits to open the payment window.

    No network call: the gateway creates the payment when the customer
    confirms it in the browser.
    """
    return {
        "storeId": settings.portone_store_id,
        "paymentId": payment_id,
        "orderName": order_name,
        "totalAmount": amount,
        "currency": settings.currency,
        "channelKey": channel_key or settings.portone_channel_key,
        "payMethod": pay_method,
        "customer": {k: v for k, v in customer.items() if v is not None},
        "customData": dict(custom_data or {}),
        "redirectUrl": f"{settings.frontend_url}/payments/result",
        "noticeUrls": [f"{settings.frontend_url}/api/v1/webhooks/payments"],
    }


def _parse_payment(payment_id: str, data: dict[str, Any]) -> GatewayPayment:
    gateway_status = str(data.get("status", ""))
    amount = data.get("amount") or {}
    method = data.get("method") or {}
    failure = data.get("failure") or {}
    receipt_url = data.get("receiptUrl") or (data.get("receipt") or {}).get("url")
    return GatewayPayment(
        payment_id=data.get("id", payment_id),
        status=_STATUS_MAP.get(gateway_status, PaymentStatus.PENDING),
        gateway_status=gateway_status,
        amount_total=amount.get("total"),
        method=method.get("type"),
        receipt_url=receipt_url,
        transaction_id=data.get("transactionId"),
        fail_reason=failure.get("reason"),
        raw=data,
    )


async def query_payment(payment_id: str) -> GatewayPayment:
    """Look up the gateway's view of a payment."""
    data = await _request("GET", f"/payments/{payment_id}")
    return _parse_payment(payment_id, data)


def issue_billing_key_request(
    billing_key_ref: str,
    customer: Mapping[str, Any],
) -> dict[str, Any]:
    """Build the request object the client SDK submits to issue a billing key."""
    return {
        "storeId": settings.portone_store_id,
        "billingKeyId": billing_key_ref,
        "channelKey": settings.portone_billing_channel_key or settings.portone_channel_key,
        "customer": {k: v for k, v in customer.items() if v is not None},
        "redirectUrl": f"{settings.frontend_url}/subscription?billingKeyIssued=true",
    }


async def query_billing_key(token_ref: str) -> GatewayBillingKey:
    """Look up a billing key and its masked payment-method metadata."""
    data = await _request("GET", f"/billing-keys/{token_ref}")
    methods = data.get("methods") or []
    card = (methods[0] or {}).get("card") if methods else None
    if card:
        issuer = card.get("issuer")
        if isinstance(issuer, dict):
            issuer = issuer.get("name")
        card_issuer = issuer or "Card"
        masked_number = card.get("number") or "****-****-****-****"
        card_type = card.get("type") or "CREDIT"
    else:
        card_issuer, masked_number, card_type = "Easy pay", "****", "EASY_PAY"
    return GatewayBillingKey(
        billing_key=data.get("billingKey", token_ref),
        status=str(data.get("status", "")),
        card_issuer=card_issuer,
        masked_number=masked_number,
        card_type=card_type,
        raw=data,
    )


async def delete_billing_key(token_ref: str) -> None:
    """Revoke a billing key at the gateway."""
    await _request("DELETE", f"/billing-keys/{token_ref}")
    logger.info("Deleted billing key %s at gateway", token_ref)


async def charge_billing_key(
    token_ref: str,
    amount: int,
    order_ref: str,
    order_name: str,
    customer_id: str,
) -> GatewayCharge:
    """Charge a stored billing key. ``order_ref`` is the idempotency key."""
    logger.info("Charging billing key for order %s (%s %s)", order_ref, amount, settings.currency)
    data = await _request(
        "POST",
        f"/payments/{order_ref}/billing-key",
        json={
            "storeId": settings.portone_store_id,
            "billingKey": token_ref,
            "orderName": order_name,
            "customer": {"id": customer_id},
            "amount": {"total": amount},
            "currency": settings.currency,
        },
    )
    payment = data.get("payment") or {}
    return GatewayCharge(
        payment_id=order_ref,
        paid_at=payment.get("paidAt"),
        transaction_id=payment.get("pgTxId"),
        receipt_url=payment.get("receiptUrl"),
        raw=data,
    )


def _decode_secret(secret: str) -> bytes:
    """Webhook secrets are ``whsec_<base64>``; anything else is used verbatim.

    Raises:
        ValueError: a ``whsec_`` secret whose body is not valid base64.
    """
    if secret.startswith("whsec_"):
        try:
            return base64.b64decode(secret.removeprefix("whsec_"), validate=True)
        except binascii.Error as e:
            raise ValueError("Webhook secret is not valid base64.") from e
    return secret.encode("utf-8")


def sign_webhook(secret: str, webhook_id: str, timestamp: str, raw_body: bytes) -> str:
    """Compute the ``v1,<base64>`` signature for a webhook delivery."""
    signed_content = f"{webhook_id}.{timestamp}.".encode("utf-8") + raw_body
    digest = hmac.new(_decode_secret(secret), signed_content, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode("ascii")


def verify_webhook_signature(
    headers: Mapping[str, str],
    raw_body: bytes,
    secret: str,
    now: float | None = None,
    tolerance_seconds: int | None = None,
) -> None:
    """Verify a timestamped HMAC webhook signature. Fails closed.

    Raises:
        AuthenticationError: 401 when a required header is missing,
            403 when the timestamp is out of tolerance or no signature matches.
        ValueError: the configured secret cannot be decoded.
    """
    normalized = {k.lower(): v for k, v in headers.items()}
    webhook_id = normalized.get(WEBHOOK_ID_HEADER)
    timestamp = normalized.get(WEBHOOK_TIMESTAMP_HEADER)
    signature_header = normalized.get(WEBHOOK_SIGNATURE_HEADER)

    if not webhook_id or not timestamp or not signature_header:
        raise AuthenticationError("Missing webhook signature headers.")

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise AuthenticationError("Invalid webhook timestamp.", status_code=403) from None

    tolerance = tolerance_seconds if tolerance_seconds is not None else settings.webhook_tolerance_seconds
    current = time.time() if now is None else now
    if abs(current - sent_at) > tolerance:
        raise AuthenticationError("Webhook timestamp outside tolerance.", status_code=403)

    expected = sign_webhook(secret, webhook_id, timestamp, raw_body)
    for candidate in signature_header.split():
        if hmac.compare_digest(candidate, expected):
            return
    raise AuthenticationError("Webhook signature mismatch.", status_code=403)
