"""Gateway webhook event handlers: map transaction events onto payment transitions."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.payment import Payment, PaymentStatus
from app.services import payment_methods, payment_service

logger = logging.getLogger(__name__)


def _fail_reason(data: dict[str, Any]) -> str:
    failure = data.get("failure") or {}
    return data.get("failReason") or failure.get("reason") or "The payment was declined."


async def handle_transaction_paid(
    db: AsyncSession, payment: Payment, data: dict[str, Any], now: datetime | None = None
) -> None:
    """Handle Transaction.Paid: confirm with the gateway, then finalize."""
    result = await payment_service.reconcile_with_gateway(
        db, payment, data.get("transactionId"), now
    )
    logger.info(
        "Webhook paid: payment %s is %s (changed=%s)",
        payment.payment_id,
        result.payment.status,
        result.changed,
    )


async def handle_transaction_failed(
    db: AsyncSession, payment: Payment, data: dict[str, Any], now: datetime | None = None
) -> None:
    """Handle Transaction.Failed: record the decline reason."""
    await payment_service.finalize_payment(
        db,
        payment.payment_id,
        PaymentStatus.FAILED,
        {
            "fail_reason": _fail_reason(data),
            "gateway_transaction_id": data.get("transactionId"),
        },
        now,
    )
    logger.info("Webhook failed: payment %s", payment.payment_id)


async def handle_transaction_cancelled(
    db: AsyncSession, payment: Payment, data: dict[str, Any], now: datetime | None = None
) -> None:
    """Handle Transaction.Cancelled: the customer abandoned the payment window."""
    await payment_service.finalize_payment(
        db,
        payment.payment_id,
        PaymentStatus.CANCELED,
        {"fail_reason": data.get("cancelReason") or "The payment was canceled."},
        now,
    )
    logger.info("Webhook cancelled: payment %s", payment.payment_id)


async def handle_billing_key_deleted(
    db: AsyncSession, data: dict[str, Any], now: datetime | None = None
) -> None:
    """Handle BillingKey.Deleted: detach the key from its subscription."""
    billing_key = data.get("billingKey")
    if not billing_key:
        logger.warning("BillingKey.Deleted event without a billingKey, skipping")
        return
    await payment_methods.handle_gateway_revocation(db, billing_key)
