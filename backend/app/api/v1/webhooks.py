"""Payment gateway webhook endpoint: receives and processes gateway events.

Every path answers ``{"received": bool}`` with the documented status code and
never lets an exception escape, since the gateway redelivers on any 5xx.
"""

import json
import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db
from app.billing.exceptions import AuthenticationError, InvalidTransition
from app.billing.gateway import verify_webhook_signature
from app.billing.webhooks import (
    handle_billing_key_deleted,
    handle_transaction_cancelled,
    handle_transaction_failed,
    handle_transaction_paid,
)
from app.config import settings
from app.models.payment import PaymentStatus
from app.services import payment_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

# Map event types to handler functions
PAYMENT_EVENT_HANDLERS = {
    "Transaction.Paid": handle_transaction_paid,
    "Transaction.Failed": handle_transaction_failed,
    "Transaction.Cancelled": handle_transaction_cancelled,
}
BILLING_KEY_EVENT_HANDLERS = {
    "BillingKey.Deleted": handle_billing_key_deleted,
}


def _ack(received: bool, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"received": received})


@router.post("/payments")
async def payment_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> JSONResponse:
    """Receive and process payment gateway events."""
    # 1. Read raw body (MUST be raw bytes for signature verification)
    raw_body = await request.body()

    secret = settings.portone_webhook_secret
    if not secret:
        logger.error("Webhook secret is not configured; rejecting delivery")
        return _ack(False, status.HTTP_500_INTERNAL_SERVER_ERROR)

    # 2. Verify signature before touching anything
    try:
        verify_webhook_signature(request.headers, raw_body, secret)
    except AuthenticationError as e:
        logger.warning("Webhook signature verification failed: %s", e.message)
        return _ack(False, e.status_code)
    except ValueError as e:
        logger.error("Webhook secret is misconfigured: %s", e)
        return _ack(False, status.HTTP_500_INTERNAL_SERVER_ERROR)

    try:
        payload = json.loads(raw_body)
    except ValueError:
        logger.warning("Invalid webhook payload")
        return _ack(False, status.HTTP_400_BAD_REQUEST)
    if not isinstance(payload, dict):
        return _ack(False, status.HTTP_400_BAD_REQUEST)

    event_type = payload.get("type")
    data = payload.get("data") or {}
    logger.info("Processing webhook event: %s (paymentId=%s)", event_type, data.get("paymentId"))

    # 3. Dispatch to handler
    try:
        if event_type in PAYMENT_EVENT_HANDLERS:
            payment_id = data.get("paymentId")
            if not payment_id:
                logger.warning("Webhook %s without paymentId", event_type)
                return _ack(False, status.HTTP_400_BAD_REQUEST)

            payment = await payment_store.get_or_none(db, payment_id)
            if payment is None:
                logger.warning("Webhook for unknown payment %s", payment_id)
                return _ack(False, status.HTTP_404_NOT_FOUND)
            if payment.status == PaymentStatus.PAID.value:
                logger.info("Payment %s already paid; webhook acknowledged", payment_id)
                return _ack(True)

            async with db.begin_nested():
                await PAYMENT_EVENT_HANDLERS[event_type](db, payment, data)
        elif event_type in BILLING_KEY_EVENT_HANDLERS:
            async with db.begin_nested():
                await BILLING_KEY_EVENT_HANDLERS[event_type](db, data)
        else:
            logger.debug("Unhandled webhook event type: %s", event_type)
            return _ack(True)

        await db.commit()
    except InvalidTransition as e:
        # Conflicts with an already-final record; redelivery would never succeed
        logger.error("Webhook %s rejected by payment state: %s", event_type, e.message)
        return _ack(True)
    except Exception:
        await db.rollback()
        logger.exception("Error processing webhook event %s", event_type)
        return _ack(False, status.HTTP_500_INTERNAL_SERVER_ERROR)

    return _ack(True)
