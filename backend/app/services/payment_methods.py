"""Billing-key management: issue, save, remove and revoke stored payment methods."""

import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing import gateway
from app.billing.exceptions import GatewayError, NotFoundError, ValidationError
from app.models.notification import NotificationType
from app.models.payment_method import PaymentMethod
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.user import User
from app.services import notification_service, subscription_lifecycle

logger = logging.getLogger(__name__)

_RENEWABLE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value)


@dataclass
class SavedBillingKey:
    payment_method: PaymentMethod
    subscription: Subscription | None


def new_billing_key_ref() -> str:
    """Client-side reference the gateway issues the billing key under."""
    return f"bk_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


async def get_active(db: AsyncSession, user_id: uuid.UUID) -> PaymentMethod | None:
    result = await db.execute(
        select(PaymentMethod).where(
            PaymentMethod.user_id == user_id,
            PaymentMethod.is_active.is_(True),
        )
    )
    return result.scalars().first()


async def issue_request(db: AsyncSession, user: User) -> tuple[str, dict[str, Any]]:
    """Build the SDK request for issuing a new billing key.

    Raises:
        ValidationError: the user already has an active billing key.
    """
    if await get_active(db, user.id) is not None:
        raise ValidationError(
            "A payment method is already registered. Remove it before adding a new one."
        )
    billing_key_ref = new_billing_key_ref()
    request = gateway.issue_billing_key_request(
        billing_key_ref,
        customer={
            "customerId": str(user.id),
            "fullName": user.name,
            "email": user.email,
            "phoneNumber": user.phone_number,
        },
    )
    logger.info("Prepared billing key issue %s for user %s", billing_key_ref, user.id)
    return billing_key_ref, request


async def save(
    db: AsyncSession,
    user_id: uuid.UUID,
    billing_key: str,
    connect_to_subscription: bool = True,
) -> SavedBillingKey:
    """Verify a freshly issued billing key with the gateway and store it.

    Any previously active key is deactivated. A subscription that was renewing
    on the replaced key moves to the new one; otherwise an ACTIVE or PAST_DUE
    subscription is attached when ``connect_to_subscription`` is set.
    """
    existing = await db.execute(
        select(PaymentMethod.id).where(PaymentMethod.billing_key == billing_key)
    )
    if existing.first() is not None:
        raise ValidationError("This billing key is already registered.")

    try:
        info = await gateway.query_billing_key(billing_key)
    except GatewayError as e:
        logger.warning("Billing key %s could not be verified: %s", billing_key, e.message)
        raise ValidationError("The billing key could not be verified.") from e
    if not info.is_issued:
        raise ValidationError("The billing key is not valid.")

    async with db.begin_nested():
        subscription = await subscription_lifecycle.get_subscription(db, user_id)
        previous = await db.execute(
            select(PaymentMethod).where(
                PaymentMethod.user_id == user_id, PaymentMethod.is_active.is_(True)
            )
        )
        replaced = False
        for old in previous.scalars().all():
            replaced = replaced or (
                subscription is not None and subscription.billing_key_id == old.id
            )
            await _deactivate(db, old)

        payment_method = PaymentMethod(
            user_id=user_id,
            billing_key=info.billing_key,
            is_active=True,
            card_issuer=info.card_issuer,
            masked_number=info.masked_number,
            card_type=info.card_type,
            gateway_data=info.raw,
        )
        db.add(payment_method)
        await db.flush()

        if (
            subscription is not None
            and (connect_to_subscription or replaced)
            and subscription.status in _RENEWABLE_STATUSES
        ):
            await subscription_lifecycle.attach_billing_key(db, subscription, payment_method)
            await notification_service.emit(
                db,
                subscription,
                NotificationType.PAYMENT_SUCCESS,
                "Automatic payment registered",
                "Your plan will renew automatically when the current period ends.",
            )
        else:
            subscription = None

    logger.info("Saved billing key %s for user %s", payment_method.id, user_id)
    return SavedBillingKey(payment_method=payment_method, subscription=subscription)


async def _deactivate(
    db: AsyncSession,
    payment_method: PaymentMethod,
    notice: tuple[str, str] | None = None,
) -> None:
    async with db.begin_nested():
        payment_method.is_active = False
        await db.flush()
        subscription = await subscription_lifecycle.get_subscription(db, payment_method.user_id)
        if subscription is not None and subscription.billing_key_id == payment_method.id:
            await subscription_lifecycle.detach_billing_key(db, payment_method.user_id)
            if notice is not None:
                await notification_service.emit(
                    db, subscription, NotificationType.PAYMENT_FAILED, *notice
                )


async def remove(db: AsyncSession, user_id: uuid.UUID) -> PaymentMethod:
    """Delete the user's active billing key and turn off auto-renewal.

    The gateway delete is best effort; the local soft-delete always happens.
    """
    payment_method = await get_active(db, user_id)
    if payment_method is None:
        raise NotFoundError("No registered payment method.")

    try:
        await gateway.delete_billing_key(payment_method.billing_key)
    except GatewayError as e:
        logger.warning(
            "Gateway delete of billing key %s failed, deactivating locally: %s",
            payment_method.id,
            e.message,
        )

    await _deactivate(db, payment_method)
    logger.info("Removed billing key %s for user %s", payment_method.id, user_id)
    return payment_method


async def handle_gateway_revocation(db: AsyncSession, billing_key: str) -> PaymentMethod | None:
    """Apply a gateway-confirmed billing-key deletion. Unknown or inactive keys are ignored."""
    result = await db.execute(
        select(PaymentMethod).where(PaymentMethod.billing_key == billing_key)
    )
    payment_method = result.scalar_one_or_none()
    if payment_method is None or not payment_method.is_active:
        logger.info("Revocation for unknown or inactive billing key %s ignored", billing_key)
        return payment_method

    await _deactivate(
        db,
        payment_method,
        notice=(
            "Payment method revoked",
            "Your stored payment method was revoked. Register a new one to keep auto-renewal.",
        ),
    )
    logger.info("Billing key %s revoked by gateway", payment_method.id)
    return payment_method
