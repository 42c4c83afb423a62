"""Payment orchestration: request creation, client verification, finalization.

Both the client verify call and the gateway webhook end in
:func:`finalize_payment`. The purpose side effect (subscription activation or
credit grant) runs only for the caller whose status transition actually
changed the record, so any interleaving of verifies and webhook deliveries
applies it exactly once.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing import gateway
from app.billing.clock import utcnow
from app.billing.exceptions import DuplicateKey, NotFoundError, ValidationError
from app.billing.plans import PAID_TIERS, get_bundle_for_credits, get_plan
from app.models.credit_transaction import CreditSourceType, CreditTransaction
from app.models.payment import Payment, PaymentPurpose, PaymentStatus
from app.models.subscription import Subscription, SubscriptionStatus, SubscriptionTier
from app.models.user import User
from app.services import credit_ledger, payment_store, subscription_lifecycle

logger = logging.getLogger(__name__)

DEFAULT_PAY_METHOD = "CARD"


@dataclass
class PaymentRequest:
    payment: Payment
    intent: dict[str, Any]


@dataclass
class FinalizeResult:
    payment: Payment
    changed: bool
    subscription: Subscription | None = None
    credit_transaction: CreditTransaction | None = None


def new_payment_id() -> str:
    return f"pay_{uuid.uuid4().hex}"


def _matches(existing: Payment, user_id: uuid.UUID, purpose: PaymentPurpose, amount: int) -> bool:
    return (
        existing.user_id == user_id
        and existing.purpose == purpose.value
        and existing.amount == amount
    )


async def create_payment_request(
    db: AsyncSession,
    user: User,
    purpose: PaymentPurpose,
    amount: int,
    order_name: str,
    pay_method: str | None = None,
    target_tier: SubscriptionTier | None = None,
    credit_amount: int | None = None,
    payment_id: str | None = None,
    channel_key: str | None = None,
    now: datetime | None = None,
) -> PaymentRequest:
    """Record a PENDING payment and build the gateway intent for the client SDK.

    Upgrades must pay the catalogue price and move the subscription to
    PENDING; credit purchases must match a bundle. A repeated ``payment_id``
    for the same intended payment returns the existing record.
    """
    purpose = PaymentPurpose(purpose)
    if purpose == PaymentPurpose.SUBSCRIPTION_RENEWAL:
        raise ValidationError("Renewal payments are created by the billing scheduler.")
    if amount <= 0:
        raise ValidationError("The payment amount must be greater than zero.")
    if not order_name:
        raise ValidationError("An order name is required.")
    pay_method = pay_method or DEFAULT_PAY_METHOD
    payment_id = payment_id or new_payment_id()

    existing = await payment_store.get_or_none(db, payment_id)
    if existing is not None:
        if not _matches(existing, user.id, purpose, amount):
            raise DuplicateKey(f"Payment {payment_id} already exists.")
        logger.info("Payment request %s repeated, returning existing record", payment_id)
        return PaymentRequest(payment=existing, intent=_intent(existing, user, pay_method, channel_key))

    subscription_id = None
    tier_value = None
    if purpose == PaymentPurpose.SUBSCRIPTION_UPGRADE:
        if target_tier is None:
            raise ValidationError("Choose a plan to upgrade to.")
        try:
            tier = SubscriptionTier(target_tier)
        except ValueError:
            raise ValidationError(f"Unknown plan: {target_tier}.") from None
        if tier not in PAID_TIERS:
            raise ValidationError("Only paid plans can be purchased.")
        plan = get_plan(tier)
        if amount != plan.price_monthly:
            raise ValidationError(
                f"The {plan.display_name} plan costs {plan.price_monthly} KRW, not {amount}."
            )
        subscription = await subscription_lifecycle.request_upgrade(db, user.id, tier, now)
        subscription_id = subscription.id
        tier_value = tier.value
        credit_amount = None
    else:
        if not credit_amount or credit_amount <= 0:
            raise ValidationError("Choose a credit bundle to purchase.")
        bundle = get_bundle_for_credits(credit_amount)
        if bundle is None:
            raise ValidationError(f"{credit_amount} credits is not an available bundle.")
        if amount != bundle.price:
            raise ValidationError(f"{bundle.name} costs {bundle.price} KRW, not {amount}.")

    payment = await payment_store.create(
        db,
        payment_id=payment_id,
        user_id=user.id,
        amount=amount,
        purpose=purpose,
        order_name=order_name,
        method=pay_method,
        subscription_id=subscription_id,
        target_tier=tier_value,
        credit_amount=credit_amount,
    )
    intent = _intent(payment, user, pay_method, channel_key)
    await payment_store.enrich(db, payment, gateway_data={"request": intent})
    return PaymentRequest(payment=payment, intent=intent)


def _intent(
    payment: Payment, user: User, pay_method: str, channel_key: str | None
) -> dict[str, Any]:
    return gateway.create_payment_intent(
        payment_id=payment.payment_id,
        order_name=payment.order_name,
        amount=payment.amount,
        customer={"customerId": str(user.id), "fullName": user.name, "email": user.email},
        pay_method=pay_method,
        custom_data={
            "purpose": payment.purpose,
            "userId": str(user.id),
            "subscriptionId": str(payment.subscription_id) if payment.subscription_id else None,
            "creditAmount": payment.credit_amount,
        },
        channel_key=channel_key,
    )


async def _subscription_for(db: AsyncSession, payment: Payment) -> Subscription | None:
    if payment.subscription_id is not None:
        result = await db.execute(
            select(Subscription).where(Subscription.id == payment.subscription_id)
        )
        subscription = result.scalar_one_or_none()
        if subscription is not None:
            return subscription
    return await subscription_lifecycle.get_subscription(db, payment.user_id)


async def _apply_paid(db: AsyncSession, payment: Payment, result: FinalizeResult, now: datetime) -> None:
    if payment.purpose == PaymentPurpose.SUBSCRIPTION_RENEWAL.value:
        # The renewal sweep extends the period once its charge returns
        return
    if payment.purpose == PaymentPurpose.SUBSCRIPTION_UPGRADE.value:
        subscription = await _subscription_for(db, payment)
        if subscription is None:
            raise NotFoundError("Subscription not found for upgrade payment.")
        if (
            subscription.status == SubscriptionStatus.ACTIVE.value
            and subscription.tier == SubscriptionTier.FREE.value
            and payment.target_tier
        ):
            # The pending upgrade was released (e.g. an earlier failure); reopen it
            logger.warning(
                "Late success for payment %s on a released subscription %s; reopening upgrade",
                payment.payment_id,
                subscription.id,
            )
            await subscription_lifecycle.request_upgrade(
                db, payment.user_id, SubscriptionTier(payment.target_tier), now
            )
        await subscription_lifecycle.activate(db, subscription, payment.target_tier, now)
        result.subscription = subscription
    else:
        credits = payment.credit_amount or 0
        entry = await credit_ledger.grant(
            db,
            payment.user_id,
            CreditSourceType.PURCHASE,
            credits,
            description=f"Purchased {credits} credits",
            now=now,
        )
        await payment_store.attach_credit_transaction(db, payment, entry.id)
        result.credit_transaction = entry


async def _apply_unpaid(
    db: AsyncSession, payment: Payment, result: FinalizeResult, now: datetime
) -> None:
    if payment.purpose != PaymentPurpose.SUBSCRIPTION_UPGRADE.value:
        return
    subscription = await _subscription_for(db, payment)
    if subscription is not None and subscription.status == SubscriptionStatus.PENDING.value:
        await subscription_lifecycle.abandon_upgrade(db, subscription, payment.fail_reason, now)
        result.subscription = subscription


async def finalize_payment(
    db: AsyncSession,
    payment_id: str,
    new_status: PaymentStatus,
    payload: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> FinalizeResult:
    """Move a payment to the gateway-reported status and apply its side effect.

    The status change and the side effect commit or roll back together.
    """
    now = now or utcnow()
    new_status = PaymentStatus(new_status)

    if new_status == PaymentStatus.PENDING:
        payment = await payment_store.get(db, payment_id)
        if payload and payload.get("gateway_data") is not None and not payment.is_terminal:
            await payment_store.enrich(db, payment, gateway_data=payload["gateway_data"])
        return FinalizeResult(payment=payment, changed=False)

    async with db.begin_nested():
        payment, changed = await payment_store.transition_to(db, payment_id, new_status, payload, now)
        result = FinalizeResult(payment=payment, changed=changed)
        if not changed:
            logger.info("Payment %s already %s; no side effect", payment_id, payment.status)
        elif new_status == PaymentStatus.PAID:
            await _apply_paid(db, payment, result, now)
        else:
            await _apply_unpaid(db, payment, result, now)
    return result


def gateway_payload(gateway_payment: gateway.GatewayPayment) -> dict[str, Any]:
    """Store payload from a gateway lookup."""
    return {
        "method": gateway_payment.method,
        "receipt_url": gateway_payment.receipt_url,
        "fail_reason": gateway_payment.fail_reason,
        "gateway_transaction_id": gateway_payment.transaction_id,
        "gateway_data": gateway_payment.raw,
    }


async def verify_payment(
    db: AsyncSession,
    user: User,
    payment_id: str,
    gateway_transaction_id: str | None = None,
    now: datetime | None = None,
) -> FinalizeResult:
    """Confirm a payment against the gateway. Safe to call any number of times."""
    payment = await payment_store.get_or_none(db, payment_id)
    if payment is None or payment.user_id != user.id:
        raise NotFoundError("Payment not found.")
    if payment.is_terminal:
        return FinalizeResult(payment=payment, changed=False)
    return await reconcile_with_gateway(db, payment, gateway_transaction_id, now)


async def reconcile_with_gateway(
    db: AsyncSession,
    payment: Payment,
    gateway_transaction_id: str | None = None,
    now: datetime | None = None,
) -> FinalizeResult:
    """Finalize a payment from the gateway's own record of it.

    A PAID report whose total differs from the stored amount fails the payment.
    """
    payment_id = payment.payment_id
    gateway_payment = await gateway.query_payment(payment_id)
    payload = gateway_payload(gateway_payment)
    if payload["gateway_transaction_id"] is None:
        payload["gateway_transaction_id"] = gateway_transaction_id

    new_status = gateway_payment.status
    if new_status == PaymentStatus.PAID and gateway_payment.amount_total != payment.amount:
        logger.error(
            "Amount mismatch on payment %s: expected %s, gateway reports %s",
            payment_id,
            payment.amount,
            gateway_payment.amount_total,
        )
        new_status = PaymentStatus.FAILED
        payload["fail_reason"] = (
            f"The paid amount ({gateway_payment.amount_total}) does not match "
            f"the order amount ({payment.amount})."
        )

    return await finalize_payment(db, payment_id, new_status, payload, now)
