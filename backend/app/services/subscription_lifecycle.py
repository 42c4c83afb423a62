"""Subscription lifecycle manager: the only writer of subscription rows.

Every status change goes through :func:`apply_event`, which looks the move
up in :mod:`app.billing.state_machine` and runs the transition's side
effects (period dates, failure counters, monthly credits, notifications)
inside one savepoint. A concurrent writer that changed the row first makes
the flush fail the version check; the event is then treated as a no-op.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.billing import state_machine
from app.billing.clock import utcnow
from app.billing.exceptions import InvalidTransition, NotFoundError, ValidationError
from app.billing.plans import PAID_TIERS, get_plan
from app.billing.state_machine import Effect, SubscriptionEvent, Transition
from app.config import settings
from app.models.credit_transaction import CreditSourceType
from app.models.notification import NotificationType
from app.models.payment_method import PaymentMethod
from app.models.subscription import Subscription, SubscriptionStatus, SubscriptionTier
from app.services import credit_ledger, notification_service

logger = logging.getLogger(__name__)


@dataclass
class TransitionOutcome:
    """What :func:`apply_event` did."""

    subscription: Subscription
    event: SubscriptionEvent
    applied: bool
    from_status: SubscriptionStatus
    to_status: SubscriptionStatus | None = None
    notifications: list[NotificationType] = field(default_factory=list)
    credits_granted: int = 0


@dataclass
class _Context:
    now: datetime
    target_tier: SubscriptionTier | None = None
    reason: str | None = None
    gateway_data: dict[str, Any] | None = None
    notifications: list[NotificationType] = field(default_factory=list)
    credits_granted: int = 0


def _period() -> timedelta:
    return timedelta(days=settings.billing_period_days)


def _fmt(moment: datetime | None) -> str:
    return moment.strftime("%Y-%m-%d") if moment else "-"


# --- Reads -------------------------------------------------------------------


async def get_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
    return result.scalar_one_or_none()


async def get_or_create_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription:
    """Get the user's subscription or lazily create a FREE one."""
    subscription = await get_subscription(db, user_id)
    if subscription is not None:
        return subscription

    logger.info("Creating free-tier subscription for user %s", user_id)
    subscription = Subscription(
        user_id=user_id,
        tier=SubscriptionTier.FREE.value,
        status=SubscriptionStatus.ACTIVE.value,
    )
    db.add(subscription)
    await db.flush()
    return subscription


# --- Effects -----------------------------------------------------------------


def _set_target_tier(sub: Subscription, ctx: _Context) -> None:
    if ctx.target_tier is None:
        raise ValidationError("An upgrade needs a target tier.")
    sub.tier = ctx.target_tier.value
    sub.start_date = None
    sub.end_date = None
    sub.next_billing_date = None
    sub.credits_granted_for_period = False


def _start_period(sub: Subscription, ctx: _Context) -> None:
    if ctx.target_tier is not None:
        sub.tier = ctx.target_tier.value
    sub.start_date = ctx.now
    sub.end_date = ctx.now + _period()
    sub.next_billing_date = sub.end_date if sub.auto_renewal else None
    sub.credits_granted_for_period = False


def _extend_period(sub: Subscription, ctx: _Context) -> None:
    # Never extend from a date already in the past
    base = max(sub.end_date or ctx.now, ctx.now)
    sub.end_date = base + _period()
    sub.next_billing_date = sub.end_date if sub.auto_renewal else None
    sub.last_payment_attempt = ctx.now
    sub.credits_granted_for_period = False
    if ctx.gateway_data is not None:
        sub.gateway_data = ctx.gateway_data


def _reset_failures(sub: Subscription, ctx: _Context) -> None:
    sub.failed_payment_count = 0


def _record_failure(sub: Subscription, ctx: _Context) -> None:
    sub.failed_payment_count = min(sub.failed_payment_count + 1, settings.max_failed_payments)
    sub.last_payment_attempt = ctx.now


def _downgrade_to_free(sub: Subscription, ctx: _Context) -> None:
    sub.tier = SubscriptionTier.FREE.value
    sub.start_date = None
    sub.end_date = None
    sub.next_billing_date = None
    sub.auto_renewal = False
    sub.billing_key = None
    sub.failed_payment_count = 0
    sub.last_payment_attempt = None
    sub.credits_granted_for_period = False


async def _grant_monthly_credits(db: AsyncSession, sub: Subscription, ctx: _Context) -> None:
    if sub.credits_granted_for_period:
        logger.info("Monthly credits already granted for subscription %s", sub.id)
        return
    plan = get_plan(sub.tier)
    if plan.monthly_credits <= 0:
        return
    await credit_ledger.grant(
        db,
        sub.user_id,
        CreditSourceType.SUBSCRIPTION,
        plan.monthly_credits,
        description=f"{plan.display_name} monthly credits ({_fmt(ctx.now)})",
        expires_in_days=settings.subscription_credit_expiry_days,
        now=ctx.now,
    )
    sub.credits_granted_for_period = True
    ctx.credits_granted += plan.monthly_credits


async def _notify(
    db: AsyncSession, sub: Subscription, ctx: _Context, effect: Effect, prior_tier: str
) -> None:
    plan = get_plan(sub.tier)
    if effect == Effect.NOTIFY_PAYMENT_SUCCESS:
        type_ = NotificationType.PAYMENT_SUCCESS
        title = "Payment complete"
        message = f"Your {plan.display_name} plan is active until {_fmt(sub.end_date)}."
    elif effect == Effect.NOTIFY_RENEWED:
        type_ = NotificationType.RENEWED
        title = "Subscription renewed"
        message = f"Your {plan.display_name} plan was renewed until {_fmt(sub.end_date)}."
    elif effect == Effect.NOTIFY_EXPIRED:
        type_ = NotificationType.EXPIRED
        title = "Subscription expired"
        message = f"Your {get_plan(prior_tier).display_name} plan has ended. You are now on the Free plan."
    else:
        type_ = NotificationType.PAYMENT_FAILED
        title = "Payment failed"
        reason = f" ({ctx.reason})" if ctx.reason else ""
        if sub.status == SubscriptionStatus.PAST_DUE.value:
            message = f"We could not charge your card{reason}. Your subscription is past due; please update your payment method."
        elif sub.tier == SubscriptionTier.FREE.value:
            message = f"Your payment did not complete{reason}. You remain on the Free plan."
        else:
            message = (
                f"We could not charge your card{reason}. "
                f"Attempt {sub.failed_payment_count} of {settings.max_failed_payments}; we will retry."
            )
    await notification_service.emit(db, sub, type_, title, message, now=ctx.now)
    ctx.notifications.append(type_)


_FIELD_EFFECTS = {
    Effect.SET_TARGET_TIER: _set_target_tier,
    Effect.START_PERIOD: _start_period,
    Effect.EXTEND_PERIOD: _extend_period,
    Effect.RESET_FAILURES: _reset_failures,
    Effect.RECORD_FAILURE: _record_failure,
    Effect.DOWNGRADE_TO_FREE: _downgrade_to_free,
}

_NOTIFY_EFFECTS = frozenset(
    {
        Effect.NOTIFY_PAYMENT_SUCCESS,
        Effect.NOTIFY_RENEWED,
        Effect.NOTIFY_EXPIRED,
        Effect.NOTIFY_PAYMENT_FAILED,
    }
)


async def _run_transition(
    db: AsyncSession, sub: Subscription, transition: Transition, ctx: _Context
) -> None:
    prior_tier = sub.tier
    sub.status = transition.next_status.value
    for effect in transition.effects:
        if effect in _FIELD_EFFECTS:
            _FIELD_EFFECTS[effect](sub, ctx)
        elif effect == Effect.GRANT_MONTHLY_CREDITS:
            await _grant_monthly_credits(db, sub, ctx)
        elif effect in _NOTIFY_EFFECTS:
            await _notify(db, sub, ctx, effect, prior_tier)
        else:
            raise RuntimeError(f"Unhandled subscription effect {effect}")
    await db.flush()


async def apply_event(
    db: AsyncSession,
    subscription: Subscription,
    event: SubscriptionEvent,
    now: datetime | None = None,
    *,
    target_tier: SubscriptionTier | None = None,
    reason: str | None = None,
    gateway_data: dict[str, Any] | None = None,
) -> TransitionOutcome:
    """Apply ``event`` to the subscription's current state.

    Raises:
        InvalidTransition: the table marks the move illegal.
    """
    now = now or utcnow()
    event = SubscriptionEvent(event)
    from_status = SubscriptionStatus(subscription.status)
    outcome = state_machine.lookup(from_status, event)

    if outcome is state_machine.INVALID:
        logger.error(
            "Invalid subscription transition: %s on %s (subscription %s)",
            event.value,
            from_status.value,
            subscription.id,
        )
        raise InvalidTransition(
            f"Cannot apply {event.value} to a {from_status.value} subscription."
        )
    if outcome is state_machine.NOOP:
        logger.info(
            "Ignoring %s for subscription %s in %s",
            event.value,
            subscription.id,
            from_status.value,
        )
        return TransitionOutcome(subscription, event, applied=False, from_status=from_status)

    ctx = _Context(now=now, target_tier=target_tier, reason=reason, gateway_data=gateway_data)
    try:
        async with db.begin_nested():
            await _run_transition(db, subscription, outcome, ctx)
    except StaleDataError:
        # Someone else moved the row first; their state wins
        await db.refresh(subscription)
        logger.info(
            "Subscription %s changed concurrently; dropping %s",
            subscription.id,
            event.value,
        )
        return TransitionOutcome(subscription, event, applied=False, from_status=from_status)

    logger.info(
        "Subscription %s: %s --%s--> %s (tier=%s)",
        subscription.id,
        from_status.value,
        event.value,
        outcome.next_status.value,
        subscription.tier,
    )
    return TransitionOutcome(
        subscription,
        event,
        applied=True,
        from_status=from_status,
        to_status=outcome.next_status,
        notifications=ctx.notifications,
        credits_granted=ctx.credits_granted,
    )


# --- Operations ----------------------------------------------------------------


async def request_upgrade(
    db: AsyncSession,
    user_id: uuid.UUID,
    tier: SubscriptionTier,
    now: datetime | None = None,
) -> Subscription:
    """Move the user's subscription to PENDING on ``tier`` ahead of payment."""
    try:
        tier = SubscriptionTier(tier)
    except ValueError:
        raise ValidationError(f"Unknown plan: {tier}.") from None
    if tier not in PAID_TIERS:
        raise ValidationError("Only paid plans can be purchased.")

    subscription = await get_or_create_subscription(db, user_id)
    status = SubscriptionStatus(subscription.status)
    if status == SubscriptionStatus.ACTIVE and subscription.tier != SubscriptionTier.FREE.value:
        raise ValidationError("You already have an active paid subscription.")
    if status == SubscriptionStatus.CANCELED:
        raise ValidationError("Your canceled plan is still running until its end date.")
    if status == SubscriptionStatus.PAST_DUE:
        raise ValidationError("Please settle the outstanding payment before changing plans.")

    await apply_event(db, subscription, SubscriptionEvent.UPGRADE_REQUESTED, now, target_tier=tier)
    return subscription


async def activate(
    db: AsyncSession,
    subscription: Subscription,
    target_tier: str | None = None,
    now: datetime | None = None,
) -> TransitionOutcome:
    """Start the paid period after a verified upgrade payment."""
    return await apply_event(
        db,
        subscription,
        SubscriptionEvent.PAYMENT_VERIFIED,
        now,
        target_tier=SubscriptionTier(target_tier) if target_tier else None,
    )


async def abandon_upgrade(
    db: AsyncSession,
    subscription: Subscription,
    reason: str | None = None,
    now: datetime | None = None,
) -> TransitionOutcome:
    """Release a PENDING subscription whose upgrade payment failed or was canceled."""
    return await apply_event(
        db, subscription, SubscriptionEvent.PAYMENT_ABANDONED, now, reason=reason
    )


async def expire(
    db: AsyncSession, subscription: Subscription, now: datetime | None = None
) -> TransitionOutcome:
    return await apply_event(db, subscription, SubscriptionEvent.PERIOD_ENDED, now)


async def record_charge_success(
    db: AsyncSession,
    subscription: Subscription,
    retry: bool = False,
    gateway_data: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> TransitionOutcome:
    event = SubscriptionEvent.RETRY_SUCCEEDED if retry else SubscriptionEvent.RENEWAL_SUCCEEDED
    return await apply_event(db, subscription, event, now, gateway_data=gateway_data)


async def record_charge_failure(
    db: AsyncSession,
    subscription: Subscription,
    reason: str | None = None,
    now: datetime | None = None,
) -> TransitionOutcome:
    """Count a declined charge; the final allowed failure moves to PAST_DUE."""
    if subscription.failed_payment_count + 1 >= settings.max_failed_payments:
        event = SubscriptionEvent.CHARGE_FAILED_FINAL
    else:
        event = SubscriptionEvent.CHARGE_FAILED
    return await apply_event(db, subscription, event, now, reason=reason)


async def cancel(
    db: AsyncSession, user_id: uuid.UUID, now: datetime | None = None
) -> Subscription:
    """Stop auto-renewal. The paid period runs until ``end_date``."""
    subscription = await get_subscription(db, user_id)
    if subscription is None or subscription.tier == SubscriptionTier.FREE.value:
        raise ValidationError("There is no paid subscription to cancel.")
    if subscription.status not in (
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.PAST_DUE.value,
    ):
        raise ValidationError(f"A {subscription.status} subscription cannot be canceled.")

    subscription.auto_renewal = False
    subscription.next_billing_date = None
    await apply_event(db, subscription, SubscriptionEvent.CANCEL_REQUESTED, now)
    return subscription


async def attach_billing_key(
    db: AsyncSession, subscription: Subscription, payment_method: PaymentMethod
) -> Subscription:
    """Point the subscription at a billing key and enable auto-renewal."""
    if payment_method.user_id != subscription.user_id:
        raise NotFoundError("Payment method not found.")
    subscription.billing_key = payment_method
    subscription.auto_renewal = True
    if subscription.status == SubscriptionStatus.ACTIVE.value and subscription.end_date is not None:
        subscription.next_billing_date = subscription.end_date
    await db.flush()
    logger.info("Attached billing key %s to subscription %s", payment_method.id, subscription.id)
    return subscription


async def detach_billing_key(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    """Clear the billing key and disable auto-renewal."""
    subscription = await get_subscription(db, user_id)
    if subscription is None or subscription.billing_key_id is None:
        return subscription
    subscription.billing_key = None
    subscription.auto_renewal = False
    subscription.next_billing_date = None
    await db.flush()
    logger.info("Detached billing key from subscription %s", subscription.id)
    return subscription
