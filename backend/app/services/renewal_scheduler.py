"""Renewal & retry scheduler: the daily subscription sweep.

One invocation runs four passes in order: expire, warn, renew, retry. Each
subscription is handled inside its own savepoint and committed on its own,
so one failure (a gateway timeout, bad data) is logged, recorded in the run
summary and skipped. Gateway charges happen after the pending renewal
payment is committed, never while a transaction is open on the row.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing import gateway
from app.billing.clock import days_between, utcnow
from app.billing.exceptions import DuplicateKey, GatewayError, SweepInProgress
from app.billing.plans import get_plan
from app.config import settings
from app.models.notification import NotificationType
from app.models.payment import PaymentPurpose, PaymentStatus
from app.models.subscription import Subscription, SubscriptionStatus, SubscriptionTier
from app.models.sweep_run import SweepRun
from app.services import notification_service, payment_store, subscription_lifecycle

logger = logging.getLogger(__name__)

# (days_before_expiry, window start offset, window end offset) in days from now
WARNING_WINDOWS: tuple[tuple[int, int, int], ...] = ((3, 2, 3), (1, 0, 1))


@dataclass
class SweepSummary:
    expired: int = 0
    notifications_created: int = 0
    renewals_attempted: int = 0
    renewals_succeeded: int = 0
    retries_attempted: int = 0
    retries_succeeded: int = 0
    abandoned_payments: int = 0
    errors: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "expired": self.expired,
            "notificationsCreated": self.notifications_created,
            "renewalsAttempted": self.renewals_attempted,
            "renewalsSucceeded": self.renewals_succeeded,
            "retriesAttempted": self.retries_attempted,
            "retriesSucceeded": self.retries_succeeded,
            "abandonedPayments": self.abandoned_payments,
            "errors": list(self.errors),
        }


@dataclass
class _ChargeOutcome:
    attempted: bool = False
    succeeded: bool = False


def _is_due_for_retry(subscription: Subscription, now: datetime) -> bool:
    count = subscription.failed_payment_count
    if subscription.last_payment_attempt is None or not 1 <= count < settings.max_failed_payments:
        return False
    wait_days = settings.retry_schedule_days[count - 1]
    return days_between(subscription.last_payment_attempt, now) >= wait_days


def _expiring_filter():
    """Paid periods that end without a renewal: non-renewing ACTIVE, or CANCELED."""
    return and_(
        Subscription.tier != SubscriptionTier.FREE.value,
        Subscription.end_date.is_not(None),
        or_(
            and_(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.auto_renewal.is_(False),
            ),
            Subscription.status == SubscriptionStatus.CANCELED.value,
        ),
    )


async def _ids(db: AsyncSession, *criteria) -> list[uuid.UUID]:
    result = await db.execute(
        select(Subscription.id).where(*criteria).order_by(Subscription.end_date, Subscription.id)
    )
    return list(result.scalars().all())


async def _guarded(
    db: AsyncSession,
    summary: SweepSummary,
    pass_name: str,
    subscription_id: uuid.UUID,
    action: Callable[[Subscription], Awaitable[None]],
) -> None:
    """Run one subscription's action in a savepoint; log and record any failure."""
    try:
        async with db.begin_nested():
            subscription = await db.get(Subscription, subscription_id, populate_existing=True)
            if subscription is None:
                return
            await action(subscription)
    except Exception as e:
        logger.exception("%s pass failed for subscription %s", pass_name, subscription_id)
        summary.errors.append(
            {"pass": pass_name, "subscriptionId": str(subscription_id), "error": str(e)}
        )
        return
    await db.commit()


# --- Pass 1: expire ----------------------------------------------------------


async def expire_pass(db: AsyncSession, summary: SweepSummary, now: datetime) -> None:
    """Downgrade ended periods and past-due subscriptions whose retries ran out."""
    grace = timedelta(days=settings.retry_schedule_days[-1])
    ids = await _ids(
        db,
        or_(
            and_(_expiring_filter(), Subscription.end_date < now),
            and_(
                Subscription.status == SubscriptionStatus.PAST_DUE.value,
                Subscription.failed_payment_count >= settings.max_failed_payments,
                Subscription.last_payment_attempt < now - grace,
            ),
        ),
    )

    async def _expire(subscription: Subscription) -> None:
        outcome = await subscription_lifecycle.expire(db, subscription, now)
        if outcome.applied:
            summary.expired += 1
            summary.notifications_created += len(outcome.notifications)

    for subscription_id in ids:
        await _guarded(db, summary, "expire", subscription_id, _expire)


# --- Pass 2: warn ------------------------------------------------------------


async def warn_pass(db: AsyncSession, summary: SweepSummary, now: datetime) -> None:
    """Send 3-day and 1-day expiry notices, at most once each per billing period."""
    for days_before, start, end in WARNING_WINDOWS:
        ids = await _ids(
            db,
            _expiring_filter(),
            Subscription.end_date >= now + timedelta(days=start),
            Subscription.end_date < now + timedelta(days=end),
        )

        async def _warn(
            subscription: Subscription, days_before: int = days_before, end: int = end
        ) -> None:
            # Earlier periods' notices were sent before this window opened
            window_opened = subscription.end_date - timedelta(days=end)
            if await notification_service.exists(
                db,
                subscription.id,
                NotificationType.EXPIRING_SOON,
                days_before,
                since=window_opened,
            ):
                return
            plan = get_plan(subscription.tier)
            canceled = subscription.status == SubscriptionStatus.CANCELED.value
            when = "tomorrow" if days_before == 1 else f"in {days_before} days"
            title = f"Your plan ends {when}" if canceled else f"Your subscription expires {when}"
            message = (
                f"Your {plan.display_name} plan ends on {subscription.end_date:%Y-%m-%d}. "
                + (
                    "You will move to the Free plan afterwards."
                    if canceled
                    else "Register a payment method to keep your benefits."
                )
            )
            await notification_service.emit(
                db,
                subscription,
                NotificationType.EXPIRING_SOON,
                title,
                message,
                days_before_expiry=days_before,
                now=now,
            )
            summary.notifications_created += 1

        for subscription_id in ids:
            await _guarded(db, summary, "warn", subscription_id, _warn)


# --- Passes 3 & 4: charge ----------------------------------------------------


def renewal_order_ref(subscription: Subscription, now: datetime) -> str:
    """Idempotency key for one charge attempt: per subscription, day and attempt number."""
    return f"renewal_{subscription.id.hex[:12]}_{now:%Y%m%d}_{subscription.failed_payment_count}"


async def _charge(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    now: datetime,
    retry: bool,
    summary: SweepSummary,
) -> _ChargeOutcome:
    """Charge the stored billing key once and feed the result to the lifecycle."""
    outcome = _ChargeOutcome()
    pass_name = "retry" if retry else "renew"

    subscription = await db.get(Subscription, subscription_id, populate_existing=True)
    if subscription is None:
        return outcome
    payment_method = subscription.billing_key
    if payment_method is None or not payment_method.is_active:
        logger.warning("Subscription %s has no active billing key; skipping %s", subscription_id, pass_name)
        return outcome

    plan = get_plan(subscription.tier)
    order_ref = renewal_order_ref(subscription, now)
    try:
        await payment_store.create(
            db,
            payment_id=order_ref,
            user_id=subscription.user_id,
            amount=plan.price_monthly,
            purpose=PaymentPurpose.SUBSCRIPTION_RENEWAL,
            order_name=f"{plan.display_name} monthly subscription",
            subscription_id=subscription.id,
            target_tier=subscription.tier,
        )
    except DuplicateKey:
        logger.info("Charge %s already attempted; skipping", order_ref)
        return outcome
    await db.commit()

    outcome.attempted = True
    charge = None
    reason = None
    try:
        charge = await gateway.charge_billing_key(
            payment_method.billing_key,
            plan.price_monthly,
            order_ref,
            f"{plan.display_name} monthly subscription",
            str(subscription.user_id),
        )
    except GatewayError as e:
        reason = e.message
        logger.warning("%s charge %s for subscription %s failed: %s", pass_name, order_ref, subscription_id, e)

    async def _settle(subscription: Subscription) -> None:
        payment = await payment_store.get(db, order_ref)
        if charge is not None or payment.status == PaymentStatus.PAID.value:
            if charge is not None:
                await payment_store.transition_to(
                    db,
                    order_ref,
                    PaymentStatus.PAID,
                    {
                        "gateway_transaction_id": charge.transaction_id,
                        "receipt_url": charge.receipt_url,
                        "gateway_data": charge.raw,
                    },
                    now,
                )
            result = await subscription_lifecycle.record_charge_success(
                db,
                subscription,
                retry=retry,
                gateway_data=charge.raw if charge is not None else None,
                now=now,
            )
            outcome.succeeded = result.applied
        else:
            await payment_store.transition_to(
                db, order_ref, PaymentStatus.FAILED, {"fail_reason": reason}, now
            )
            result = await subscription_lifecycle.record_charge_failure(
                db, subscription, reason, now
            )
        summary.notifications_created += len(result.notifications)

    await _guarded(db, summary, pass_name, subscription_id, _settle)
    return outcome


async def renew_pass(db: AsyncSession, summary: SweepSummary, now: datetime) -> None:
    """Charge auto-renewing subscriptions whose period has ended."""
    ids = await _ids(
        db,
        Subscription.status == SubscriptionStatus.ACTIVE.value,
        Subscription.auto_renewal.is_(True),
        Subscription.billing_key_id.is_not(None),
        Subscription.end_date <= now,
        Subscription.failed_payment_count < settings.max_failed_payments,
    )
    for subscription_id in ids:
        try:
            outcome = await _charge(db, subscription_id, now, retry=False, summary=summary)
        except Exception as e:
            await db.rollback()
            logger.exception("renew pass failed for subscription %s", subscription_id)
            summary.errors.append(
                {"pass": "renew", "subscriptionId": str(subscription_id), "error": str(e)}
            )
            continue
        summary.renewals_attempted += int(outcome.attempted)
        summary.renewals_succeeded += int(outcome.succeeded)


async def retry_pass(db: AsyncSession, summary: SweepSummary, now: datetime) -> None:
    """Retry failed charges once their back-off interval has elapsed."""
    result = await db.execute(
        select(Subscription).where(
            Subscription.status.in_(
                [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]
            ),
            Subscription.failed_payment_count >= 1,
            Subscription.failed_payment_count < settings.max_failed_payments,
            Subscription.last_payment_attempt.is_not(None),
        )
    )
    due = [sub.id for sub in result.scalars().all() if _is_due_for_retry(sub, now)]
    for subscription_id in due:
        try:
            outcome = await _charge(db, subscription_id, now, retry=True, summary=summary)
        except Exception as e:
            await db.rollback()
            logger.exception("retry pass failed for subscription %s", subscription_id)
            summary.errors.append(
                {"pass": "retry", "subscriptionId": str(subscription_id), "error": str(e)}
            )
            continue
        summary.retries_attempted += int(outcome.attempted)
        summary.retries_succeeded += int(outcome.succeeded)


# --- Sweep -------------------------------------------------------------------


async def _start_run(db: AsyncSession, now: datetime) -> SweepRun:
    cutoff = now - timedelta(minutes=settings.sweep_lock_timeout_minutes)
    result = await db.execute(
        select(SweepRun).where(SweepRun.status == "running").with_for_update()
    )
    for run in result.scalars().all():
        if run.started_at > cutoff:
            raise SweepInProgress(f"A sweep started at {run.started_at:%H:%M:%S} is still running.")
        logger.warning("Marking stale sweep run %s as failed", run.id)
        run.status = "failed"
        run.finished_at = now
        run.errors = [{"error": "Lock timed out before the run finished."}]

    run = SweepRun(started_at=now, status="running")
    db.add(run)
    await db.commit()
    return run


async def run_sweep(db: AsyncSession, now: datetime | None = None) -> SweepSummary:
    """Run all four passes once and record the run.

    Raises:
        SweepInProgress: another run started recently and has not finished.
    """
    now = now or utcnow()
    run = await _start_run(db, now)
    summary = SweepSummary()
    logger.info("Subscription sweep %s started at %s", run.id, now)

    try:
        await expire_pass(db, summary, now)
        await warn_pass(db, summary, now)
        await renew_pass(db, summary, now)
        await retry_pass(db, summary, now)
        summary.abandoned_payments = len(await payment_store.find_abandoned(db, now))
    except Exception as e:
        await db.rollback()
        run = await db.get(SweepRun, run.id, populate_existing=True)
        run.status = "failed"
        run.finished_at = utcnow()
        run.summary = summary.as_dict()
        run.errors = [*summary.errors, {"error": str(e)}]
        await db.commit()
        logger.exception("Subscription sweep %s failed", run.id)
        raise

    run.status = "completed"
    run.finished_at = utcnow()
    run.summary = summary.as_dict()
    run.errors = list(summary.errors)
    await db.commit()

    if summary.abandoned_payments:
        logger.warning(
            "%s pending payments are older than %s minutes",
            summary.abandoned_payments,
            settings.pending_payment_timeout_minutes,
        )
    logger.info("Subscription sweep %s finished: %s", run.id, asdict(summary))
    return summary
