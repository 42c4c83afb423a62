"""Payment record store: creation with idempotency keys and guarded status transitions."""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.clock import utcnow
from app.billing.exceptions import DuplicateKey, InvalidTransition, NotFoundError
from app.config import settings
from app.models.payment import TERMINAL_STATUSES, Payment, PaymentPurpose, PaymentStatus

logger = logging.getLogger(__name__)

# Allowed moves out of non-terminal statuses
_ALLOWED: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELED}
    ),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PAID, PaymentStatus.CANCELED}),
}

# Fields a transition may enrich
_ENRICHABLE = ("method", "receipt_url", "fail_reason", "gateway_transaction_id", "gateway_data")


async def create(
    db: AsyncSession,
    payment_id: str,
    user_id: uuid.UUID,
    amount: int,
    purpose: PaymentPurpose,
    order_name: str,
    method: str | None = None,
    subscription_id: uuid.UUID | None = None,
    target_tier: str | None = None,
    credit_amount: int | None = None,
    gateway_data: dict | None = None,
) -> Payment:
    """Create a PENDING payment.

    Raises:
        DuplicateKey: if ``payment_id`` already exists.
    """
    existing = await get_or_none(db, payment_id)
    if existing is not None:
        raise DuplicateKey(f"Payment {payment_id} already exists.")

    payment = Payment(
        payment_id=payment_id,
        user_id=user_id,
        amount=amount,
        currency=settings.currency,
        status=PaymentStatus.PENDING.value,
        purpose=PaymentPurpose(purpose).value,
        order_name=order_name,
        method=method,
        subscription_id=subscription_id,
        target_tier=target_tier,
        credit_amount=credit_amount,
        gateway_data=gateway_data,
    )
    try:
        async with db.begin_nested():
            db.add(payment)
            await db.flush()
    except IntegrityError as e:
        raise DuplicateKey(f"Payment {payment_id} already exists.") from e

    logger.info(
        "Created payment %s for user %s: %s %s (%s)",
        payment_id,
        user_id,
        amount,
        settings.currency,
        payment.purpose,
    )
    return payment


async def get_or_none(db: AsyncSession, payment_id: str) -> Payment | None:
    result = await db.execute(select(Payment).where(Payment.payment_id == payment_id))
    return result.scalar_one_or_none()


async def get(db: AsyncSession, payment_id: str) -> Payment:
    """Fetch a payment by its idempotency key.

    Raises:
        NotFoundError: if no such payment exists.
    """
    payment = await get_or_none(db, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found.")
    return payment


def _check_transition(payment: Payment, new_status: PaymentStatus) -> bool:
    """Return True if the move applies, False if it is a same-status no-op."""
    current = PaymentStatus(payment.status)
    if current == new_status:
        return False
    if current in TERMINAL_STATUSES:
        logger.error(
            "Refusing to move terminal payment %s from %s to %s",
            payment.payment_id,
            current.value,
            new_status.value,
        )
        raise InvalidTransition(
            f"Payment {payment.payment_id} is already {current.value}."
        )
    if new_status not in _ALLOWED[current]:
        logger.error(
            "Illegal payment transition %s -> %s for %s",
            current.value,
            new_status.value,
            payment.payment_id,
        )
        raise InvalidTransition(
            f"Payment {payment.payment_id} cannot move from {current.value} to {new_status.value}."
        )
    return True


async def transition_to(
    db: AsyncSession,
    payment_id: str,
    new_status: PaymentStatus,
    payload: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> tuple[Payment, bool]:
    """Move a payment to ``new_status``.

    The write is a compare-and-set on the status read just before, so of two
    racing callers only one observes ``changed=True``; the loser re-reads and
    gets the same-status no-op.

    Returns:
        ``(payment, changed)``: ``changed`` is False when the record was already
        in ``new_status`` and nothing was written.

    Raises:
        NotFoundError: unknown payment.
        InvalidTransition: terminal record asked to change status, or an illegal move.
    """
    new_status = PaymentStatus(new_status)
    payload = payload or {}
    now = now or utcnow()

    for _ in range(2):
        payment = await get(db, payment_id)
        if not _check_transition(payment, new_status):
            return payment, False

        values: dict[str, Any] = {"status": new_status.value, "updated_at": now}
        for key in _ENRICHABLE:
            if payload.get(key) is not None:
                values[key] = payload[key]
        if new_status == PaymentStatus.PAID:
            values["paid_at"] = now
            values["fail_reason"] = None

        result = await db.execute(
            update(Payment)
            .where(Payment.payment_id == payment_id, Payment.status == payment.status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await db.refresh(payment)
            logger.info("Payment %s -> %s", payment_id, new_status.value)
            return payment, True

        # Lost the race; re-read and re-evaluate against the winner's status
        await db.refresh(payment)
        logger.info("Payment %s changed concurrently, re-evaluating", payment_id)

    payment = await get(db, payment_id)
    return payment, False


async def enrich(db: AsyncSession, payment: Payment, **fields: Any) -> Payment:
    """Attach receipt/metadata without touching status."""
    for key, value in fields.items():
        if key not in _ENRICHABLE:
            raise ValueError(f"{key} is not an enrichable payment field")
        if value is not None:
            setattr(payment, key, value)
    await db.flush()
    return payment


async def attach_credit_transaction(
    db: AsyncSession, payment: Payment, credit_transaction_id: uuid.UUID
) -> None:
    payment.credit_transaction_id = credit_transaction_id
    await db.flush()


async def list_for_user(
    db: AsyncSession,
    user_id: uuid.UUID,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[Payment], int]:
    """Payments for a user, newest first, with the total count."""
    total = await db.execute(
        select(func.count()).select_from(Payment).where(Payment.user_id == user_id)
    )
    result = await db.execute(
        select(Payment)
        .where(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total.scalar_one()


async def find_abandoned(
    db: AsyncSession,
    now: datetime | None = None,
    older_than: timedelta | None = None,
) -> list[Payment]:
    """PENDING payments older than the abandonment threshold. Reported, never auto-failed."""
    now = now or utcnow()
    older_than = older_than or timedelta(minutes=settings.pending_payment_timeout_minutes)
    result = await db.execute(
        select(Payment)
        .where(
            Payment.status == PaymentStatus.PENDING.value,
            Payment.created_at < now - older_than,
        )
        .order_by(Payment.created_at)
    )
    return list(result.scalars().all())
