"""Credit ledger service: append-only grants/consumption and derived balances.

The balance is never stored. It is always the sum of every entry whose
``expires_at`` is null or still in the future. Consumption entries point at
the grant they draw from and share its expiry, so a grant and everything
consumed from it leave the live balance together.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.clock import utcnow
from app.billing.exceptions import InsufficientBalance, InvalidAmount, ValidationError
from app.config import settings
from app.models.credit_transaction import PERMANENT_SOURCES, CreditSourceType, CreditTransaction
from app.models.user import User

logger = logging.getLogger(__name__)

EXPIRING_WINDOW_DAYS = 7


@dataclass(frozen=True)
class UsageBreakdown:
    """How much of a consumption came from one grant."""

    grant_id: uuid.UUID
    source_type: CreditSourceType
    amount: int
    expires_at: datetime | None


@dataclass(frozen=True)
class ConsumeResult:
    consumed: int
    remaining: int
    entries: list[CreditTransaction]
    breakdown: list[UsageBreakdown]


def _live(now: datetime):
    return or_(CreditTransaction.expires_at.is_(None), CreditTransaction.expires_at > now)


async def grant(
    db: AsyncSession,
    user_id: uuid.UUID,
    source_type: CreditSourceType,
    amount: int,
    description: str,
    expires_in_days: int | None = None,
    now: datetime | None = None,
) -> CreditTransaction:
    """Append a positive grant.

    FREE and PURCHASE grants are permanent by policy: a supplied expiry is
    dropped with a warning.
    """
    if amount <= 0:
        raise InvalidAmount(f"Grant amount must be positive, got {amount}.")

    now = now or utcnow()
    source_type = CreditSourceType(source_type)
    expires_at: datetime | None = None

    if source_type in PERMANENT_SOURCES:
        if expires_in_days is not None:
            logger.warning(
                "Ignoring expiry of %s days for permanent %s grant to user %s",
                expires_in_days,
                source_type.value,
                user_id,
            )
    elif expires_in_days is not None and expires_in_days > 0:
        expires_at = now + timedelta(days=expires_in_days)
    elif source_type == CreditSourceType.SUBSCRIPTION:
        expires_at = now + timedelta(days=settings.subscription_credit_expiry_days)
    else:
        raise ValidationError(f"{source_type.value} grants need a positive expiry in days.")

    entry = CreditTransaction(
        user_id=user_id,
        amount=amount,
        source_type=source_type.value,
        expires_at=expires_at,
        description=description,
        created_at=now,
    )
    db.add(entry)
    await db.flush()
    logger.info(
        "Granted %s %s credits to user %s (expires %s)",
        amount,
        source_type.value,
        user_id,
        expires_at,
    )
    return entry


async def balance(db: AsyncSession, user_id: uuid.UUID, now: datetime | None = None) -> int:
    """Sum of all live entries for the user."""
    now = now or utcnow()
    result = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
            CreditTransaction.user_id == user_id,
            _live(now),
        )
    )
    return int(result.scalar_one())


async def balance_by_source(
    db: AsyncSession, user_id: uuid.UUID, now: datetime | None = None
) -> dict[CreditSourceType, int]:
    """Live balance split by source type."""
    now = now or utcnow()
    result = await db.execute(
        select(CreditTransaction.source_type, func.sum(CreditTransaction.amount))
        .where(CreditTransaction.user_id == user_id, _live(now))
        .group_by(CreditTransaction.source_type)
    )
    totals = {source: 0 for source in CreditSourceType}
    for source_type, total in result.all():
        totals[CreditSourceType(source_type)] = int(total or 0)
    return totals


async def _remaining_by_grant(
    db: AsyncSession, user_id: uuid.UUID, now: datetime
) -> list[tuple[CreditTransaction, int]]:
    """Live grants with a positive remainder, in consumption order.

    Order: soonest ``expires_at`` first, permanent grants last, ties by
    ``created_at`` ascending.
    """
    result = await db.execute(
        select(CreditTransaction).where(CreditTransaction.user_id == user_id, _live(now))
    )
    entries = result.scalars().all()

    drawn: dict[uuid.UUID, int] = defaultdict(int)
    grants: list[CreditTransaction] = []
    for entry in entries:
        if entry.is_grant:
            grants.append(entry)
        elif entry.grant_id is not None:
            drawn[entry.grant_id] += entry.amount

    grants.sort(
        key=lambda g: (
            g.expires_at is None,
            g.expires_at or datetime.max,
            g.created_at,
        )
    )
    remaining = []
    for g in grants:
        left = g.amount + drawn[g.id]
        if left > 0:
            remaining.append((g, left))
    return remaining


async def consume(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    description: str,
    now: datetime | None = None,
) -> ConsumeResult:
    """Consume credits soonest-expiry-first. All or nothing.

    Raises:
        InvalidAmount: if ``amount`` is not positive.
        InsufficientBalance: if the live balance is below ``amount``; nothing is written.
    """
    if amount <= 0:
        raise InvalidAmount(f"Consume amount must be positive, got {amount}.")

    now = now or utcnow()

    # Serialize concurrent consumption for the same user (row lock on PostgreSQL)
    await db.execute(select(User.id).where(User.id == user_id).with_for_update())

    available_grants = await _remaining_by_grant(db, user_id, now)
    available = sum(left for _, left in available_grants)
    if available < amount:
        logger.info(
            "User %s has %s credits, %s requested (%s)", user_id, available, amount, description
        )
        raise InsufficientBalance(required=amount, available=available)

    to_consume = amount
    entries: list[CreditTransaction] = []
    breakdown: list[UsageBreakdown] = []
    for source_grant, left in available_grants:
        if to_consume <= 0:
            break
        take = min(left, to_consume)
        source_type = CreditSourceType(source_grant.source_type)
        entries.append(
            CreditTransaction(
                user_id=user_id,
                amount=-take,
                source_type=source_type.value,
                expires_at=source_grant.expires_at,
                description=f"{description} ({take} {source_type.value} credits)",
                grant_id=source_grant.id,
                created_at=now,
            )
        )
        breakdown.append(
            UsageBreakdown(
                grant_id=source_grant.id,
                source_type=source_type,
                amount=take,
                expires_at=source_grant.expires_at,
            )
        )
        to_consume -= take

    db.add_all(entries)
    await db.flush()

    remaining = available - amount
    logger.info("User %s consumed %s credits, %s remaining", user_id, amount, remaining)
    return ConsumeResult(consumed=amount, remaining=remaining, entries=entries, breakdown=breakdown)


async def expiring_credits(
    db: AsyncSession,
    user_id: uuid.UUID,
    within_days: int = EXPIRING_WINDOW_DAYS,
    now: datetime | None = None,
) -> list[dict]:
    """Unconsumed credits expiring within ``within_days``, grouped by source."""
    now = now or utcnow()
    horizon = now + timedelta(days=within_days)
    grouped: dict[CreditSourceType, dict] = {}
    for source_grant, left in await _remaining_by_grant(db, user_id, now):
        if source_grant.expires_at is None or source_grant.expires_at > horizon:
            continue
        source_type = CreditSourceType(source_grant.source_type)
        bucket = grouped.setdefault(
            source_type,
            {"source_type": source_type, "amount": 0, "expires_at": source_grant.expires_at},
        )
        bucket["amount"] += left
        bucket["expires_at"] = min(bucket["expires_at"], source_grant.expires_at)
    return sorted(grouped.values(), key=lambda b: b["expires_at"])


async def list_transactions(
    db: AsyncSession,
    user_id: uuid.UUID,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[CreditTransaction], int]:
    """Ledger history, newest first, with the total row count."""
    total = await db.execute(
        select(func.count()).select_from(CreditTransaction).where(CreditTransaction.user_id == user_id)
    )
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total.scalar_one()
