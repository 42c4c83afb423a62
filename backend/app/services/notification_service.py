"""Notification emitter: user-facing subscription state-change records."""

import logging
import uuid
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.clock import utcnow
from app.models.notification import NotificationType, SubscriptionNotification
from app.models.subscription import Subscription

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 100


async def emit(
    db: AsyncSession,
    subscription: Subscription,
    type: NotificationType,
    title: str,
    message: str,
    days_before_expiry: int | None = None,
    now: datetime | None = None,
) -> SubscriptionNotification:
    """Create a notification for the subscription's owner."""
    notification = SubscriptionNotification(
        subscription_id=subscription.id,
        user_id=subscription.user_id,
        type=NotificationType(type).value,
        title=title,
        message=message,
        days_before_expiry=days_before_expiry,
        created_at=now or utcnow(),
    )
    db.add(notification)
    await db.flush()
    logger.info(
        "Notification %s for subscription %s (user %s)",
        notification.type,
        subscription.id,
        subscription.user_id,
    )
    return notification


async def exists(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    type: NotificationType,
    days_before_expiry: int | None = None,
    since: datetime | None = None,
) -> bool:
    """Whether a notification of this (type, days_before_expiry) was already sent.

    With ``since``, only notifications created at or after it count, so a
    caller can scope the check to the current billing period.
    """
    if days_before_expiry is None:
        days_clause = SubscriptionNotification.days_before_expiry.is_(None)
    else:
        days_clause = SubscriptionNotification.days_before_expiry == days_before_expiry

    query = select(SubscriptionNotification.id).where(
        SubscriptionNotification.subscription_id == subscription_id,
        SubscriptionNotification.type == NotificationType(type).value,
        days_clause,
    )
    if since is not None:
        query = query.where(SubscriptionNotification.created_at >= since)
    result = await db.execute(query.limit(1))
    return result.first() is not None


async def unread_count(db: AsyncSession, user_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(SubscriptionNotification)
        .where(
            SubscriptionNotification.user_id == user_id,
            SubscriptionNotification.is_read.is_(False),
        )
    )
    return result.scalar_one()


async def list_for_user(
    db: AsyncSession,
    user_id: uuid.UUID,
    unread_only: bool = False,
    limit: int = 20,
) -> list[SubscriptionNotification]:
    """Newest-first notifications, capped at ``MAX_LIST_LIMIT``."""
    limit = max(1, min(limit, MAX_LIST_LIMIT))
    query = select(SubscriptionNotification).where(SubscriptionNotification.user_id == user_id)
    if unread_only:
        query = query.where(SubscriptionNotification.is_read.is_(False))
    result = await db.execute(
        query.order_by(SubscriptionNotification.created_at.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def mark_read(
    db: AsyncSession,
    user_id: uuid.UUID,
    notification_ids: Sequence[uuid.UUID] | None = None,
    mark_all: bool = False,
    now: datetime | None = None,
) -> int:
    """Flip unread notifications to read. Only the owner's rows are touched.

    Returns the number of notifications updated.
    """
    query = (
        update(SubscriptionNotification)
        .where(
            SubscriptionNotification.user_id == user_id,
            SubscriptionNotification.is_read.is_(False),
        )
        .values(is_read=True, read_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    if not mark_all:
        if not notification_ids:
            return 0
        query = query.where(SubscriptionNotification.id.in_(list(notification_ids)))
    result = await db.execute(query)
    return result.rowcount
