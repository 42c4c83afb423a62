"""Notification API routes: list and mark read."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_active_user, get_db
from app.models.user import User
from app.schemas.notification import (
    MarkReadRequest,
    MarkReadResponse,
    NotificationListResponse,
    NotificationResponse,
)
from app.services import notification_service

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(20, ge=1, le=notification_service.MAX_LIST_LIMIT),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> NotificationListResponse:
    """Newest notifications first, with the unread count."""
    items = await notification_service.list_for_user(
        db, current_user.id, unread_only=unread_only, limit=limit
    )
    return NotificationListResponse(
        items=[NotificationResponse.model_validate(n) for n in items],
        unread_count=await notification_service.unread_count(db, current_user.id),
    )


@router.patch("", response_model=MarkReadResponse)
async def mark_notifications_read(
    body: MarkReadRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> MarkReadResponse:
    """Mark the given notifications, or all of them, as read."""
    updated = await notification_service.mark_read(
        db,
        current_user.id,
        notification_ids=body.notification_ids,
        mark_all=body.mark_all,
    )
    return MarkReadResponse(
        updated=updated,
        unread_count=await notification_service.unread_count(db, current_user.id),
    )
