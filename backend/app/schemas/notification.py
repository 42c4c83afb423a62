"""Pydantic v2 request/response schemas for notification endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, model_validator


class NotificationResponse(BaseModel):
    id: uuid.UUID
    subscription_id: uuid.UUID
    type: str
    title: str
    message: str
    days_before_expiry: int | None = None
    is_read: bool
    read_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationListResponse(BaseModel):
    items: list[NotificationResponse]
    unread_count: int


class MarkReadRequest(BaseModel):
    """Mark specific notifications, or all of them, as read."""

    notification_ids: list[uuid.UUID] | None = None
    mark_all: bool = False

    @model_validator(mode="after")
    def _require_target(self) -> "MarkReadRequest":
        if not self.mark_all and not self.notification_ids:
            raise ValueError("Provide notification_ids or set mark_all")
        return self


class MarkReadResponse(BaseModel):
    updated: int
    unread_count: int
