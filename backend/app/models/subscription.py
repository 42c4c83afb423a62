"""Subscription model: one billing state row per user."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class SubscriptionTier(str, enum.Enum):
    FREE = "FREE"
    PRO = "PRO"
    PREMIUM = "PREMIUM"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"
    PAST_DUE = "PAST_DUE"
    PENDING = "PENDING"


# Statuses in which a paid tier's benefits apply
ENTITLED_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED, SubscriptionStatus.PAST_DUE}
)


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Tracks a user's plan tier, billing period and renewal state.

    Invariant: a FREE row is always ACTIVE with no ``end_date``.
    Only ``app.services.subscription_lifecycle`` mutates these rows.
    """

    __tablename__ = "subscriptions"

    # Optimistic concurrency: a flush against a stale row raises StaleDataError
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version}

    # Foreign key: one subscription per user (UNIQUE enforces one-to-one)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    # Plan & status
    tier: Mapped[str] = mapped_column(String(20), nullable=False, default=SubscriptionTier.FREE.value)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value)

    # Billing period (end_date None = non-expiring FREE)
    start_date: Mapped[datetime | None] = mapped_column(nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(nullable=True, index=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(nullable=True)

    # Renewal
    auto_renewal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    billing_key_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("payment_methods.id", ondelete="SET NULL"),
        nullable=True,
    )
    failed_payment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_payment_attempt: Mapped[datetime | None] = mapped_column(nullable=True)

    # Monthly credit allotment already granted for the current billing period
    credits_granted_for_period: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Last raw gateway response for this subscription's renewal charges (audit only)
    gateway_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscription", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821
    billing_key: Mapped["PaymentMethod | None"] = relationship(lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    @property
    def effective_tier(self) -> SubscriptionTier:
        """Tier whose benefits currently apply."""
        if self.status in ENTITLED_STATUSES:
            return SubscriptionTier(self.tier)
        return SubscriptionTier.FREE

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, user_id={self.user_id}, tier={self.tier}, status={self.status})>"
