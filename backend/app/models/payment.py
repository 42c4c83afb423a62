"""Payment model: one row per payment attempt, keyed by an idempotency key."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    REFUNDED = "REFUNDED"


class PaymentPurpose(str, enum.Enum):
    SUBSCRIPTION_UPGRADE = "SUBSCRIPTION_UPGRADE"
    SUBSCRIPTION_RENEWAL = "SUBSCRIPTION_RENEWAL"
    CREDIT_PURCHASE = "CREDIT_PURCHASE"


TERMINAL_STATUSES = frozenset({PaymentStatus.PAID, PaymentStatus.CANCELED, PaymentStatus.REFUNDED})


class Payment(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A payment attempt.

    Once PAID the row only receives receipt/metadata enrichment; the purpose
    side effect (activation or credit grant) is applied exactly once, by
    whichever of verify/webhook wins the PENDING -> PAID transition.
    """

    __tablename__ = "payments"

    # Client-generated idempotency key, also sent to the gateway as its paymentId
    payment_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="KRW")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    purpose: Mapped[str] = mapped_column(String(32), nullable=False)
    method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    order_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Purpose parameters
    target_tier: Mapped[str | None] = mapped_column(String(20), nullable=True)
    credit_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Back-references
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
    )
    credit_transaction_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("credit_transactions.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Gateway outcome
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    receipt_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    fail_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Raw gateway payload snapshot (audit only, never parsed beyond the typed projection)
    gateway_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<Payment(payment_id={self.payment_id!r}, status={self.status}, amount={self.amount})>"
