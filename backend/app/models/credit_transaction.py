"""Credit ledger entry: append-only, never updated or deleted."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.billing.clock import utcnow
from app.database import Base, UUIDPrimaryKeyMixin


class CreditSourceType(str, enum.Enum):
    FREE = "FREE"
    EVENT = "EVENT"
    SUBSCRIPTION = "SUBSCRIPTION"
    PURCHASE = "PURCHASE"


# Grants of these sources never expire
PERMANENT_SOURCES = frozenset({CreditSourceType.FREE, CreditSourceType.PURCHASE})


class CreditTransaction(UUIDPrimaryKeyMixin, Base):
    """A signed ledger entry: positive amounts are grants, negative are consumption.

    A consumption entry names the grant it draws from (``grant_id``) and copies
    that grant's source type and ``expires_at`` so the two leave the live balance
    together when the grant expires.
    """

    __tablename__ = "credit_transactions"
    __table_args__ = (CheckConstraint("amount <> 0", name="ck_credit_transactions_amount_nonzero"),)

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    source_type: Mapped[str] = mapped_column(String(20), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True, index=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    grant_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("credit_transactions.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False, index=True)

    @property
    def is_grant(self) -> bool:
        return self.amount > 0

    def is_live(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, source={self.source_type})>"
        )
