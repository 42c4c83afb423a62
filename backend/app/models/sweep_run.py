"""Sweep run model: one row per renewal scheduler invocation."""

from datetime import datetime

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from app.billing.clock import utcnow
from app.database import Base, UUIDPrimaryKeyMixin


class SweepRun(UUIDPrimaryKeyMixin, Base):
    """Makes "has a sweep run today" an observable fact."""

    __tablename__ = "sweep_runs"

    started_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False, index=True)
    finished_at: Mapped[datetime | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")  # running, completed, failed
    summary: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    errors: Mapped[list | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<SweepRun(id={self.id}, started_at={self.started_at}, status={self.status})>"
