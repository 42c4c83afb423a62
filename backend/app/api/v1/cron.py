"""Scheduler trigger: runs the daily subscription sweep on demand."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, verify_cron_caller
from app.services import renewal_scheduler

router = APIRouter(prefix="/api/v1/cron", tags=["cron"])


@router.get("/subscriptions", dependencies=[Depends(verify_cron_caller)])
async def run_subscription_sweep(db: AsyncSession = Depends(get_db)) -> dict:
    """Expire, warn, renew and retry subscriptions. Returns the run summary."""
    summary = await renewal_scheduler.run_sweep(db)
    return {"success": True, **summary.as_dict()}
