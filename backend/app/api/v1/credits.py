"""Credit API routes: balance, history and consumption."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_active_user, get_db
from app.models.user import User
from app.schemas.credit import (
    CreditBalanceResponse,
    CreditConsumeRequest,
    CreditConsumeResponse,
    CreditTransactionListResponse,
    CreditTransactionResponse,
    CreditUsage,
    ExpiringCredits,
)
from app.services import credit_ledger

router = APIRouter(prefix="/api/v1/credits", tags=["credits"])


@router.get("", response_model=CreditBalanceResponse)
async def get_balance(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> CreditBalanceResponse:
    """Live credit balance with a per-source split and soon-to-expire credits."""
    by_source = await credit_ledger.balance_by_source(db, current_user.id)
    expiring = await credit_ledger.expiring_credits(db, current_user.id)
    return CreditBalanceResponse(
        balance=sum(by_source.values()),
        by_source={source.value: amount for source, amount in by_source.items()},
        expiring_soon=[
            ExpiringCredits(
                source_type=e["source_type"].value,
                amount=e["amount"],
                expires_at=e["expires_at"],
            )
            for e in expiring
        ],
    )


@router.get("/transactions", response_model=CreditTransactionListResponse)
async def list_transactions(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> CreditTransactionListResponse:
    """Ledger history, newest first."""
    items, total = await credit_ledger.list_transactions(
        db, current_user.id, limit=limit, offset=skip
    )
    return CreditTransactionListResponse(
        items=[CreditTransactionResponse.model_validate(t) for t in items],
        total=total,
    )


@router.post("/consume", response_model=CreditConsumeResponse)
async def consume_credits(
    body: CreditConsumeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> CreditConsumeResponse:
    """Spend credits, soonest-expiring first. Responds 402 when the balance is short."""
    result = await credit_ledger.consume(db, current_user.id, body.amount, body.description)
    return CreditConsumeResponse(
        consumed=result.consumed,
        remaining=result.remaining,
        breakdown=[
            CreditUsage(
                grant_id=b.grant_id,
                source_type=b.source_type.value,
                amount=b.amount,
                expires_at=b.expires_at,
            )
            for b in result.breakdown
        ],
    )
