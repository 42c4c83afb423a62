"""Tests for the append-only credit ledger."""

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.exceptions import InsufficientBalance, InvalidAmount, ValidationError
from app.models.credit_transaction import CreditSourceType, CreditTransaction
from app.models.user import User
from app.services import credit_ledger
from conftest import NOW


async def _entries(db: AsyncSession, user: User) -> list[CreditTransaction]:
    result = await db.execute(select(CreditTransaction).where(CreditTransaction.user_id == user.id))
    return list(result.scalars().all())


class TestGrant:
    """Test credit grants and their expiry policy."""

    @pytest.mark.asyncio
    async def test_purchase_grant_is_permanent(self, db_session, test_user):
        entry = await credit_ledger.grant(
            db_session, test_user.id, CreditSourceType.PURCHASE, 100, "Bought", now=NOW
        )
        assert entry.expires_at is None
        assert await credit_ledger.balance(db_session, test_user.id, NOW) == 100

    @pytest.mark.asyncio
    async def test_permanent_source_ignores_expiry(self, db_session, test_user):
        entry = await credit_ledger.grant(
            db_session, test_user.id, CreditSourceType.FREE, 10, "Welcome", expires_in_days=5, now=NOW
        )
        assert entry.expires_at is None

    @pytest.mark.asyncio
    async def test_subscription_grant_defaults_to_configured_expiry(self, db_session, test_user):
        entry = await credit_ledger.grant(
            db_session, test_user.id, CreditSourceType.SUBSCRIPTION, 300, "Monthly", now=NOW
        )
        assert entry.expires_at == NOW + timedelta(days=30)

    @pytest.mark.asyncio
    async def test_event_grant_requires_expiry(self, db_session, test_user):
        with pytest.raises(ValidationError):
            await credit_ledger.grant(db_session, test_user.id, CreditSourceType.EVENT, 50, "Promo", now=NOW)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5])
    async def test_non_positive_grant_rejected(self, db_session, test_user, amount):
        with pytest.raises(InvalidAmount):
            await credit_ledger.grant(db_session, test_user.id, CreditSourceType.PURCHASE, amount, "x")


class TestBalance:
    """The balance is derived from live entries only."""

    @pytest.mark.asyncio
    async def test_empty_ledger_is_zero(self, db_session, test_user):
        assert await credit_ledger.balance(db_session, test_user.id, NOW) == 0

    @pytest.mark.asyncio
    async def test_expired_grant_leaves_balance(self, db_session, test_user):
        await credit_ledger.grant(
            db_session, test_user.id, CreditSourceType.EVENT, 50, "Promo", expires_in_days=3, now=NOW
        )
        await credit_ledger.grant(db_session, test_user.id, CreditSourceType.PURCHASE, 100, "Bought", now=NOW)

        assert await credit_ledger.balance(db_session, test_user.id, NOW) == 150
        assert await credit_ledger.balance(db_session, test_user.id, NOW + timedelta(days=4)) == 100

    @pytest.mark.asyncio
    async def test_consumption_expires_with_its_grant(self, db_session, test_user):
        """Partially spent grant: grant and its consumption leave together."""
        await credit_ledger.grant(
            db_session, test_user.id, CreditSourceType.EVENT, 50, "Promo", expires_in_days=3, now=NOW
        )
        await credit_ledger.grant(db_session, test_user.id, CreditSourceType.PURCHASE, 100, "Bought", now=NOW)
        await credit_ledger.consume(db_session, test_user.id, 20, "Deck", now=NOW)

        assert await credit_ledger.balance(db_session, test_user.id, NOW) == 130
        # 30 unspent event credits expire; the purchase is untouched
        assert await credit_ledger.balance(db_session, test_user.id, NOW + timedelta(days=4)) == 100

    @pytest.mark.asyncio
    async def test_balance_by_source(self, db_session, test_user):
        await credit_ledger.grant(
            db_session, test_user.id, CreditSourceType.SUBSCRIPTION, 300, "Monthly", now=NOW
        )
        await credit_ledger.grant(db_session, test_user.id, CreditSourceType.PURCHASE, 100, "Bought", now=NOW)
        await credit_ledger.consume(db_session, test_user.id, 50, "Deck", now=NOW)

        totals = await credit_ledger.balance_by_source(db_session, test_user.id, NOW)
        assert totals[CreditSourceType.SUBSCRIPTION] == 250
        assert totals[CreditSourceType.PURCHASE] == 100
        assert totals[CreditSourceType.FREE] == 0
        assert sum(totals.values()) == await credit_ledger.balance(db_session, test_user.id, NOW)


class TestConsume:
    """Consumption order and all-or-nothing behavior."""

    @pytest.mark.asyncio
    async def test_soonest_expiry_first_permanent_last(self, db_session, test_user):
        purchase = await credit_ledger.grant(
            db_session, test_user.id, CreditSourceType.PURCHASE, 100, "Bought", now=NOW
        )
        monthly = await credit_ledger.grant(
            db_session, test_user.id, CreditSourceType.SUBSCRIPTION, 40, "Monthly", expires_in_days=20, now=NOW
        )
        event = await credit_ledger.grant(
            db_session, test_user.id, CreditSourceType.EVENT, 30, "Promo", expires_in_days=5, now=NOW
        )

        result = await credit_ledger.consume(db_session, test_user.id, 90, "Deck", now=NOW)

        assert [(b.grant_id, b.amount) for b in result.breakdown] == [
            (event.id, 30),
            (monthly.id, 40),
            (purchase.id, 20),
        ]
        assert result.remaining == 80
        assert all(e.amount < 0 for e in result.entries)
        assert result.entries[0].expires_at == event.expires_at

    @pytest.mark.asyncio
    async def test_ties_broken_by_creation_time(self, db_session, test_user):
        older = await credit_ledger.grant(
            db_session, test_user.id, CreditSourceType.PURCHASE, 10, "First", now=NOW
        )
        await credit_ledger.grant(
            db_session, test_user.id, CreditSourceType.PURCHASE, 10, "Second", now=NOW + timedelta(minutes=1)
        )
        result = await credit_ledger.consume(db_session, test_user.id, 5, "Deck", now=NOW + timedelta(minutes=2))
        assert result.breakdown[0].grant_id == older.id

    @pytest.mark.asyncio
    async def test_insufficient_balance_writes_nothing(self, db_session, test_user):
        await credit_ledger.grant(db_session, test_user.id, CreditSourceType.PURCHASE, 10, "Bought", now=NOW)

        with pytest.raises(InsufficientBalance) as exc_info:
            await credit_ledger.consume(db_session, test_user.id, 11, "Deck", now=NOW)

        assert exc_info.value.required == 11
        assert exc_info.value.available == 10
        assert len(await _entries(db_session, test_user)) == 1

    @pytest.mark.asyncio
    async def test_expired_credits_cannot_be_spent(self, db_session, test_user):
        await credit_ledger.grant(
            db_session, test_user.id, CreditSourceType.EVENT, 50, "Promo", expires_in_days=1, now=NOW
        )
        with pytest.raises(InsufficientBalance):
            await credit_ledger.consume(db_session, test_user.id, 10, "Deck", now=NOW + timedelta(days=2))

    @pytest.mark.asyncio
    async def test_exact_balance_empties_ledger(self, db_session, test_user):
        await credit_ledger.grant(db_session, test_user.id, CreditSourceType.PURCHASE, 25, "Bought", now=NOW)
        result = await credit_ledger.consume(db_session, test_user.id, 25, "Deck", now=NOW)
        assert result.remaining == 0
        assert await credit_ledger.balance(db_session, test_user.id, NOW) == 0

    @pytest.mark.asyncio
    async def test_non_positive_consume_rejected(self, db_session, test_user):
        with pytest.raises(InvalidAmount):
            await credit_ledger.consume(db_session, test_user.id, 0, "Deck", now=NOW)


class TestExpiringAndHistory:
    """Expiring-soon report and transaction history."""

    @pytest.mark.asyncio
    async def test_expiring_credits_within_window(self, db_session, test_user):
        await credit_ledger.grant(
            db_session, test_user.id, CreditSourceType.EVENT, 50, "Promo", expires_in_days=3, now=NOW
        )
        await credit_ledger.grant(
            db_session, test_user.id, CreditSourceType.SUBSCRIPTION, 300, "Monthly", expires_in_days=20, now=NOW
        )
        await credit_ledger.grant(db_session, test_user.id, CreditSourceType.PURCHASE, 100, "Bought", now=NOW)
        await credit_ledger.consume(db_session, test_user.id, 20, "Deck", now=NOW)

        expiring = await credit_ledger.expiring_credits(db_session, test_user.id, within_days=7, now=NOW)

        assert len(expiring) == 1
        assert expiring[0]["source_type"] == CreditSourceType.EVENT
        assert expiring[0]["amount"] == 30

    @pytest.mark.asyncio
    async def test_history_newest_first(self, db_session, test_user):
        await credit_ledger.grant(db_session, test_user.id, CreditSourceType.PURCHASE, 100, "Bought", now=NOW)
        await credit_ledger.consume(db_session, test_user.id, 10, "Deck", now=NOW + timedelta(hours=1))

        items, total = await credit_ledger.list_transactions(db_session, test_user.id)

        assert total == 2
        assert items[0].amount == -10
        assert items[1].amount == 100
