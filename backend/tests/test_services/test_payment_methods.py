"""Tests for billing-key management with mocked gateway calls."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from app.billing.exceptions import GatewayError, NotFoundError, ValidationError
from app.billing.gateway import GatewayBillingKey
from app.models.notification import NotificationType, SubscriptionNotification
from app.models.payment_method import PaymentMethod
from app.models.subscription import SubscriptionStatus, SubscriptionTier
from app.services import payment_methods


def _issued(billing_key: str, status: str = "ISSUED") -> GatewayBillingKey:
    return GatewayBillingKey(
        billing_key=billing_key,
        status=status,
        card_issuer="Shinhan",
        masked_number="1234-****-****-5678",
        card_type="CREDIT",
        raw={"billingKey": billing_key, "status": status},
    )


async def _notifications(db_session, user_id) -> list[SubscriptionNotification]:
    result = await db_session.execute(
        select(SubscriptionNotification).where(SubscriptionNotification.user_id == user_id)
    )
    return list(result.scalars().all())


class TestIssueRequest:
    """Preparing a billing-key issue request."""

    @pytest.mark.asyncio
    async def test_returns_ref_and_request(self, db_session, test_user):
        ref, request = await payment_methods.issue_request(db_session, test_user)
        assert ref.startswith("bk_")
        assert request["billingKeyId"] == ref
        assert request["customer"]["customerId"] == str(test_user.id)

    @pytest.mark.asyncio
    async def test_rejected_when_key_exists(self, db_session, test_user, make_subscription):
        await make_subscription(test_user, SubscriptionTier.PRO, billing_key=True)
        with pytest.raises(ValidationError):
            await payment_methods.issue_request(db_session, test_user)


class TestSave:
    """Verifying and storing an issued billing key."""

    @pytest.mark.asyncio
    @patch("app.billing.gateway.query_billing_key", new_callable=AsyncMock)
    async def test_save_attaches_to_active_subscription(self, mock_query, db_session, test_user, make_subscription):
        subscription = await make_subscription(test_user, SubscriptionTier.PRO)
        mock_query.return_value = _issued("bk-new")

        saved = await payment_methods.save(db_session, test_user.id, "bk-new")

        assert saved.payment_method.is_active
        assert saved.payment_method.card_issuer == "Shinhan"
        assert saved.subscription.id == subscription.id
        assert subscription.billing_key_id == saved.payment_method.id
        assert subscription.auto_renewal is True
        assert subscription.next_billing_date == subscription.end_date
        types = [n.type for n in await _notifications(db_session, test_user.id)]
        assert types == [NotificationType.PAYMENT_SUCCESS.value]

    @pytest.mark.asyncio
    @patch("app.billing.gateway.query_billing_key", new_callable=AsyncMock)
    async def test_save_replaces_previous_key(self, mock_query, db_session, test_user, make_subscription):
        subscription = await make_subscription(test_user, SubscriptionTier.PRO, billing_key=True)
        old_key_id = subscription.billing_key_id
        mock_query.return_value = _issued("bk-replacement")

        saved = await payment_methods.save(db_session, test_user.id, "bk-replacement")

        old = await db_session.get(PaymentMethod, old_key_id, populate_existing=True)
        assert old.is_active is False
        assert (await payment_methods.get_active(db_session, test_user.id)).id == saved.payment_method.id

    @pytest.mark.asyncio
    @patch("app.billing.gateway.query_billing_key", new_callable=AsyncMock)
    async def test_replacing_key_keeps_past_due_subscription_renewing(
        self, mock_query, db_session, test_user, make_subscription
    ):
        subscription = await make_subscription(
            test_user, SubscriptionTier.PRO, SubscriptionStatus.PAST_DUE, billing_key=True, failed_payment_count=1
        )
        old_key_id = subscription.billing_key_id
        mock_query.return_value = _issued("bk-new")

        saved = await payment_methods.save(db_session, test_user.id, "bk-new", connect_to_subscription=False)

        old = await db_session.get(PaymentMethod, old_key_id, populate_existing=True)
        assert old.is_active is False
        assert saved.subscription.id == subscription.id
        assert subscription.billing_key_id == saved.payment_method.id
        assert subscription.billing_key.is_active is True
        assert subscription.auto_renewal is True

    @pytest.mark.asyncio
    @patch("app.billing.gateway.query_billing_key", new_callable=AsyncMock)
    async def test_canceled_subscription_not_reattached(self, mock_query, db_session, test_user, make_subscription):
        subscription = await make_subscription(test_user, SubscriptionTier.PRO, SubscriptionStatus.CANCELED)
        mock_query.return_value = _issued("bk-later")

        saved = await payment_methods.save(db_session, test_user.id, "bk-later")

        assert saved.subscription is None
        assert subscription.billing_key_id is None
        assert subscription.auto_renewal is False

    @pytest.mark.asyncio
    @patch("app.billing.gateway.query_billing_key", new_callable=AsyncMock)
    async def test_save_without_subscription(self, mock_query, db_session, test_user):
        mock_query.return_value = _issued("bk-solo")
        saved = await payment_methods.save(db_session, test_user.id, "bk-solo")
        assert saved.subscription is None
        assert await _notifications(db_session, test_user.id) == []

    @pytest.mark.asyncio
    @patch("app.billing.gateway.query_billing_key", new_callable=AsyncMock)
    async def test_unissued_key_rejected(self, mock_query, db_session, test_user):
        mock_query.return_value = _issued("bk-deleted", status="DELETED")
        with pytest.raises(ValidationError):
            await payment_methods.save(db_session, test_user.id, "bk-deleted")

    @pytest.mark.asyncio
    @patch("app.billing.gateway.query_billing_key", new_callable=AsyncMock)
    async def test_gateway_failure_rejected(self, mock_query, db_session, test_user):
        mock_query.side_effect = GatewayError("boom", gateway_status=404)
        with pytest.raises(ValidationError):
            await payment_methods.save(db_session, test_user.id, "bk-unknown")
        assert await payment_methods.get_active(db_session, test_user.id) is None

    @pytest.mark.asyncio
    @patch("app.billing.gateway.query_billing_key", new_callable=AsyncMock)
    async def test_duplicate_key_rejected(self, mock_query, db_session, test_user):
        mock_query.return_value = _issued("bk-dup")
        await payment_methods.save(db_session, test_user.id, "bk-dup")
        with pytest.raises(ValidationError):
            await payment_methods.save(db_session, test_user.id, "bk-dup")


class TestRemoveAndRevoke:
    """User removal and gateway revocation."""

    @pytest.mark.asyncio
    @patch("app.billing.gateway.delete_billing_key", new_callable=AsyncMock)
    async def test_remove_detaches_and_disables_renewal(self, mock_delete, db_session, test_user, make_subscription):
        subscription = await make_subscription(test_user, SubscriptionTier.PRO, billing_key=True)
        payment_method = await payment_methods.remove(db_session, test_user.id)

        mock_delete.assert_awaited_once_with(payment_method.billing_key)
        assert payment_method.is_active is False
        assert subscription.billing_key_id is None
        assert subscription.auto_renewal is False
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert await _notifications(db_session, test_user.id) == []

    @pytest.mark.asyncio
    @patch("app.billing.gateway.delete_billing_key", new_callable=AsyncMock)
    async def test_remove_survives_gateway_failure(self, mock_delete, db_session, test_user, make_subscription):
        await make_subscription(test_user, SubscriptionTier.PRO, billing_key=True)
        mock_delete.side_effect = GatewayError("down")

        payment_method = await payment_methods.remove(db_session, test_user.id)

        assert payment_method.is_active is False

    @pytest.mark.asyncio
    async def test_remove_without_key(self, db_session, test_user):
        with pytest.raises(NotFoundError):
            await payment_methods.remove(db_session, test_user.id)

    @pytest.mark.asyncio
    async def test_revocation_notifies(self, db_session, test_user, make_subscription):
        subscription = await make_subscription(test_user, SubscriptionTier.PRO, billing_key=True)
        key = (await payment_methods.get_active(db_session, test_user.id)).billing_key

        revoked = await payment_methods.handle_gateway_revocation(db_session, key)

        assert revoked.is_active is False
        assert subscription.auto_renewal is False
        notices = await _notifications(db_session, test_user.id)
        assert [n.type for n in notices] == [NotificationType.PAYMENT_FAILED.value]

    @pytest.mark.asyncio
    async def test_revocation_of_unknown_key_ignored(self, db_session):
        assert await payment_methods.handle_gateway_revocation(db_session, "bk-nope") is None
