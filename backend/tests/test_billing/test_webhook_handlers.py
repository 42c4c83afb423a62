"""Tests for gateway webhook handler functions with a mocked payment lookup."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from app.billing.gateway import GatewayPayment
from app.billing.webhooks import (
    _fail_reason,
    handle_billing_key_deleted,
    handle_transaction_cancelled,
    handle_transaction_failed,
    handle_transaction_paid,
)
from app.models.notification import SubscriptionNotification
from app.models.payment import PaymentPurpose, PaymentStatus
from app.models.subscription import SubscriptionStatus, SubscriptionTier
from app.services import credit_ledger, payment_methods, payment_service, subscription_lifecycle
from conftest import NOW


async def _upgrade(db_session, user, payment_id="pay_handler_up01"):
    request = await payment_service.create_payment_request(
        db_session,
        user,
        purpose=PaymentPurpose.SUBSCRIPTION_UPGRADE,
        amount=9900,
        order_name="Premium plan",
        target_tier=SubscriptionTier.PREMIUM,
        payment_id=payment_id,
        now=NOW,
    )
    return request.payment


def _gateway(payment_id: str, status: PaymentStatus, amount: int, fail_reason=None) -> GatewayPayment:
    return GatewayPayment(
        payment_id=payment_id,
        status=status,
        gateway_status=status.value,
        amount_total=amount,
        method="PaymentMethodEasyPay",
        receipt_url=None,
        transaction_id=None,
        fail_reason=fail_reason,
        raw={"id": payment_id},
    )


class TestFailReason:
    def test_explicit_reason(self):
        assert _fail_reason({"failReason": "Limit exceeded"}) == "Limit exceeded"

    def test_nested_failure(self):
        assert _fail_reason({"failure": {"reason": "Card expired"}}) == "Card expired"

    def test_default(self):
        assert _fail_reason({}) == "The payment was declined."


class TestHandleTransactionPaid:
    @pytest.mark.asyncio
    @patch("app.billing.gateway.query_payment", new_callable=AsyncMock)
    async def test_activates_premium_upgrade(self, mock_query, db_session, test_user):
        payment = await _upgrade(db_session, test_user)
        mock_query.return_value = _gateway(payment.payment_id, PaymentStatus.PAID, 9900)

        await handle_transaction_paid(db_session, payment, {"transactionId": "tx-hook-1"}, NOW)

        mock_query.assert_awaited_once_with("pay_handler_up01")
        assert payment.status == PaymentStatus.PAID.value
        assert payment.gateway_transaction_id == "tx-hook-1"
        subscription = await subscription_lifecycle.get_subscription(db_session, test_user.id)
        assert subscription.tier == SubscriptionTier.PREMIUM.value
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert await credit_ledger.balance(db_session, test_user.id, NOW) == 1000

    @pytest.mark.asyncio
    @patch("app.billing.gateway.query_payment", new_callable=AsyncMock)
    async def test_gateway_still_pending_leaves_payment_open(self, mock_query, db_session, test_user):
        payment = await _upgrade(db_session, test_user)
        mock_query.return_value = _gateway(payment.payment_id, PaymentStatus.PENDING, 9900)

        await handle_transaction_paid(db_session, payment, {}, NOW)

        assert payment.status == PaymentStatus.PENDING.value
        subscription = await subscription_lifecycle.get_subscription(db_session, test_user.id)
        assert subscription.status == SubscriptionStatus.PENDING.value


class TestHandleTransactionFailed:
    @pytest.mark.asyncio
    async def test_records_reason_and_releases_upgrade(self, db_session, test_user):
        payment = await _upgrade(db_session, test_user)

        await handle_transaction_failed(
            db_session, payment, {"failure": {"reason": "Insufficient funds"}, "transactionId": "tx-f"}, NOW
        )

        assert payment.status == PaymentStatus.FAILED.value
        assert payment.fail_reason == "Insufficient funds"
        assert payment.gateway_transaction_id == "tx-f"
        subscription = await subscription_lifecycle.get_subscription(db_session, test_user.id)
        assert subscription.tier == SubscriptionTier.FREE.value

    @pytest.mark.asyncio
    async def test_repeated_failure_is_harmless(self, db_session, test_user):
        payment = await _upgrade(db_session, test_user)
        await handle_transaction_failed(db_session, payment, {}, NOW)
        await handle_transaction_failed(db_session, payment, {}, NOW)
        assert payment.status == PaymentStatus.FAILED.value


class TestHandleTransactionCancelled:
    @pytest.mark.asyncio
    async def test_cancels_with_reason(self, db_session, test_user):
        payment = await _upgrade(db_session, test_user)

        await handle_transaction_cancelled(db_session, payment, {"cancelReason": "Window closed"}, NOW)

        assert payment.status == PaymentStatus.CANCELED.value
        assert payment.fail_reason == "Window closed"
        subscription = await subscription_lifecycle.get_subscription(db_session, test_user.id)
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.tier == SubscriptionTier.FREE.value


class TestHandleBillingKeyDeleted:
    @pytest.mark.asyncio
    async def test_missing_key_is_skipped(self, db_session, test_user):
        await handle_billing_key_deleted(db_session, {}, NOW)
        result = await db_session.execute(select(SubscriptionNotification))
        assert result.scalars().all() == []

    @pytest.mark.asyncio
    async def test_known_key_revoked(self, db_session, test_user, make_subscription):
        subscription = await make_subscription(test_user, SubscriptionTier.PRO, billing_key=True)
        key = subscription.billing_key.billing_key

        await handle_billing_key_deleted(db_session, {"billingKey": key}, NOW)

        assert await payment_methods.get_active(db_session, test_user.id) is None
        await db_session.refresh(subscription)
        assert subscription.auto_renewal is False
