"""Tests for the PortOne gateway wrapper and webhook signatures (httpx.MockTransport)."""

import json
import time

import httpx
import pytest

from app.billing import gateway
from app.billing.exceptions import AuthenticationError, GatewayError
from app.config import settings
from app.models.payment import PaymentStatus

SECRET = "whsec_dGVzdC13ZWJob29rLXNlY3JldC1rZXk="


@pytest.fixture
def gateway_credentials(monkeypatch):
    monkeypatch.setattr(settings, "portone_api_secret", "test-api-secret")
    monkeypatch.setattr(settings, "portone_store_id", "store-test")


def _mock_client(monkeypatch, handler):
    """Route every gateway call through ``handler``; collect the requests seen."""
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    def _client() -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url="https://gateway.test",
            headers={"Authorization": f"PortOne {settings.portone_api_secret}"},
            transport=httpx.MockTransport(_record),
        )

    monkeypatch.setattr(gateway, "get_gateway_client", _client)
    return seen


class TestQueryPayment:
    """Test payment lookups."""

    @pytest.mark.asyncio
    async def test_paid_payment_is_projected(self, monkeypatch, gateway_credentials):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "id": "pay_1",
                    "status": "PAID",
                    "amount": {"total": 7900},
                    "method": {"type": "PaymentMethodCard"},
                    "receiptUrl": "https://receipt.test/1",
                    "transactionId": "tx-1",
                },
            )

        seen = _mock_client(monkeypatch, handler)
        result = await gateway.query_payment("pay_1")

        assert result.status == PaymentStatus.PAID
        assert result.amount_total == 7900
        assert result.receipt_url == "https://receipt.test/1"
        assert result.transaction_id == "tx-1"
        assert seen[0].url.path == "/payments/pay_1"
        assert seen[0].url.params["storeId"] == "store-test"

    @pytest.mark.asyncio
    async def test_unknown_status_maps_to_pending(self, monkeypatch, gateway_credentials):
        _mock_client(monkeypatch, lambda r: httpx.Response(200, json={"status": "SOMETHING_NEW"}))
        result = await gateway.query_payment("pay_2")
        assert result.status == PaymentStatus.PENDING
        assert result.gateway_status == "SOMETHING_NEW"

    @pytest.mark.asyncio
    async def test_failure_reason_is_extracted(self, monkeypatch, gateway_credentials):
        _mock_client(
            monkeypatch,
            lambda r: httpx.Response(200, json={"status": "FAILED", "failure": {"reason": "Card declined"}}),
        )
        result = await gateway.query_payment("pay_3")
        assert result.status == PaymentStatus.FAILED
        assert result.fail_reason == "Card declined"

    @pytest.mark.asyncio
    async def test_error_status_raises_gateway_error(self, monkeypatch, gateway_credentials):
        _mock_client(monkeypatch, lambda r: httpx.Response(404, json={"type": "PAYMENT_NOT_FOUND"}))
        with pytest.raises(GatewayError) as exc_info:
            await gateway.query_payment("missing")
        assert exc_info.value.gateway_status == 404

    @pytest.mark.asyncio
    async def test_transport_error_raises_gateway_error(self, monkeypatch, gateway_credentials):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        _mock_client(monkeypatch, handler)
        with pytest.raises(GatewayError, match="could not be reached"):
            await gateway.query_payment("pay_4")

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_without_network(self, monkeypatch):
        monkeypatch.setattr(settings, "portone_api_secret", "")
        seen = _mock_client(monkeypatch, lambda r: httpx.Response(200, json={}))
        with pytest.raises(GatewayError, match="not configured"):
            await gateway.query_payment("pay_5")
        assert seen == []


class TestBillingKeys:
    """Test billing-key lookup, charge and delete."""

    @pytest.mark.asyncio
    async def test_card_billing_key(self, monkeypatch, gateway_credentials):
        body = {
            "billingKey": "bk-1",
            "status": "ISSUED",
            "methods": [{"card": {"issuer": {"name": "Shinhan"}, "number": "1234-****-****-5678", "type": "CREDIT"}}],
        }
        _mock_client(monkeypatch, lambda r: httpx.Response(200, json=body))
        info = await gateway.query_billing_key("bk-1")
        assert info.is_issued
        assert info.card_issuer == "Shinhan"
        assert info.masked_number == "1234-****-****-5678"

    @pytest.mark.asyncio
    async def test_easy_pay_billing_key(self, monkeypatch, gateway_credentials):
        _mock_client(
            monkeypatch,
            lambda r: httpx.Response(200, json={"billingKey": "bk-2", "status": "ISSUED", "methods": []}),
        )
        info = await gateway.query_billing_key("bk-2")
        assert info.card_type == "EASY_PAY"

    @pytest.mark.asyncio
    async def test_deleted_billing_key_is_not_issued(self, monkeypatch, gateway_credentials):
        _mock_client(monkeypatch, lambda r: httpx.Response(200, json={"billingKey": "bk-3", "status": "DELETED"}))
        info = await gateway.query_billing_key("bk-3")
        assert not info.is_issued

    @pytest.mark.asyncio
    async def test_charge_posts_to_order_ref(self, monkeypatch, gateway_credentials):
        def handler(request):
            return httpx.Response(
                200,
                json={"payment": {"pgTxId": "pg-9", "paidAt": "2026-03-15T09:00:00Z", "receiptUrl": "https://r"}},
            )

        seen = _mock_client(monkeypatch, handler)
        charge = await gateway.charge_billing_key("bk-1", 7900, "renewal_abc_20260315_0", "Pro monthly", "user-1")

        assert charge.payment_id == "renewal_abc_20260315_0"
        assert charge.transaction_id == "pg-9"
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/payments/renewal_abc_20260315_0/billing-key"
        body = json.loads(request.content)
        assert body["billingKey"] == "bk-1"
        assert body["amount"] == {"total": 7900}

    @pytest.mark.asyncio
    async def test_declined_charge_raises(self, monkeypatch, gateway_credentials):
        _mock_client(monkeypatch, lambda r: httpx.Response(400, json={"message": "declined"}))
        with pytest.raises(GatewayError):
            await gateway.charge_billing_key("bk-1", 7900, "renewal_x", "Pro monthly", "user-1")

    @pytest.mark.asyncio
    async def test_delete_billing_key(self, monkeypatch, gateway_credentials):
        seen = _mock_client(monkeypatch, lambda r: httpx.Response(200, json={}))
        await gateway.delete_billing_key("bk-1")
        assert seen[0].method == "DELETE"
        assert seen[0].url.path == "/billing-keys/bk-1"


class TestPaymentIntent:
    """The SDK request objects are built without network access."""

    def test_intent_carries_payment_fields(self, monkeypatch):
        monkeypatch.setattr(settings, "portone_store_id", "store-test")
        intent = gateway.create_payment_intent(
            payment_id="pay_1",
            order_name="Pro plan",
            amount=7900,
            customer={"customerId": "u1", "fullName": "Test", "phoneNumber": None},
            pay_method="CARD",
        )
        assert intent["storeId"] == "store-test"
        assert intent["totalAmount"] == 7900
        assert intent["currency"] == settings.currency
        assert "phoneNumber" not in intent["customer"]

    def test_billing_key_request_uses_ref(self):
        request = gateway.issue_billing_key_request("bk_ref", customer={"customerId": "u1"})
        assert request["billingKeyId"] == "bk_ref"


class TestWebhookSignature:
    """Timestamped HMAC verification fails closed."""

    def _headers(self, body: bytes, timestamp: int | None = None, secret: str = SECRET) -> dict[str, str]:
        ts = str(timestamp if timestamp is not None else int(time.time()))
        return {
            "webhook-id": "msg_1",
            "webhook-timestamp": ts,
            "webhook-signature": gateway.sign_webhook(secret, "msg_1", ts, body),
        }

    def test_valid_signature_passes(self):
        body = b'{"type":"Transaction.Paid"}'
        gateway.verify_webhook_signature(self._headers(body), body, SECRET)

    def test_header_names_are_case_insensitive(self):
        body = b"{}"
        headers = {k.title(): v for k, v in self._headers(body).items()}
        gateway.verify_webhook_signature(headers, body, SECRET)

    def test_one_of_several_signatures_may_match(self):
        body = b"{}"
        headers = self._headers(body)
        headers["webhook-signature"] = "v1,bm90LXRoaXMtb25l " + headers["webhook-signature"]
        gateway.verify_webhook_signature(headers, body, SECRET)

    def test_missing_headers_is_401(self):
        with pytest.raises(AuthenticationError) as exc_info:
            gateway.verify_webhook_signature({}, b"{}", SECRET)
        assert exc_info.value.status_code == 401

    def test_tampered_body_is_403(self):
        headers = self._headers(b'{"amount":1}')
        with pytest.raises(AuthenticationError) as exc_info:
            gateway.verify_webhook_signature(headers, b'{"amount":1000}', SECRET)
        assert exc_info.value.status_code == 403

    def test_wrong_secret_is_403(self):
        body = b"{}"
        headers = self._headers(body, secret="whsec_b3RoZXItc2VjcmV0")
        with pytest.raises(AuthenticationError):
            gateway.verify_webhook_signature(headers, body, SECRET)

    def test_stale_timestamp_is_403(self):
        body = b"{}"
        headers = self._headers(body, timestamp=int(time.time()) - 3600)
        with pytest.raises(AuthenticationError) as exc_info:
            gateway.verify_webhook_signature(headers, body, SECRET, tolerance_seconds=300)
        assert exc_info.value.status_code == 403

    def test_non_numeric_timestamp_is_403(self):
        headers = {"webhook-id": "m", "webhook-timestamp": "yesterday", "webhook-signature": "v1,x"}
        with pytest.raises(AuthenticationError) as exc_info:
            gateway.verify_webhook_signature(headers, b"{}", SECRET)
        assert exc_info.value.status_code == 403

    def test_malformed_secret_raises_value_error(self):
        body = b"{}"
        with pytest.raises(ValueError, match="not valid base64"):
            gateway.verify_webhook_signature(self._headers(body), body, "whsec_!!!not-base64")
