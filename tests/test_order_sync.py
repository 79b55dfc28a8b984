"""
Order intake tests: webhook authentication, dedupe, skip vs fail, partial line resolution
and the end-to-end sale for a single-line order.
"""
import json

import httpx
import pytest
import respx

from app.models import SyncStatus
from app.services.credentials import CredentialStore
from app.services.lightspeed_oauth import TokenLifecycleManager
from app.services.order_sync import OrderIntakeHandler, ProcessedOrderSet, verify_webhook_hmac
from app.services.retry_queue import RetryQueue

from conftest import ACCOUNT_URL, ENCRYPTION_KEY, STORE_DOMAIN, STORE_SECRET, TOKEN_URL, make_client, order_body, sign


@pytest.fixture
def handler(stores, client, queue, audit):
    """Handler with a cached Lightspeed token."""
    return OrderIntakeHandler(stores, client.tokens, client, queue, audit)


@pytest.fixture
def cold_handler(stores, session_factory, audit):
    """Handler before the Lightspeed connection exists: nothing cached in memory."""
    tokens = TokenLifecycleManager(CredentialStore(session_factory, encryption_key=ENCRYPTION_KEY), token_url=TOKEN_URL)
    client = make_client(tokens)
    queue = RetryQueue(session_factory, client, audit)
    return OrderIntakeHandler(stores, tokens, client, queue, audit)


def _mock_item(sku, item_id, avg_cost="4.00"):
    item = {"Item": {"itemID": str(item_id), "avgCost": avg_cost, "description": sku}}
    respx.get(f"{ACCOUNT_URL}/Item.json", params={"systemSku": sku}).mock(return_value=httpx.Response(200, json=item))
    respx.get(f"{ACCOUNT_URL}/Item/{item_id}.json").mock(return_value=httpx.Response(200, json=item))


class TestWebhookHmac:
    def test_valid_signature(self):
        body = b'{"id": 1}'
        assert verify_webhook_hmac(body, sign(body), STORE_SECRET) is True

    def test_tampered_body(self):
        assert verify_webhook_hmac(b'{"id": 2}', sign(b'{"id": 1}'), STORE_SECRET) is False

    @pytest.mark.parametrize("header, secret", [(None, STORE_SECRET), ("abc", None), ("", STORE_SECRET)])
    def test_missing_inputs(self, header, secret):
        assert verify_webhook_hmac(b"{}", header, secret) is False


class TestProcessedOrderSet:
    def test_add_if_new(self):
        seen = ProcessedOrderSet()
        assert seen.add_if_new(1001) is True
        assert seen.add_if_new("1001") is False
        assert 1001 in seen
        assert len(seen) == 1


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_domain(self, handler):
        body = order_body()
        result = await handler.handle(None, body, sign(body))
        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_store_rejected_before_body(self, handler):
        result = await handler.handle("other.example", b"not even json", "x")
        assert result.status_code == 401

    @pytest.mark.asyncio
    async def test_bad_signature(self, handler, queue, audit):
        body = order_body()
        result = await handler.handle(STORE_DOMAIN, body, sign(body, "wrong"))

        assert result.status_code == 401
        assert queue.list() == []
        assert audit.list() == []

    @pytest.mark.asyncio
    async def test_domain_header_is_normalized(self, cold_handler):
        body = order_body()
        result = await cold_handler.handle("  Store-A.Example ", body, sign(body))
        assert result.status_code == 200

    @pytest.mark.asyncio
    async def test_manual_flag_ignored_unless_enabled(self, cold_handler):
        body = order_body()
        result = await cold_handler.handle(STORE_DOMAIN, body, None, manual=True)
        assert result.status_code == 401

        cold_handler.allow_manual = True
        result = await cold_handler.handle(STORE_DOMAIN, body, None, manual=True)
        assert result.status_code == 200

    @pytest.mark.asyncio
    async def test_invalid_json_after_auth(self, handler):
        body = b"{nope"
        result = await handler.handle(STORE_DOMAIN, body, sign(body))
        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_order_id(self, handler):
        body = json.dumps({"line_items": []}).encode()
        result = await handler.handle(STORE_DOMAIN, body, sign(body))
        assert result.status_code == 400


class TestSkipVersusFail:
    @pytest.mark.asyncio
    async def test_no_token_is_skipped_and_queued(self, cold_handler, queue, audit):
        body = order_body()
        result = await cold_handler.handle(STORE_DOMAIN, body, sign(body))

        assert result.status_code == 200
        [entry] = audit.list()
        assert entry.status == SyncStatus.SKIPPED
        assert entry.order_number == "#1001"
        [queued] = queue.list()
        assert queued.attempt_id == entry.attempt_id
        assert queued.retry_count == 0
        assert [(p.sku, p.quantity, p.price) for p in queued.products] == [("ABC", 2, 10.0)]

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_a_noop(self, cold_handler, queue, audit):
        body = order_body()
        first = await cold_handler.handle(STORE_DOMAIN, body, sign(body))
        second = await cold_handler.handle(STORE_DOMAIN, body, sign(body))

        assert first.status_code == 200
        assert second.status_code == 200
        assert len(audit.list()) == 1
        assert len(queue.list()) == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_refresh_failure_mid_processing_is_skipped(self, handler, queue, audit):
        respx.get(f"{ACCOUNT_URL}/Item.json").mock(return_value=httpx.Response(401, json={}))
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(400, json={"error": "invalid_grant"}))
        body = order_body()

        result = await handler.handle(STORE_DOMAIN, body, sign(body))

        assert result.status_code == 200
        assert audit.list()[0].status == SyncStatus.SKIPPED
        assert len(queue.list()) == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_sale_failure_is_queued_and_returns_500(self, handler, queue, audit):
        _mock_item("ABC", 55)
        respx.post(f"{ACCOUNT_URL}/Sale.json").mock(
            return_value=httpx.Response(400, json={"message": "Register closed"})
        )
        body = order_body()

        result = await handler.handle(STORE_DOMAIN, body, sign(body))

        assert result.status_code == 500
        assert result.message == "Internal Server Error"
        [entry] = audit.list()
        assert entry.status == SyncStatus.FAILED
        assert entry.error_details == {"message": "Register closed"}
        assert entry.line_items_count == 1
        [queued] = queue.list()
        assert queued.retry_count == 0
        assert [(line.item_id, line.quantity, line.unit_price) for line in queued.sale_lines] == [(55, 2, 10.0)]

    @pytest.mark.asyncio
    @respx.mock
    async def test_sale_unauthorized_after_refresh_is_failed(self, handler, queue, audit):
        _mock_item("ABC", 55)
        sale_route = respx.post(f"{ACCOUNT_URL}/Sale.json").mock(return_value=httpx.Response(401, json={}))
        token_route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "access-2", "refresh_token": "refresh-2"})
        )
        body = order_body()

        result = await handler.handle(STORE_DOMAIN, body, sign(body))

        assert result.status_code == 500
        assert token_route.call_count == 1
        assert sale_route.call_count == 2
        [entry] = audit.list()
        assert entry.status == SyncStatus.FAILED
        [queued] = queue.list()
        assert queued.retry_count == 0
        assert [line.item_id for line in queued.sale_lines] == [55]

    @pytest.mark.asyncio
    @respx.mock
    async def test_lookup_unauthorized_after_refresh_is_failed(self, handler, queue, audit):
        respx.get(f"{ACCOUNT_URL}/Item.json").mock(return_value=httpx.Response(401, json={}))
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={"access_token": "access-2"}))
        body = order_body()

        result = await handler.handle(STORE_DOMAIN, body, sign(body))

        assert result.status_code == 500
        assert audit.list()[0].status == SyncStatus.FAILED
        [queued] = queue.list()
        assert queued.sale_lines == []
        assert [p.sku for p in queued.products] == ["ABC"]



class TestSync:
    @pytest.mark.asyncio
    @respx.mock
    async def test_single_line_order_becomes_sale(self, handler, queue, audit):
        _mock_item("ABC", 55, avg_cost="4.00")
        sale_route = respx.post(f"{ACCOUNT_URL}/Sale.json").mock(
            return_value=httpx.Response(200, json={"Sale": {"saleID": "777"}})
        )
        body = order_body(1001, [{"sku": "ABC", "quantity": 2, "price": "10.00"}])

        result = await handler.handle(STORE_DOMAIN, body, sign(body))

        assert result.status_code == 200
        payload = json.loads(sale_route.calls.last.request.content)
        assert payload["customerID"] == 42
        assert payload["SaleLines"]["SaleLine"] == [{"itemID": 55, "unitQuantity": 2, "unitPrice": 5.0}]
        assert payload["SalePayments"]["SalePayment"][0]["amount"] == "10.70"
        [entry] = audit.list()
        assert entry.status == SyncStatus.SUCCESS
        assert entry.ls_sale_id == "777"
        assert entry.shopify_order_id == "1001"
        assert queue.list() == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_unresolvable_line_is_dropped(self, handler, audit):
        _mock_item("A", 1)
        _mock_item("C", 3)
        respx.get(f"{ACCOUNT_URL}/Item.json", params={"systemSku": "B"}).mock(
            return_value=httpx.Response(200, json={"@attributes": {"count": "0"}})
        )
        sale_route = respx.post(f"{ACCOUNT_URL}/Sale.json").mock(
            return_value=httpx.Response(200, json={"Sale": {"saleID": "778"}})
        )
        body = order_body(1002, [
            {"sku": "A", "quantity": 1, "price": "5.00"},
            {"sku": "B", "quantity": 1, "price": "5.00"},
            {"sku": "C", "quantity": 1, "price": "5.00"},
        ])

        result = await handler.handle(STORE_DOMAIN, body, sign(body))

        assert result.status_code == 200
        lines = json.loads(sale_route.calls.last.request.content)["SaleLines"]["SaleLine"]
        assert [line["itemID"] for line in lines] == [1, 3]
        assert [p.sku for p in audit.list()[0].products] == ["A", "C"]

    @pytest.mark.asyncio
    async def test_order_without_skus_creates_nothing(self, handler, queue, audit):
        body = order_body(1003, [{"sku": None, "quantity": 1, "price": "5.00"}, {"sku": "  ", "quantity": 1}])

        result = await handler.handle(STORE_DOMAIN, body, sign(body))

        assert result.status_code == 200
        assert "No syncable items" in result.message
        assert audit.list() == []
        assert queue.list() == []
