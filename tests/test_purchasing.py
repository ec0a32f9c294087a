"""
Unit tests for purchasing.py

Tests cover:
- Signing account loading (missing, invalid, with/without 0x)
- Task payload parsing and status URL derivation
- Progress step mapping
- PurchaseExecutor end to end against an httpx.MockTransport
  (creation, polling, progress de-duplication, failure, timeout)
- pay_for_service passthrough and task polling
"""

import json
import os
from unittest.mock import patch

import httpx
import pytest
from x402.clients.base import PaymentError

from purchasing import (
    PURCHASE_STARTED,
    ConfigurationError,
    PurchaseError,
    PurchaseExecutor,
    PurchaseTask,
    PurchaseTimeoutError,
    load_signing_account,
    progress_update_for,
    status_url_for,
)

TEST_KEY = "0x" + "11" * 32
TASK_ENDPOINT = "http://tasks.test/tasks/create"


class TaskService:
    """Scripted fulfillment service: one create response, then a list of status bodies."""

    def __init__(self, statuses, create_response=None):
        self.statuses = list(statuses)
        self.create_response = create_response or httpx.Response(200, json={"task_id": "t1"})
        self.created = []
        self.status_calls = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            self.created.append(json.loads(request.content))
            return self.create_response
        self.status_calls += 1
        assert request.url.path == "/tasks/t1"
        body = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(body, httpx.Response):
            return body
        return httpx.Response(200, json=body)


def make_executor(service, notifier, **kwargs):
    transport = httpx.MockTransport(service.handler)
    kwargs.setdefault("private_key", TEST_KEY)
    kwargs.setdefault("max_attempts", 5)
    return PurchaseExecutor(
        TASK_ENDPOINT,
        notifier,
        poll_interval=0,
        payment_client_factory=lambda account, timeout=None: httpx.AsyncClient(transport=transport),
        status_transport=transport,
        **kwargs,
    )


# =============================================================================
# Helpers
# =============================================================================


class TestLoadSigningAccount:
    def test_missing_key(self, clean_env):
        with pytest.raises(ConfigurationError, match="WALLET_PRIVATE_KEY is not set"):
            load_signing_account()

    def test_from_env_without_prefix(self, clean_env):
        with patch.dict(os.environ, {"WALLET_PRIVATE_KEY": "11" * 32}):
            account = load_signing_account()
        assert account.address.startswith("0x")

    def test_explicit_key(self):
        assert load_signing_account(TEST_KEY).address == load_signing_account("11" * 32).address

    def test_invalid_key(self):
        with pytest.raises(ConfigurationError, match="not a valid private key"):
            load_signing_account("0x1234")


class TestStatusUrl:
    def test_replaces_create(self):
        assert status_url_for("http://h/tasks/create", "abc") == "http://h/tasks/abc"

    def test_trailing_slash(self):
        assert status_url_for("http://h/tasks/create/", "abc") == "http://h/tasks/abc"

    def test_without_create(self):
        assert status_url_for("http://h/pay", "abc") == "http://h/pay/abc"


class TestProgressUpdate:
    def test_cart(self):
        assert progress_update_for("Adding item to cart") == "Found the item! Adding it to cart..."

    def test_cart_needs_both_keywords(self):
        assert progress_update_for("Adding shipping address") is None

    def test_checkout(self):
        assert progress_update_for("Proceeding to Checkout") == "Heading to checkout now..."

    def test_submitting(self):
        assert progress_update_for("Submitting order") == "Almost there, submitting the order..."

    def test_no_rules(self):
        assert progress_update_for("Adding item to cart", ()) is None

    def test_non_string_message(self):
        assert progress_update_for(42) is None
        assert progress_update_for(None) is None


class TestPurchaseTask:
    def test_from_payload(self):
        task = PurchaseTask.from_payload("t1", {
            "current_status": "COMPLETED",
            "result_data": {"progress": [{"message": "a"}], "order_details": {"id": 7}},
        })
        assert task.succeeded
        assert task.progress == [{"message": "a"}]
        assert task.order_details == {"id": 7}

    def test_falls_back_to_status(self):
        task = PurchaseTask.from_payload("t1", {"status": "failed", "error_message": "nope"})
        assert task.failed
        assert task.error_message == "nope"

    def test_defaults(self):
        task = PurchaseTask.from_payload("t1", {"result_data": None})
        assert task.status == "pending"
        assert task.progress == []
        assert not task.succeeded and not task.failed


# =============================================================================
# PurchaseExecutor
# =============================================================================


class TestPurchaseProduct:
    @pytest.mark.asyncio
    async def test_success_with_progress(self, notifier):
        step1 = [{"message": "Adding item to cart"}]
        step2 = step1 + [{"message": "Proceeding to checkout"}]
        step3 = step2 + [{"message": "Submitting order"}]
        service = TaskService([
            {"current_status": "running", "result_data": {"progress": step1}},
            {"current_status": "running", "result_data": {"progress": step1}},
            {"current_status": "running", "result_data": {"progress": step2}},
            {"current_status": "completed", "result_data": {"progress": step3, "order_details": "Order #42"}},
        ])
        executor = make_executor(service, notifier)

        result = await executor.purchase_product("https://shop.test/jacket", "Medium", user_handle="+1555")

        assert result["success"] is True
        assert result["data"]["current_status"] == "completed"
        assert service.created == [{
            "task_type": "shopify_order",
            "input_data": {"product_url": "https://shop.test/jacket", "size": "Medium"},
        }]
        assert notifier.texts() == [
            PURCHASE_STARTED,
            "Found the item! Adding it to cart...",
            "Heading to checkout now...",
            "Almost there, submitting the order...",
            "Success! Order placed. Order #42",
        ]
        assert all(handle == "+1555" for handle, _ in notifier.sent)

    @pytest.mark.asyncio
    async def test_success_without_order_details(self, notifier):
        service = TaskService([{"status": "success"}])
        executor = make_executor(service, notifier)

        await executor.purchase_product("https://shop.test/x", user_handle="+1555")

        assert notifier.texts()[-1] == "Success! Order placed. Check email for confirmation."

    @pytest.mark.asyncio
    async def test_failed_task_stops_polling(self, notifier):
        service = TaskService([{"current_status": "failed", "error_message": "Out of stock"}])
        executor = make_executor(service, notifier)

        with pytest.raises(PurchaseError, match="Out of stock"):
            await executor.purchase_product("https://shop.test/x", user_handle="+1555")

        assert service.status_calls == 1
        assert not any(t.startswith("Success") for t in notifier.texts())

    @pytest.mark.asyncio
    async def test_timeout_after_max_attempts(self, notifier):
        service = TaskService([{"current_status": "running"}])
        executor = make_executor(service, notifier, max_attempts=3)

        with pytest.raises(PurchaseTimeoutError, match="3 status checks"):
            await executor.purchase_product("https://shop.test/x", user_handle="+1555")

        assert service.status_calls == 3

    @pytest.mark.asyncio
    async def test_transient_status_errors_are_retried(self, notifier):
        service = TaskService([
            httpx.Response(502, text="bad gateway"),
            httpx.Response(200, text="not json"),
            {"current_status": "completed"},
        ])
        executor = make_executor(service, notifier)

        result = await executor.purchase_product("https://shop.test/x", user_handle="+1555")

        assert result["success"] is True
        assert service.status_calls == 3

    @pytest.mark.asyncio
    async def test_missing_key_fails_before_network(self, notifier, clean_env):
        service = TaskService([{"current_status": "completed"}])
        executor = make_executor(service, notifier, private_key=None)

        with pytest.raises(ConfigurationError):
            await executor.purchase_product("https://shop.test/x", user_handle="+1555")

        assert service.created == []
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_create_rejected(self, notifier):
        service = TaskService([], create_response=httpx.Response(402, text="payment required"))
        executor = make_executor(service, notifier)

        with pytest.raises(PurchaseError, match="402"):
            await executor.purchase_product("https://shop.test/x", user_handle="+1555")
        assert service.status_calls == 0

    @pytest.mark.asyncio
    async def test_create_network_error(self, notifier):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport = httpx.MockTransport(handler)
        executor = PurchaseExecutor(
            TASK_ENDPOINT, notifier, private_key=TEST_KEY, poll_interval=0,
            payment_client_factory=lambda account, timeout=None: httpx.AsyncClient(transport=transport),
        )

        with pytest.raises(PurchaseError, match="Payment/Task failed: connection refused") as exc_info:
            await executor.purchase_product("https://shop.test/x", user_handle="+1555")
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_create_payment_error(self, notifier):
        def handler(request):
            raise PaymentError("insufficient USDC balance")

        transport = httpx.MockTransport(handler)
        executor = PurchaseExecutor(
            TASK_ENDPOINT, notifier, private_key=TEST_KEY, poll_interval=0,
            payment_client_factory=lambda account, timeout=None: httpx.AsyncClient(transport=transport),
        )

        with pytest.raises(PurchaseError, match="insufficient USDC balance"):
            await executor.purchase_product("https://shop.test/x", user_handle="+1555")

    @pytest.mark.asyncio
    async def test_odd_progress_steps_keep_polling(self, notifier):
        steps = [{"message": 42}, {}, {"message": None}, "Proceeding to checkout"]
        service = TaskService([
            {"current_status": "running", "result_data": {"progress": steps}},
            {"current_status": "completed", "result_data": {"progress": steps}},
        ])
        executor = make_executor(service, notifier)

        result = await executor.purchase_product("https://shop.test/x", user_handle="+1555")

        assert result["success"] is True
        assert service.status_calls == 2
        assert notifier.texts().count("Heading to checkout now...") == 1

    @pytest.mark.asyncio
    async def test_missing_task_id(self, notifier):
        service = TaskService([], create_response=httpx.Response(200, json={"ok": True}))
        executor = make_executor(service, notifier)

        with pytest.raises(PurchaseError, match="No task_id"):
            await executor.purchase_product("https://shop.test/x", user_handle="+1555")
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_no_user_handle_means_no_notifications(self, notifier):
        service = TaskService([{"current_status": "completed"}])
        executor = make_executor(service, notifier)

        await executor.purchase_product("https://shop.test/x")

        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_account_is_cached(self, notifier):
        executor = make_executor(TaskService([{}]), notifier)
        assert executor.signing_account() is executor.signing_account()


class TestBookRide:
    @pytest.mark.asyncio
    async def test_book_ride(self, notifier):
        service = TaskService([
            {"current_status": "completed", "result_data": {"progress": [{"message": "Adding to cart"}]}},
        ])
        executor = make_executor(service, notifier)

        await executor.book_ride("1 Main St", "2 Market St", user_handle="+1555")

        assert service.created[0] == {
            "task_type": "uber_ride",
            "input_data": {"from_address": "1 Main St", "to_address": "2 Market St"},
        }
        assert "Found the item! Adding it to cart..." not in notifier.texts()
        assert notifier.texts()[0] == "Ride requested and paid! Finding you a driver..."


class TestPayForService:
    @pytest.mark.asyncio
    async def test_plain_response(self, notifier):
        def handler(request):
            return httpx.Response(200, json={"answer": 42})

        transport = httpx.MockTransport(handler)
        executor = PurchaseExecutor(
            TASK_ENDPOINT, notifier, private_key=TEST_KEY, poll_interval=0,
            payment_client_factory=lambda account, timeout=None: httpx.AsyncClient(transport=transport),
        )

        result = await executor.pay_for_service("http://svc.test/pay", data={"q": 1})

        assert result["success"] is True
        assert result["data"] == {"answer": 42}
        assert result["wallet"] == load_signing_account(TEST_KEY).address

    @pytest.mark.asyncio
    async def test_error_status(self, notifier):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
        executor = PurchaseExecutor(
            TASK_ENDPOINT, notifier, private_key=TEST_KEY, poll_interval=0,
            payment_client_factory=lambda account, timeout=None: httpx.AsyncClient(transport=transport),
        )

        with pytest.raises(PurchaseError, match="500"):
            await executor.pay_for_service("http://svc.test/pay")

    @pytest.mark.asyncio
    async def test_task_response_is_polled(self, notifier):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json={"task_id": "t9"})
            assert request.url.path == "/pay/t9"
            return httpx.Response(200, json={"current_status": "completed", "result_data": {}})

        transport = httpx.MockTransport(handler)
        executor = PurchaseExecutor(
            TASK_ENDPOINT, notifier, private_key=TEST_KEY, poll_interval=0,
            payment_client_factory=lambda account, timeout=None: httpx.AsyncClient(transport=transport),
            status_transport=transport,
        )

        result = await executor.pay_for_service("http://svc.test/pay", user_handle="+1555")

        assert result["data"]["current_status"] == "completed"
        assert notifier.texts() == [PURCHASE_STARTED]
