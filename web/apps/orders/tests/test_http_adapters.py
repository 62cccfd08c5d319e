"""Unit tests for HTTP adapters to the inventory, payments and tax services.

These tests verify that the HTTP clients map success, business failure and
network error conditions correctly by monkeypatching
``httpx.Client.request`` and asserting the adapter behavior.
"""
from datetime import datetime, timezone
from types import SimpleNamespace

import httpx
import pytest

from apps.orders.domain import Address, TransactionStatus
from apps.orders.http_adapters import (
    HttpInventoryClient,
    HttpPaymentsClient,
    HttpTaxClient,
    _inventory_cb,
    _payments_cb,
    _tax_cb,
)
from exchange.context import correlation


@pytest.fixture(autouse=True)
def closed_breakers():
    for cb in (_inventory_cb, _payments_cb, _tax_cb):
        cb.on_success()
    yield
    for cb in (_inventory_cb, _payments_cb, _tax_cb):
        cb.on_success()


@pytest.fixture
def fake_http(monkeypatch):
    """Answer every request with the queued responses; record what was sent.

    Queue entries are ``(status_code, json_body)`` tuples or exceptions.
    """
    sent = []
    queue = []

    def fake_request(self, method, url, json=None, headers=None, **kw):
        sent.append({"method": method, "url": url, "json": json, "headers": dict(headers or {})})
        outcome = queue.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        status, body = outcome
        return httpx.Response(status, json=body, request=httpx.Request(method, url))

    monkeypatch.setattr(httpx.Client, "request", fake_request, raising=True)

    return SimpleNamespace(requests=sent, respond=lambda *outcomes: queue.extend(outcomes))


def test_inventory_reserve_ok(fake_http):
    """Inventory adapter returns True on 200 with reserved=True."""
    fake_http.respond((200, {"reserved": True}))
    client = HttpInventoryClient(base_url="http://inventory:9001")

    assert client.reserve("work-1", 2) is True
    assert fake_http.requests[0]["method"] == "POST"
    assert fake_http.requests[0]["url"] == "http://inventory:9001/reserve"
    assert fake_http.requests[0]["json"] == {"item_id": "work-1", "quantity": 2}


def test_inventory_reserve_insufficient(fake_http):
    """422 means insufficient stock: False, and not a circuit failure."""
    fake_http.respond((422, {"reserved": False}))

    assert HttpInventoryClient().reserve("work-1", 99) is False
    assert _inventory_cb.state == "CLOSED"
    assert len(fake_http.requests) == 1


def test_inventory_current_version(fake_http):
    fake_http.respond((200, {"version_id": "v3"}), (404, {}))
    client = HttpInventoryClient(base_url="http://x")

    assert client.current_version("work-1") == "v3"
    assert client.current_version("gone") is None
    assert fake_http.requests[0]["method"] == "GET"
    assert fake_http.requests[0]["url"] == "http://x/items/work-1"


def test_inventory_release_tolerates_conflict(fake_http):
    fake_http.respond((409, {"detail": "already released"}))
    HttpInventoryClient(base_url="http://x").release("work-1", 1)
    assert fake_http.requests[0]["url"] == "http://x/release"


def test_payments_hold_ok(fake_http):
    fake_http.respond((200, {"id": "ch_1", "status": "succeeded", "amount_cents": 1000}))

    result = HttpPaymentsClient(base_url="http://x").hold(1000, "USD", "pm_card_visa")

    assert result.status == TransactionStatus.SUCCESS
    assert result.external_id == "ch_1"
    assert result.amount_cents == 1000
    sent = fake_http.requests[0]
    assert sent["url"] == "http://x/holds"
    assert sent["json"] == {"amount_cents": 1000, "currency": "USD", "payment_method": "pm_card_visa"}
    assert sent["headers"]["Idempotency-Key"].startswith("hold:")


def test_payments_decline_is_a_failed_result(fake_http):
    """402 maps onto a failed PaymentResult carrying the decline details."""
    fake_http.respond(
        (402, {"id": "ch_2", "code": "card_declined", "message": "Your card was declined.",
               "decline_code": "insufficient_funds"})
    )

    result = HttpPaymentsClient().hold(1000, "USD", "pm_card_visa")

    assert result.status == TransactionStatus.FAILURE
    assert result.failure_code == "card_declined"
    assert result.failure_message == "Your card was declined."
    assert result.decline_code == "insufficient_funds"
    assert len(fake_http.requests) == 1
    assert _payments_cb.state == "CLOSED"


def test_payments_requires_action(fake_http):
    fake_http.respond((200, {"id": "ch_3", "status": "requires_action", "action": {"client_secret": "s_1"}}))

    result = HttpPaymentsClient().hold(1000, "USD", "pm_card_threeds")

    assert result.status == TransactionStatus.REQUIRES_ACTION
    assert result.external_id == "ch_3"
    assert result.action_data == {"client_secret": "s_1"}


def test_payments_capture_reports_fee_and_is_keyed_by_charge(fake_http):
    fake_http.respond((200, {"id": "ch_1", "status": "succeeded", "amount_cents": 1000, "fee_cents": 59}))

    result = HttpPaymentsClient(base_url="http://x").capture("ch_1")

    assert result.fee_cents == 59
    assert fake_http.requests[0]["url"] == "http://x/charges/ch_1/capture"
    assert fake_http.requests[0]["headers"]["Idempotency-Key"] == "capture:ch_1"


def test_payments_unknown_status_raises(fake_http):
    fake_http.respond((200, {"id": "ch_1", "status": "processing"}))
    with pytest.raises(ValueError):
        HttpPaymentsClient().refund("ch_1")


def test_payments_network_error_propagates(fake_http, settings):
    """Payments adapter propagates network errors from httpx after retries."""
    settings.HTTP_RETRY_MAX = 1
    fake_http.respond(httpx.ConnectError("boom"), httpx.ConnectError("boom"))

    with pytest.raises(httpx.ConnectError):
        HttpPaymentsClient().capture("ch_1")

    assert len(fake_http.requests) == 2
    assert [r["headers"]["X-Retry-Count"] for r in fake_http.requests] == ["0", "1"]


def test_request_id_follows_the_saga_step(fake_http):
    fake_http.respond((200, {"id": "ch_1", "status": "succeeded"}))

    with correlation("order-1") as rid:
        HttpPaymentsClient().hold(500, "USD", "pm_card_visa")

    headers = fake_http.requests[0]["headers"]
    assert headers["X-Request-ID"] == rid
    assert rid.startswith("order-1:")
    assert headers["Idempotency-Key"] == f"hold:{rid}"


def test_tax_client(fake_http):
    fake_http.respond((200, {"tax_cents": 800}), (200, {"transaction_id": "tx_9"}))
    client = HttpTaxClient(base_url="http://tax")
    us = Address(country="US", region="NY", city="New York", postal_code="10013")

    assert client.compute_tax(10000, us, us, 0) == 800
    assert fake_http.requests[0]["json"]["destination"]["country"] == "US"

    tx = client.record_collected("o-1__li-1", 10000, 800, us, us, 0, datetime(2026, 3, 2, tzinfo=timezone.utc))
    assert tx == "tx_9"
    assert fake_http.requests[1]["json"]["transaction_date"] == "2026-03-02T00:00:00+00:00"
