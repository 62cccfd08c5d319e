"""Shared fixtures for order saga tests.

The processor under test is wired with the in-process stubs from
``apps.orders.adapters`` and a controllable clock, so every gateway call and
scheduled callback can be asserted on.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from apps.orders.adapters import (
    FlatCommissionPolicy,
    InMemoryOrderStore,
    InMemoryScheduler,
    InventoryStub,
    PaymentsStub,
    RecordingEventSink,
    RecordingObserver,
    TaxStub,
)
from apps.orders.offers import OfferService
from apps.orders.processor import OrderProcessor

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
ITEM_ID = "work-1"

BUYER = {"id": "buyer-1", "type": "user"}
SELLER = {"id": "gallery-1", "type": "partner"}
US_LOCATION = {"country": "US", "city": "New York", "region": "NY", "postal_code": "10013"}
US_ADDRESS = {"country": "US", "name": "Dana Buyer", "line1": "401 Broadway", "city": "New York",
              "region": "NY", "postal_code": "10013"}


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def order_payload(mode="buy", unit_price_cents=420042, quantity=1, **line_item):
    item = {
        "item_id": ITEM_ID,
        "version_id": "v1",
        "unit_price_cents": unit_price_cents,
        "quantity": quantity,
        "location": US_LOCATION,
        "domestic_shipping_fee_cents": 2500,
        "international_shipping_fee_cents": 5000,
    }
    item.update(line_item)
    return {"buyer": BUYER, "seller": SELLER, "mode": mode, "line_item": item, "currency": "USD"}


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def processor(clock):
    return OrderProcessor(
        store=InMemoryOrderStore(),
        inventory=InventoryStub(versions={ITEM_ID: "v1"}),
        payments=PaymentsStub(),
        tax=TaxStub(),
        events=RecordingEventSink(),
        scheduler=InMemoryScheduler(),
        commission=FlatCommissionPolicy(Decimal("0.10")),
        observer=RecordingObserver(),
        clock=clock,
    )


@pytest.fixture
def offers(processor):
    return OfferService(processor, offer_expiration=timedelta(hours=48))


@pytest.fixture
def make_order(processor):
    """Create an order ready to submit: shipping to the US and a payment method."""

    def make(mode="buy", shipping=None, payment_method_ref="pm_card_visa", **payload):
        order = processor.create_order(order_payload(mode=mode, **payload))
        processor.set_shipping(order.id, shipping or {"fulfillment_type": "ship", "address": US_ADDRESS})
        if payment_method_ref:
            processor.set_payment(order.id, payment_method_ref)
        return processor.get_order(order.id)

    return make
