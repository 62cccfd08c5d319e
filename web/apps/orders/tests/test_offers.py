"""Tests for offer negotiation on Offer-mode orders."""

from datetime import timedelta
from decimal import Decimal

import pytest

from apps.orders.adapters import FlatCommissionPolicy
from apps.orders.domain import (
    CommissionPolicy,
    OrderState,
    Partner,
    PartyRole,
    PaymentResult,
    StateReason,
    TransactionStatus,
    TransactionType,
    User,
)
from apps.orders.errors import FailedTransactionError, PaymentRequiresActionError, ValidationError
from .conftest import ITEM_ID, NOW

BUYER = User("buyer-1")
SELLER = Partner("gallery-1")


@pytest.fixture
def offer_order(processor, offers, make_order):
    """Offer-mode order submitted with the buyer's initial offer of 80000."""

    def make(amount_cents=80000):
        order = make_order(mode="offer", unit_price_cents=100000)
        offer = offers.create_pending_offer(order.id, amount_cents, BUYER, "buyer-1", note="Would you take this?")
        offers.submit_order_with_offer(offer.id, actor_id="buyer-1")
        return processor.get_order(order.id), offer

    return make


def test_submit_order_with_offer_moves_no_money(processor, offer_order):
    order, offer = offer_order()

    assert order.state == OrderState.SUBMITTED
    assert order.last_offer_id == offer.id
    assert order.items_total_cents == 80000
    assert order.state_expires_at == NOW + timedelta(hours=48)
    assert processor.payments.calls == []
    assert processor.inventory.reserved == []
    submitted = order.last_offer
    assert submitted.submitted
    assert submitted.note == "Would you take this?"
    assert submitted.shipping_total_cents == 2500
    assert order.awaiting_response_from(submitted) == PartyRole.SELLER


def test_seller_counter_creates_linked_offer(processor, offers, offer_order):
    """Seller counters the buyer's 80000 with 95000; the buyer's offer is untouched."""
    order, buyer_offer = offer_order()

    counter = offers.counter(buyer_offer.id, 95000, SELLER, "gallery-1")

    stored = processor.get_order(order.id)
    assert counter.responds_to_id == buyer_offer.id
    assert counter.amount_cents == 95000
    assert counter.from_party == SELLER
    assert stored.last_offer_id == counter.id
    original = stored.find_offer(buyer_offer.id)
    assert original.amount_cents == 80000
    assert original.submitted
    assert stored.awaiting_response_from(stored.last_offer) == PartyRole.BUYER


def test_buyer_offer_on_submitted_order_extends_expiry(processor, offers, offer_order, clock):
    order, buyer_offer = offer_order()
    seller_counter = offers.counter(buyer_offer.id, 95000, SELLER, "gallery-1")
    clock.advance(hours=10)

    before = len(processor.get_order(order.id).offers)
    pending = offers.create_pending_counter_offer(seller_counter.id, 90000, BUYER, "buyer-1")
    offers.submit_pending_offer(pending.id, actor_id="buyer-1")

    stored = processor.get_order(order.id)
    assert len(stored.offers) == before + 1
    assert stored.last_offer_id == pending.id
    assert stored.state_expires_at == clock.now + timedelta(hours=48)
    assert stored.items_total_cents == 90000
    assert [h.state for h in stored.state_histories] == [OrderState.PENDING, OrderState.SUBMITTED]
    assert ("offer.submitted", order.id, "buyer-1") in processor.events.events


def test_countering_a_non_last_offer_fails(processor, offers, offer_order):
    order, buyer_offer = offer_order()
    offers.counter(buyer_offer.id, 95000, SELLER, "gallery-1")
    count = len(processor.get_order(order.id).offers)

    with pytest.raises(ValidationError) as e:
        offers.counter(buyer_offer.id, 85000, SELLER, "gallery-1")

    assert e.value.code == "not_last_offer"
    assert len(processor.get_order(order.id).offers) == count


def test_only_the_counterparty_may_counter(offers, offer_order):
    order, buyer_offer = offer_order()
    with pytest.raises(ValidationError) as e:
        offers.counter(buyer_offer.id, 85000, BUYER, "buyer-1")
    assert e.value.code == "offer_not_from_seller"

    seller_counter = offers.counter(buyer_offer.id, 95000, SELLER, "gallery-1")
    with pytest.raises(ValidationError) as e:
        offers.counter(seller_counter.id, 94000, SELLER, "gallery-1")
    assert e.value.code == "offer_not_from_buyer"


def test_pending_offer_is_amended_in_place(processor, offers, make_order):
    order = make_order(mode="offer", unit_price_cents=100000)
    first = offers.create_pending_offer(order.id, 70000, BUYER, "buyer-1")
    second = offers.create_pending_offer(order.id, 75000, BUYER, "buyer-1")

    stored = processor.get_order(order.id)
    assert second.id == first.id
    assert [o.amount_cents for o in stored.offers] == [75000]


def test_offer_guards(processor, offers, make_order):
    buy_order = make_order()
    with pytest.raises(ValidationError) as e:
        offers.create_pending_offer(buy_order.id, 70000, BUYER, "buyer-1")
    assert e.value.code == "cannot_offer"

    offer_order = make_order(mode="offer")
    with pytest.raises(ValidationError) as e:
        offers.create_pending_offer(offer_order.id, 0, BUYER, "buyer-1")
    assert e.value.code == "invalid_amount_cents"
    with pytest.raises(ValidationError) as e:
        offers.create_pending_offer(offer_order.id, 70000, SELLER, "gallery-1")
    assert e.value.code == "cannot_offer"

    offer = offers.create_pending_offer(offer_order.id, 70000, BUYER, "buyer-1")
    offers.submit_order_with_offer(offer.id)
    with pytest.raises(ValidationError) as e:
        offers.submit_order_with_offer(offer.id)
    assert e.value.code == "invalid_state"


def test_accept_moves_money_with_offer_amount(processor, offers, offer_order):
    order, buyer_offer = offer_order()
    counter = offers.counter(buyer_offer.id, 95000, SELLER, "gallery-1")

    out = offers.accept_offer(counter.id, BUYER, actor_id="buyer-1")

    assert out.state == OrderState.APPROVED
    assert out.items_total_cents == 95000
    assert out.shipping_total_cents == 2500
    assert out.tax_total_cents == 7800
    assert out.buyer_total_cents == 105300
    assert out.commission_fee_cents == 9500
    assert out.seller_total_cents == 105300 - out.transaction_fee_cents - 9500
    assert processor.payments.calls[0] == ("hold", (105300, "USD", "pm_card_visa"))
    assert [t.transaction_type for t in out.transactions] == [TransactionType.HOLD, TransactionType.CAPTURE]
    assert processor.inventory.reserved == [(ITEM_ID, 1)]
    assert out.inventory_deducted is True


def test_accepting_twice_fails_without_second_capture(processor, offers, offer_order):
    order, buyer_offer = offer_order()
    offers.accept_offer(buyer_offer.id, SELLER)

    with pytest.raises(ValidationError) as e:
        offers.accept_offer(buyer_offer.id, SELLER)

    assert e.value.code == "invalid_state"
    assert processor.payments.count("capture") == 1


def test_accept_requires_last_offer_and_counterparty(offers, offer_order):
    order, buyer_offer = offer_order()
    with pytest.raises(ValidationError) as e:
        offers.accept_offer(buyer_offer.id, BUYER)
    assert e.value.code == "offer_not_from_seller"

    offers.counter(buyer_offer.id, 95000, SELLER, "gallery-1")
    with pytest.raises(ValidationError) as e:
        offers.accept_offer(buyer_offer.id, SELLER)
    assert e.value.code == "not_last_offer"


def test_failed_capture_on_accept_voids_hold_and_releases_stock(processor, offers, offer_order):
    order, buyer_offer = offer_order()
    processor.payments.script(
        "capture", PaymentResult(status=TransactionStatus.FAILURE, failure_code="capture_declined")
    )

    with pytest.raises(FailedTransactionError) as e:
        offers.accept_offer(buyer_offer.id, SELLER)

    assert e.value.code == "capture_failed"
    stored = processor.get_order(order.id)
    assert stored.state == OrderState.SUBMITTED
    assert stored.external_charge_id is None
    assert [t.transaction_type for t in stored.transactions] == [
        TransactionType.HOLD,
        TransactionType.CAPTURE,
        TransactionType.REFUND,
    ]
    assert processor.inventory.released == [(ITEM_ID, 1)]


def test_counter_voids_hold_awaiting_action_on_previous_offer(processor, offers, offer_order):
    """A 3-D Secure hold sized for the 80000 offer is never captured for the 95000 counter."""
    order, buyer_offer = offer_order()
    processor.payments.script("hold", PaymentResult(status=TransactionStatus.REQUIRES_ACTION))
    with pytest.raises(PaymentRequiresActionError):
        offers.accept_offer(buyer_offer.id, SELLER)
    stale_charge = processor.get_order(order.id).external_charge_id
    assert processor.payments.charges[stale_charge]["amount_cents"] == 89100

    counter = offers.counter(buyer_offer.id, 95000, SELLER, "gallery-1")
    assert processor.get_order(order.id).external_charge_id is None
    out = offers.accept_offer(counter.id, BUYER)

    assert out.state == OrderState.APPROVED
    assert out.buyer_total_cents == 105300
    assert out.external_charge_id != stale_charge
    assert processor.payments.charges[out.external_charge_id] == {"amount_cents": 105300, "status": "captured"}
    assert processor.payments.charges[stale_charge]["status"] == "refunded"
    assert processor.payments.count("confirm") == 0


def test_declined_hold_on_accept_releases_stock(processor, offers, offer_order):
    order, buyer_offer = offer_order()
    processor.payments.script("hold", PaymentResult(status=TransactionStatus.FAILURE, failure_code="card_declined"))

    with pytest.raises(FailedTransactionError):
        offers.accept_offer(buyer_offer.id, SELLER)

    assert processor.payments.count("capture") == 0
    assert processor.inventory.released == [(ITEM_ID, 1)]
    assert processor.get_order(order.id).state == OrderState.SUBMITTED


def test_reject_offer_cancels_without_refund(processor, offers, offer_order):
    order, buyer_offer = offer_order()

    out = offers.reject_offer(buyer_offer.id, SELLER, actor_id="gallery-1")

    assert out.state == OrderState.CANCELED
    assert out.state_reason == StateReason.SELLER_REJECTED
    assert processor.payments.calls == []


def test_buyer_rejecting_a_counter(offers, offer_order):
    order, buyer_offer = offer_order()
    counter = offers.counter(buyer_offer.id, 95000, SELLER, "gallery-1")
    out = offers.reject_offer(counter.id, BUYER)
    assert out.state_reason == StateReason.BUYER_REJECTED


def test_unknown_offer(offers):
    with pytest.raises(ValidationError) as e:
        offers.accept_offer("missing", SELLER)
    assert e.value.code == "offer_not_found"


class CommissionAlreadyFrozen(CommissionPolicy):
    def rate_for(self, seller):
        raise AssertionError("commission rate resolved after it was frozen")


def test_frozen_zero_commission_rate_is_kept(processor, offers, offer_order):
    processor.commission = FlatCommissionPolicy(Decimal("0"))
    order, buyer_offer = offer_order()
    processor.commission = CommissionAlreadyFrozen()

    counter = offers.counter(buyer_offer.id, 95000, SELLER, "gallery-1")
    out = offers.accept_offer(counter.id, BUYER)

    assert out.commission_rate == Decimal("0")
    assert out.commission_fee_cents == 0
