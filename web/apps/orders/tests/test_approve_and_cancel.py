"""Tests for approval (capture), cancellation, refunds and fulfillment."""

from decimal import Decimal

import pytest

from apps.orders.domain import (
    CallbackKind,
    OrderState,
    PaymentResult,
    StateReason,
    TransactionStatus,
    TransactionType,
)
from apps.orders.errors import FailedTransactionError, ProcessingError, ValidationError
from apps.orders.state_machine import OrderEvent
from .conftest import ITEM_ID


@pytest.fixture
def submitted(processor, make_order):
    def make(**kwargs):
        order = make_order(**kwargs)
        return processor.submit(order.id, actor_id="buyer-1")

    return make


def test_approve_captures_and_completes_the_ledger(processor, submitted):
    order = submitted()

    out = processor.approve(order.id, actor_id="gallery-1")

    assert out.state == OrderState.APPROVED
    assert processor.payments.count("capture") == 1
    assert out.transaction_fee_cents == 13264
    assert out.commission_fee_cents == 42004
    assert out.seller_total_cents == (
        out.items_total_cents
        + out.shipping_total_cents
        + out.tax_total_cents
        - out.transaction_fee_cents
        - out.commission_fee_cents
    )
    assert out.seller_total_cents == 401077
    assert out.last_approved_at is not None
    assert CallbackKind.RECORD_TAX in processor.scheduler.kinds(order.id)
    assert ("order.approved", order.id, "gallery-1") in processor.events.events


def test_commission_rate_is_frozen_at_submission(processor, submitted):
    order = submitted()
    processor.commission.rate = Decimal("0.25")

    out = processor.approve(order.id)

    assert out.commission_rate == Decimal("0.10")
    assert out.commission_fee_cents == 42004


def test_capture_failure_keeps_order_submitted_for_retry(processor, submitted):
    order = submitted()
    processor.payments.script(
        "capture", PaymentResult(status=TransactionStatus.FAILURE, failure_code="capture_expired")
    )

    with pytest.raises(FailedTransactionError) as e:
        processor.approve(order.id)

    assert e.value.code == "capture_failed"
    stored = processor.get_order(order.id)
    assert stored.state == OrderState.SUBMITTED
    assert [(t.transaction_type, t.status) for t in stored.transactions] == [
        (TransactionType.HOLD, TransactionStatus.SUCCESS),
        (TransactionType.CAPTURE, TransactionStatus.FAILURE),
    ]
    assert processor.inventory.released == []

    assert processor.approve(order.id).state == OrderState.APPROVED


def test_approve_requires_submitted_order(processor, make_order):
    order = make_order()
    with pytest.raises(ValidationError) as e:
        processor.approve(order.id)
    assert e.value.code == "invalid_state"
    assert processor.payments.calls == []


def test_reject_refunds_then_releases(processor, submitted):
    order = submitted()

    out = processor.reject(order.id, actor_id="gallery-1")

    assert out.state == OrderState.CANCELED
    assert out.state_reason == StateReason.SELLER_REJECTED
    assert processor.payments.count("refund") == 1
    assert processor.inventory.released == [(ITEM_ID, 1)]
    assert out.inventory_deducted is False
    assert out.transactions[-1].transaction_type == TransactionType.REFUND
    assert ("order.canceled", order.id, "gallery-1") in processor.events.events


def test_refund_failure_blocks_cancellation(processor, submitted):
    order = submitted()
    processor.payments.script(
        "refund", PaymentResult(status=TransactionStatus.FAILURE, failure_code="processing_error")
    )

    with pytest.raises(ProcessingError) as e:
        processor.reject(order.id)

    assert e.value.code == "refund_failed"
    stored = processor.get_order(order.id)
    assert stored.state == OrderState.SUBMITTED
    assert [h.state for h in stored.state_histories] == [OrderState.PENDING, OrderState.SUBMITTED]
    assert processor.inventory.released == []
    assert stored.transactions[-1].status == TransactionStatus.FAILURE


def test_refund_gateway_error_blocks_cancellation(processor, submitted):
    order = submitted()
    processor.payments.script("refund", ConnectionError("payments unreachable"))

    with pytest.raises(ProcessingError) as e:
        processor.buyer_cancel(order.id)

    assert e.value.code == "refund_failed"
    assert processor.get_order(order.id).state == OrderState.SUBMITTED


def test_buyer_cancel(processor, submitted):
    order = submitted()
    out = processor.buyer_cancel(order.id, actor_id="buyer-1")
    assert out.state == OrderState.CANCELED
    assert out.state_reason == StateReason.BUYER_CANCELED


def test_refund_after_approval_records_tax_refund(processor, submitted, clock):
    order = submitted()
    processor.approve(order.id)
    processor.scheduler.run_due(processor, clock.now)
    line_item = processor.get_order(order.id).line_items[0]
    assert line_item.sales_tax_transaction_id is not None

    clock.advance(days=1)
    out = processor.refund(order.id)
    processor.scheduler.run_due(processor, clock.now)

    assert out.state == OrderState.REFUNDED
    assert processor.payments.charges[out.external_charge_id]["status"] == "refunded"
    assert processor.inventory.released == [(ITEM_ID, 1)]
    assert processor.tax.refunded == [f"{order.id}__{line_item.id}"]


def test_tax_refund_is_recorded_once_on_redelivery(processor, submitted, clock):
    order = submitted()
    processor.approve(order.id)
    processor.scheduler.run_due(processor, clock.now)
    processor.refund(order.id)
    processor.scheduler.run_due(processor, clock.now)

    processor.handle_callback(order.id, CallbackKind.RECORD_TAX_REFUND, OrderState.REFUNDED)

    stored = processor.get_order(order.id)
    assert len(processor.tax.refunded) == 1
    assert stored.line_items[0].sales_tax_refunded_at == clock.now


def test_ship_fulfillment_then_return(processor, submitted):
    order = submitted()
    processor.approve(order.id)

    fulfilled = processor.fulfill_at_once(order.id, {"courier": "UPS", "tracking_id": "1Z999"})

    assert fulfilled.state == OrderState.FULFILLED
    assert fulfilled.fulfillment.courier == "UPS"
    assert fulfilled.line_items[0].fulfillment_id == fulfilled.fulfillment.id

    returned = processor.return_order(order.id)
    assert returned.state == OrderState.RETURNED
    assert processor.payments.count("refund") == 1


def test_pickup_orders_use_confirm_pickup(processor, submitted):
    order = submitted(shipping={"fulfillment_type": "pickup"})

    with pytest.raises(ValidationError) as e:
        processor.confirm_pickup(order.id)
    assert e.value.code == "invalid_state"

    processor.approve(order.id)
    for call in (lambda: processor.fulfill_at_once(order.id, {"courier": "UPS"}),
                 lambda: processor.confirm_fulfillment(order.id)):
        with pytest.raises(ValidationError) as e:
            call()
        assert e.value.code == "wrong_fulfillment_type"

    assert processor.confirm_pickup(order.id).state == OrderState.FULFILLED


def test_cancel_step_refuses_events_that_owe_no_refund(processor, submitted):
    order = submitted()
    processor.approve(order.id)

    with pytest.raises(ValidationError) as e:
        processor.run(order.id, lambda o, f: processor.cancel_step(o, OrderEvent.FULFILL, f))

    assert e.value.code == "invalid_state"
    assert processor.get_order(order.id).state == OrderState.APPROVED
    assert processor.payments.count("refund") == 0
    assert processor.inventory.released == []
