from datetime import datetime, timedelta, timezone

import pytest

from apps.orders.domain import Order, OrderMode, OrderState, StateReason, User
from apps.orders.errors import ValidationError
from apps.orders.state_machine import TRANSITIONS, Compensation, OrderEvent, OrderStateMachine

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def new_order(state=OrderState.PENDING):
    return Order(
        id="o-1",
        code="000000001",
        mode=OrderMode.BUY,
        buyer=User("b"),
        seller=User("s"),
        currency_code="USD",
        state=state,
        created_at=NOW,
        state_updated_at=NOW,
    )


@pytest.mark.parametrize(
    "source,event,target",
    [
        (OrderState.PENDING, OrderEvent.SUBMIT, OrderState.SUBMITTED),
        (OrderState.PENDING, OrderEvent.ABANDON, OrderState.ABANDONED),
        (OrderState.SUBMITTED, OrderEvent.APPROVE, OrderState.APPROVED),
        (OrderState.SUBMITTED, OrderEvent.REJECT, OrderState.CANCELED),
        (OrderState.SUBMITTED, OrderEvent.SELLER_LAPSE, OrderState.CANCELED),
        (OrderState.SUBMITTED, OrderEvent.BUYER_LAPSE, OrderState.CANCELED),
        (OrderState.SUBMITTED, OrderEvent.BUYER_CANCEL, OrderState.CANCELED),
        (OrderState.APPROVED, OrderEvent.FULFILL, OrderState.FULFILLED),
        (OrderState.APPROVED, OrderEvent.REFUND, OrderState.REFUNDED),
        (OrderState.APPROVED, OrderEvent.RETURN, OrderState.RETURNED),
        (OrderState.FULFILLED, OrderEvent.REFUND, OrderState.REFUNDED),
        (OrderState.FULFILLED, OrderEvent.RETURN, OrderState.RETURNED),
    ],
)
def test_legal_transitions(source, event, target):
    assert OrderStateMachine().transition_for(source, event).target == target


def test_money_returning_transitions_refund_and_release():
    """Every transition into canceled/refunded/returned owes a refund first."""
    for transition in TRANSITIONS.values():
        if transition.target in (OrderState.CANCELED, OrderState.REFUNDED, OrderState.RETURNED):
            assert transition.compensation == Compensation.REFUND_AND_RELEASE


@pytest.mark.parametrize(
    "state,event",
    [
        (OrderState.PENDING, OrderEvent.APPROVE),
        (OrderState.SUBMITTED, OrderEvent.SUBMIT),
        (OrderState.APPROVED, OrderEvent.APPROVE),
        (OrderState.CANCELED, OrderEvent.REFUND),
        (OrderState.ABANDONED, OrderEvent.SUBMIT),
        (OrderState.FULFILLED, OrderEvent.FULFILL),
    ],
)
def test_illegal_transitions_raise_invalid_state(state, event):
    machine = OrderStateMachine()
    assert not machine.can(state, event)
    with pytest.raises(ValidationError) as e:
        machine.transition_for(state, event)
    assert e.value.code == "invalid_state"
    assert e.value.data == {"state": state.value}


def test_apply_records_history_and_expiry():
    machine = OrderStateMachine({OrderState.SUBMITTED: timedelta(hours=48)})
    order = new_order()
    machine.apply(order, machine.transition_for(order.state, OrderEvent.SUBMIT), NOW)
    assert order.state == OrderState.SUBMITTED
    assert order.state_updated_at == NOW
    assert order.state_expires_at == NOW + timedelta(hours=48)
    assert [h.state for h in order.state_histories] == [OrderState.SUBMITTED]


def test_terminal_state_gets_reason_and_no_expiry():
    machine = OrderStateMachine()
    order = new_order(OrderState.SUBMITTED)
    machine.apply(order, machine.transition_for(order.state, OrderEvent.REJECT), NOW)
    assert order.state == OrderState.CANCELED
    assert order.state_reason == StateReason.SELLER_REJECTED
    assert order.state_expires_at is None
    assert order.state_histories[-1].reason == StateReason.SELLER_REJECTED


def test_apply_refuses_a_transition_from_another_state():
    machine = OrderStateMachine()
    transition = machine.transition_for(OrderState.PENDING, OrderEvent.SUBMIT)
    order = new_order(OrderState.SUBMITTED)
    with pytest.raises(ValidationError):
        machine.apply(order, transition, NOW)
    assert order.state_histories == []
