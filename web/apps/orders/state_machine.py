"""Order state machine.

All legal transitions live in ``TRANSITIONS``, keyed by ``(source, event)``.
Each entry names the target state, the reason recorded for terminal states,
and the compensation the processor owes the external systems when the
transition is entered (or when its forward steps fail part way).
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

from .domain import Order, OrderState, StateHistory, StateReason
from .errors import ValidationError


class OrderEvent(str, Enum):
    SUBMIT = "submit"
    ABANDON = "abandon"
    APPROVE = "approve"
    REJECT = "reject"
    SELLER_LAPSE = "seller_lapse"
    BUYER_LAPSE = "buyer_lapse"
    BUYER_CANCEL = "buyer_cancel"
    FULFILL = "fulfill"
    REFUND = "refund"
    RETURN = "return"


class Compensation(str, Enum):
    """Undo owed to the external systems for a transition.

    RELEASE_INVENTORY: stock deducted by the transition is put back when a
        later step fails.
    REFUND_AND_RELEASE: entering the target state requires refunding the
        charge first, then releasing the stock.
    """

    RELEASE_INVENTORY = "release_inventory"
    REFUND_AND_RELEASE = "refund_and_release"


@dataclass(frozen=True)
class Transition:
    """One row of the transition table.

    ``compensation`` drives the processor: ``cancel_step`` only runs
    transitions marked ``REFUND_AND_RELEASE`` and ``_compensate`` releases
    stock for transitions marked ``RELEASE_INVENTORY``.
    """

    source: OrderState
    event: OrderEvent
    target: OrderState
    reason: Optional[StateReason] = None
    compensation: Optional[Compensation] = None


def _t(source, event, target, reason=None, compensation=None):
    return (source, event), Transition(source, event, target, reason, compensation)


S = OrderState
E = OrderEvent
C = Compensation

TRANSITIONS: Dict[Tuple[OrderState, OrderEvent], Transition] = dict(
    [
        _t(S.PENDING, E.SUBMIT, S.SUBMITTED, compensation=C.RELEASE_INVENTORY),
        _t(S.PENDING, E.ABANDON, S.ABANDONED),
        _t(S.SUBMITTED, E.APPROVE, S.APPROVED, compensation=C.RELEASE_INVENTORY),
        _t(S.SUBMITTED, E.REJECT, S.CANCELED, StateReason.SELLER_REJECTED, C.REFUND_AND_RELEASE),
        _t(S.SUBMITTED, E.SELLER_LAPSE, S.CANCELED, StateReason.SELLER_LAPSED, C.REFUND_AND_RELEASE),
        _t(S.SUBMITTED, E.BUYER_LAPSE, S.CANCELED, StateReason.BUYER_LAPSED, C.REFUND_AND_RELEASE),
        _t(S.SUBMITTED, E.BUYER_CANCEL, S.CANCELED, StateReason.BUYER_CANCELED, C.REFUND_AND_RELEASE),
        _t(S.APPROVED, E.FULFILL, S.FULFILLED),
        _t(S.APPROVED, E.REFUND, S.REFUNDED, compensation=C.REFUND_AND_RELEASE),
        _t(S.FULFILLED, E.REFUND, S.REFUNDED, compensation=C.REFUND_AND_RELEASE),
        _t(S.APPROVED, E.RETURN, S.RETURNED, compensation=C.REFUND_AND_RELEASE),
        _t(S.FULFILLED, E.RETURN, S.RETURNED, compensation=C.REFUND_AND_RELEASE),
    ]
)

DEFAULT_EXPIRATIONS: Dict[OrderState, timedelta] = {
    OrderState.PENDING: timedelta(days=2),
    OrderState.SUBMITTED: timedelta(days=2),
    OrderState.APPROVED: timedelta(days=7),
}


class OrderStateMachine:
    """Guards and applies order transitions.

    Args:
        expirations: How long an order may stay in each non-terminal state.
            States missing from the mapping never expire.
    """

    def __init__(self, expirations: Optional[Mapping[OrderState, timedelta]] = None):
        self.expirations = dict(DEFAULT_EXPIRATIONS if expirations is None else expirations)

    def can(self, state: OrderState, event: OrderEvent) -> bool:
        return (state, event) in TRANSITIONS

    def transition_for(self, state: OrderState, event: OrderEvent) -> Transition:
        """Look up the transition for ``event`` from ``state``.

        Raises:
            ValidationError: ``invalid_state`` when the transition is illegal.
        """
        try:
            return TRANSITIONS[(state, event)]
        except KeyError:
            raise ValidationError("invalid_state", state=state.value) from None

    def expires_at(self, state: OrderState, now: datetime) -> Optional[datetime]:
        window = self.expirations.get(state)
        return now + window if window is not None else None

    def apply(
        self,
        order: Order,
        transition: Transition,
        now: datetime,
        reason: Optional[StateReason] = None,
    ) -> StateHistory:
        """Move ``order`` into ``transition.target`` and append its history row.

        The caller is responsible for having completed (or compensated) every
        external effect of the transition before calling this.
        """
        if order.state != transition.source:
            raise ValidationError("invalid_state", state=order.state.value)
        reason = reason or transition.reason
        order.state = transition.target
        order.state_reason = reason
        order.state_updated_at = now
        order.state_expires_at = self.expires_at(transition.target, now)
        entry = StateHistory(id=str(uuid.uuid4()), state=transition.target, created_at=now, reason=reason)
        order.state_histories.append(entry)
        return entry

    def enter_initial(self, order: Order, now: datetime) -> StateHistory:
        """Put a freshly created order in ``PENDING``."""
        order.state = OrderState.PENDING
        order.state_reason = None
        order.state_updated_at = now
        order.state_expires_at = self.expires_at(OrderState.PENDING, now)
        entry = StateHistory(id=str(uuid.uuid4()), state=OrderState.PENDING, created_at=now)
        order.state_histories.append(entry)
        return entry
