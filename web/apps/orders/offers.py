"""Offer negotiation layered on top of the order saga.

An Offer-mode order is negotiated through a chain of offers. The buyer's
first offer submits the order (``submit_order_with_offer``); from then on
the party that did not submit the last offer may accept it, reject it, or
counter it. Acceptance drives the order's ``SUBMITTED -> APPROVED``
transition with the offer amount as the authoritative total.

Every operation runs as a single saga step through ``OrderProcessor.run``.
"""

import uuid
from datetime import timedelta
from typing import Optional

from .domain import Offer, Order, OrderMode, OrderState, Party, PartyRole, StateReason
from .errors import ValidationError
from .processor import FollowUps, OrderProcessor
from .state_machine import OrderEvent
from .totals import compute_totals


class OfferService:
    """Pending/submitted offers and the accept, reject and counter actions.

    Args:
        processor: Order processor used to run steps and move money.
        offer_expiration: Response window granted on each offer submission.
    """

    def __init__(self, processor: OrderProcessor, offer_expiration: timedelta = timedelta(hours=48)):
        self.processor = processor
        self.offer_expiration = offer_expiration

    # ---- lookups ----
    def _order_id_for(self, offer_id: str) -> str:
        order_id = self.processor.store.order_id_for_offer(offer_id)
        if order_id is None:
            raise ValidationError("offer_not_found", offer_id=offer_id)
        return order_id

    @staticmethod
    def _find(order: Order, offer_id: str) -> Offer:
        offer = order.find_offer(offer_id)
        if offer is None:
            raise ValidationError("offer_not_found", offer_id=offer_id)
        return offer

    @staticmethod
    def _role(order: Order, party: Party) -> PartyRole:
        role = order.role_of(party)
        if role is None:
            raise ValidationError("unknown_party", party_id=party.party_id)
        return role

    @staticmethod
    def _check_amount(amount_cents: int) -> None:
        if not isinstance(amount_cents, int) or amount_cents <= 0:
            raise ValidationError("invalid_amount_cents", amount_cents=amount_cents)

    def _check_responder(self, order: Order, offer: Offer, party: Party) -> PartyRole:
        """Only the counterparty of the offer's submitter may answer it."""
        role = self._role(order, party)
        if role == PartyRole.SELLER and order.offer_role(offer) != PartyRole.BUYER:
            raise ValidationError("offer_not_from_buyer")
        if role == PartyRole.BUYER and order.offer_role(offer) != PartyRole.SELLER:
            raise ValidationError("offer_not_from_seller")
        return role

    def _check_last(self, order: Order, offer: Offer) -> None:
        if not order.is_last_offer(offer):
            raise ValidationError("not_last_offer")
        if not offer.submitted:
            raise ValidationError("invalid_offer")

    def _price(self, order: Order, offer: Offer) -> None:
        """Snapshot shipping and tax for ``offer`` once the order knows how it ships."""
        if order.fulfillment_type is None:
            offer.shipping_total_cents = None
            offer.tax_total_cents = None
            return
        rate = order.commission_rate
        if rate is None:
            rate = self.processor.commission.rate_for(order.seller)
        quote = self.processor.quote(order, rate, offer_amount_cents=offer.amount_cents)
        offer.shipping_total_cents = quote.totals.shipping_total_cents
        offer.tax_total_cents = quote.totals.tax_total_cents

    def _place(
        self,
        order: Order,
        amount_cents: int,
        from_party: Party,
        creator_id: str,
        note: Optional[str],
        responds_to: Optional[Offer] = None,
    ) -> Offer:
        """Create the order's pending offer, or amend it when ``from_party`` already has one."""
        pending = order.pending_offer
        if pending is not None and pending.from_party != from_party:
            raise ValidationError("not_offerable")
        if pending is None:
            pending = Offer(
                id=str(uuid.uuid4()),
                order_id=order.id,
                amount_cents=amount_cents,
                from_party=from_party,
                creator_id=creator_id,
                created_at=self.processor.clock(),
            )
            order.offers.append(pending)
        pending.amount_cents = amount_cents
        pending.creator_id = creator_id
        pending.note = note
        pending.responds_to_id = responds_to.id if responds_to else None
        self._price(order, pending)
        return pending

    # ---- pending offers ----
    def create_pending_offer(
        self,
        order_id: str,
        amount_cents: int,
        from_party: Party,
        creator_id: str,
        note: Optional[str] = None,
    ) -> Offer:
        """Create (or amend) the buyer's initial offer on a pending Offer-mode order.

        Raises:
            ValidationError: ``cannot_offer`` for Buy-mode orders or when the
                party is not the buyer, ``invalid_amount_cents``,
                ``invalid_state`` unless the order is pending.
        """

        def step(order: Order, follow_ups: FollowUps) -> Offer:
            if order.mode != OrderMode.OFFER:
                raise ValidationError("cannot_offer", mode=order.mode.value)
            self._check_amount(amount_cents)
            if order.state != OrderState.PENDING:
                raise ValidationError("invalid_state", state=order.state.value)
            if self._role(order, from_party) != PartyRole.BUYER:
                raise ValidationError("cannot_offer")
            return self._place(order, amount_cents, from_party, creator_id, note)

        return self.processor.run(order_id, step)

    def create_pending_counter_offer(
        self,
        offer_id: str,
        amount_cents: int,
        from_party: Party,
        creator_id: str,
        note: Optional[str] = None,
    ) -> Offer:
        """Prepare a counter to ``offer_id`` without submitting it."""
        return self.processor.run(
            self._order_id_for(offer_id),
            lambda order, follow_ups: self._counter(order, offer_id, amount_cents, from_party, creator_id, note),
        )

    def _counter(self, order, offer_id, amount_cents, from_party, creator_id, note) -> Offer:
        if order.state != OrderState.SUBMITTED:
            raise ValidationError("invalid_state", state=order.state.value)
        offer = self._find(order, offer_id)
        if not order.is_last_offer(offer):
            raise ValidationError("not_last_offer")
        self._check_responder(order, offer, from_party)
        self._check_amount(amount_cents)
        return self._place(order, amount_cents, from_party, creator_id, note, responds_to=offer)

    # ---- submission ----
    def submit_pending_offer(self, offer_id: str, actor_id: Optional[str] = None) -> Offer:
        """Submit a pending counter offer on a submitted order.

        The offer becomes the order's last offer, the order totals follow its
        amount (at the commission rate frozen at submission) and the order's
        expiry moves to now plus the response window.
        """

        def step(order: Order, follow_ups: FollowUps) -> Offer:
            offer = self._find(order, offer_id)
            return self._submit(order, offer, actor_id, follow_ups)

        return self.processor.run(self._order_id_for(offer_id), step)

    def _submit(self, order: Order, offer: Offer, actor_id: Optional[str], follow_ups: FollowUps) -> Offer:
        if offer.submitted:
            raise ValidationError("already_submitted")
        if order.state != OrderState.SUBMITTED:
            raise ValidationError("invalid_state", state=order.state.value)
        if offer.responds_to_id is None or offer.responds_to_id != order.last_offer_id:
            raise ValidationError("not_last_offer")
        if offer.shipping_total_cents is None or offer.tax_total_cents is None:
            self._price(order, offer)

        # a hold awaiting client action was placed for the previous offer
        self.processor.void_pending_charge(order)
        now = self.processor.clock()
        offer.submitted_at = now
        order.last_offer_id = offer.id
        order.apply_totals(
            compute_totals(
                order.line_items,
                offer.shipping_total_cents or 0,
                offer.tax_total_cents or 0,
                order.commission_rate,
                offer_amount_cents=offer.amount_cents,
            )
        )
        order.state_expires_at = now + self.offer_expiration
        self.processor.observe("offer.submitted", order, offer_id=offer.id, amount_cents=offer.amount_cents)
        self.processor.schedule_state_follow_ups(order, follow_ups)
        follow_ups.publish("offer.submitted", actor_id)
        return offer

    def counter(
        self,
        offer_id: str,
        amount_cents: int,
        from_party: Party,
        creator_id: str,
        note: Optional[str] = None,
    ) -> Offer:
        """Create and submit a counter to ``offer_id`` in one step."""

        def step(order: Order, follow_ups: FollowUps) -> Offer:
            offer = self._counter(order, offer_id, amount_cents, from_party, creator_id, note)
            return self._submit(order, offer, creator_id, follow_ups)

        return self.processor.run(self._order_id_for(offer_id), step)

    def submit_order_with_offer(self, offer_id: str, actor_id: Optional[str] = None) -> Order:
        """Submit a pending Offer-mode order by submitting the buyer's initial offer.

        No inventory or payment call is made; money moves on acceptance.
        """

        def step(order: Order, follow_ups: FollowUps) -> Order:
            processor = self.processor
            transition = processor.state_machine.transition_for(order.state, OrderEvent.SUBMIT)
            if order.mode != OrderMode.OFFER:
                raise ValidationError("cant_submit", mode=order.mode.value)
            offer = self._find(order, offer_id)
            if offer.submitted:
                raise ValidationError("already_submitted")
            if order.offer_role(offer) != PartyRole.BUYER:
                raise ValidationError("offer_not_from_buyer")
            processor.validate_commit(order)

            rate = processor.commission.rate_for(order.seller)
            quote = processor.quote(order, rate, offer_amount_cents=offer.amount_cents)
            now = processor.clock()
            offer.shipping_total_cents = quote.totals.shipping_total_cents
            offer.tax_total_cents = quote.totals.tax_total_cents
            offer.submitted_at = now
            order.last_offer_id = offer.id
            order.apply_totals(quote.totals)
            order.last_submitted_at = now
            processor.state_machine.apply(order, transition, now)
            order.state_expires_at = now + self.offer_expiration
            processor.observe("saga.committed", order, event=transition.event.value, state=order.state.value)
            processor.schedule_state_follow_ups(order, follow_ups)
            follow_ups.publish("order.submitted", actor_id)
            follow_ups.publish("offer.submitted", actor_id)
            return order

        return self.processor.run(self._order_id_for(offer_id), step)

    # ---- responses ----
    def accept_offer(self, offer_id: str, party: Party, actor_id: Optional[str] = None) -> Order:
        """Accept the last offer: deduct stock, hold and capture its buyer total.

        Raises:
            ValidationError: ``invalid_state`` (checked first, so a repeated
                accept never reaches the payment gateway), ``not_last_offer``,
                ``offer_not_from_buyer`` / ``offer_not_from_seller``.
        """

        def step(order: Order, follow_ups: FollowUps) -> Order:
            if order.state != OrderState.SUBMITTED:
                raise ValidationError("invalid_state", state=order.state.value)
            offer = self._find(order, offer_id)
            self._check_last(order, offer)
            self._check_responder(order, offer, party)
            return self.processor.approve_step(order, follow_ups, actor_id, offer=offer)

        return self.processor.run(self._order_id_for(offer_id), step)

    def reject_offer(self, offer_id: str, party: Party, actor_id: Optional[str] = None) -> Order:
        """Reject the last offer, canceling the order (refund first, if any money moved)."""

        def step(order: Order, follow_ups: FollowUps) -> Order:
            if order.state != OrderState.SUBMITTED:
                raise ValidationError("invalid_state", state=order.state.value)
            offer = self._find(order, offer_id)
            self._check_last(order, offer)
            role = self._check_responder(order, offer, party)
            reason = StateReason.SELLER_REJECTED if role == PartyRole.SELLER else StateReason.BUYER_REJECTED
            return self.processor.cancel_step(order, OrderEvent.REJECT, follow_ups, actor_id, reason)

        return self.processor.run(self._order_id_for(offer_id), step)
