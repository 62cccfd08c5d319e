"""Order processor: drives one order transition end to end.

Each public operation runs as a single saga step under the order's exclusive
lock (see ``OrderStore.lock``). Inside the step the processor validates
preconditions, computes totals, calls inventory, payments and tax, and
commits the new state only once every external effect has either succeeded
or been compensated. Errors are raised to the caller after the order (with
any failed payment ``Transaction`` rows appended) has been saved.

Notifications and scheduled follow-ups are dispatched after the lock is
released; their failures are logged and never undo a committed transition.
"""

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError as SchemaError

from exchange.context import correlation

from .domain import (
    CallbackKind,
    CommissionPolicy,
    EventSink,
    Fulfillment,
    FulfillmentType,
    InventoryPort,
    LineItem,
    Offer,
    Order,
    OrderMode,
    OrderState,
    OrderStore,
    PartyRole,
    PaymentResult,
    PaymentsPort,
    SagaObserver,
    Scheduler,
    StateReason,
    TaxPort,
    Transaction,
    TransactionStatus,
    TransactionType,
    party_from,
)
from .errors import (
    ApplicationError,
    FailedTransactionError,
    InsufficientInventoryError,
    PaymentRequiresActionError,
    ProcessingError,
    ValidationError,
)
from .events import LoggingObserver
from .schemas import CreateOrderIn, FulfillmentIn, ShippingIn
from .state_machine import Compensation, OrderEvent, OrderStateMachine, Transition
from .totals import OrderTotals, commission_fee, compute_totals, line_shipping_cents, with_transaction_fee

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Quote:
    """Totals for an order plus the per-line amounts they were built from."""

    totals: OrderTotals
    line_taxes: Dict[str, int]
    line_commissions: Dict[str, int]


@dataclass
class FollowUps:
    """Side work requested by a saga step, dispatched after commit."""

    events: List[Tuple[str, Optional[str]]] = field(default_factory=list)
    callbacks: List[Tuple[datetime, CallbackKind, OrderState, int]] = field(default_factory=list)

    def publish(self, event_type: str, actor_id: Optional[str] = None) -> None:
        self.events.append((event_type, actor_id))

    def schedule(self, when: datetime, kind: CallbackKind, expected_state: OrderState, attempt: int = 0) -> None:
        self.callbacks.append((when, kind, expected_state, attempt))


class OrderProcessor:
    """Saga orchestrator for order transitions.

    This service coordinates the record store and the external
    collaborators (inventory, payments, tax, event sink, scheduler). It does
    not know about HTTP or the ORM; everything comes in through ports.
    """

    def __init__(
        self,
        store: OrderStore,
        inventory: InventoryPort,
        payments: PaymentsPort,
        tax: TaxPort,
        events: EventSink,
        scheduler: Scheduler,
        commission: CommissionPolicy,
        observer: Optional[SagaObserver] = None,
        state_machine: Optional[OrderStateMachine] = None,
        clock: Callable[[], datetime] = utcnow,
        reminder_before: timedelta = timedelta(hours=5),
        tax_retry_delay: timedelta = timedelta(minutes=15),
        tax_max_attempts: int = 5,
        default_currency: str = "USD",
    ):
        """Initialize the processor with its collaborators.

        Args:
            store: Durable record store holding orders.
            inventory: InventoryPort used to deduct and release stock.
            payments: PaymentsPort used to hold, capture and refund.
            tax: TaxPort used to compute and record sales tax.
            events: Sink for fire-and-forget order notifications.
            scheduler: Facility to call ``handle_callback`` later.
            commission: Resolves the commission rate at submission.
            observer: Receives saga checkpoints; logs them by default.
            state_machine: Transition table and expiration policy.
            clock: Returns the current UTC time.
            reminder_before: How long before expiry a reminder fires.
            tax_retry_delay: Delay before retrying a failed tax recording.
            tax_max_attempts: Give up recording tax after this many attempts.
            default_currency: Currency for orders created without one.
        """
        self.store = store
        self.inventory = inventory
        self.payments = payments
        self.tax = tax
        self.events = events
        self.scheduler = scheduler
        self.commission = commission
        self.observer = observer or LoggingObserver()
        self.state_machine = state_machine or OrderStateMachine()
        self.clock = clock
        self.reminder_before = reminder_before
        self.tax_retry_delay = tax_retry_delay
        self.tax_max_attempts = tax_max_attempts
        self.default_currency = default_currency

    # ------------------------------------------------------------------ #
    # Unit of work
    # ------------------------------------------------------------------ #

    def run(self, order_id: str, step: Callable[[Order, FollowUps], object]):
        """Run ``step`` on the locked order and persist the result.

        The lock is held for the whole step, gateway calls included. When the
        step raises an ``ApplicationError`` the order is still saved (the step
        only appends audit rows before failing) and the error is re-raised
        once the lock is released.
        """
        follow_ups = FollowUps()
        failure = None
        with correlation(order_id):
            with self.store.lock(order_id) as order:
                try:
                    result = step(order, follow_ups)
                except ApplicationError as exc:
                    failure = exc
                self.store.save(order)
            if failure is not None:
                raise failure
            self._dispatch(order, follow_ups)
        return result

    def _dispatch(self, order: Order, follow_ups: FollowUps) -> None:
        for when, kind, expected_state, attempt in follow_ups.callbacks:
            try:
                self.scheduler.schedule_at(when, order.id, kind, expected_state, attempt=attempt)
            except Exception as exc:
                logger.exception("scheduling %s failed for order %s", kind.value, order.id)
                self.observe("schedule.failed", order, kind=kind.value, error=repr(exc))
        for event_type, actor_id in follow_ups.events:
            try:
                self.events.publish(event_type, order.id, actor_id)
            except Exception as exc:
                logger.exception("publishing %s failed for order %s", event_type, order.id)
                self.observe("notification.failed", order, event_type=event_type, error=repr(exc))

    def observe(self, name: str, order: Order, **tags) -> None:
        self.observer.on_event(name, {"order_id": order.id, **tags})

    def schedule_state_follow_ups(self, order: Order, follow_ups: FollowUps) -> None:
        """Schedule the expiration and reminder callbacks for the current state."""
        if order.state_expires_at is None:
            return
        follow_ups.schedule(order.state_expires_at, CallbackKind.EXPIRE, order.state)
        remind_at = order.state_expires_at - self.reminder_before
        if remind_at > self.clock():
            follow_ups.schedule(remind_at, CallbackKind.REMIND, order.state)

    def get_order(self, order_id: str) -> Order:
        order = self.store.get(order_id)
        if order is None:
            raise ValidationError("order_not_found", order_id=order_id)
        return order

    # ------------------------------------------------------------------ #
    # Creation and pending-state updates
    # ------------------------------------------------------------------ #

    def create_order(self, payload, find_active_or_create: bool = False) -> Order:
        """Create an order in ``PENDING`` for a single catalog item.

        Args:
            payload: ``CreateOrderIn`` or a dict matching it.
            find_active_or_create: Reuse an existing pending/submitted order
                of the same buyer, mode, item and quantity when there is one.

        Raises:
            ValidationError: ``invalid_order`` when the payload is invalid.
        """
        try:
            data = payload if isinstance(payload, CreateOrderIn) else CreateOrderIn.model_validate(payload)
        except SchemaError as exc:
            raise ValidationError("invalid_order", message=str(exc)) from None

        buyer = party_from(data.buyer.type, data.buyer.id)
        seller = party_from(data.seller.type, data.seller.id)
        item = data.line_item
        if find_active_or_create:
            existing = self.store.find_active(buyer, data.mode, item.item_id, item.quantity)
            if existing is not None:
                return existing

        now = self.clock()
        order = Order(
            id=str(uuid.uuid4()),
            code=f"{secrets.randbelow(10 ** 9):09d}",
            mode=data.mode,
            buyer=buyer,
            seller=seller,
            currency_code=data.currency or self.default_currency,
            state=OrderState.PENDING,
            created_at=now,
            state_updated_at=now,
            line_items=[
                LineItem(
                    id=str(uuid.uuid4()),
                    item_id=item.item_id,
                    version_id=item.version_id,
                    unit_price_cents=item.unit_price_cents,
                    quantity=item.quantity,
                    location=item.location.to_domain() if item.location else None,
                    domestic_shipping_fee_cents=item.domestic_shipping_fee_cents,
                    international_shipping_fee_cents=item.international_shipping_fee_cents,
                )
            ],
        )
        self.state_machine.enter_initial(order, now)
        with correlation(order.id):
            self.store.add(order)
            follow_ups = FollowUps()
            self.schedule_state_follow_ups(order, follow_ups)
            follow_ups.publish("order.created", buyer.party_id)
            self._dispatch(order, follow_ups)
        return order

    def set_shipping(self, order_id: str, shipping) -> Order:
        """Choose pickup or shipping and refresh the provisional totals."""
        try:
            data = shipping if isinstance(shipping, ShippingIn) else ShippingIn.model_validate(shipping)
        except SchemaError as exc:
            raise ValidationError("invalid_shipping", message=str(exc)) from None

        def step(order: Order, follow_ups: FollowUps) -> Order:
            if order.state != OrderState.PENDING:
                raise ValidationError("invalid_state", state=order.state.value)
            address = None
            if data.fulfillment_type == FulfillmentType.SHIP:
                if data.address is None or not data.address.country:
                    raise ValidationError("missing_country")
                address = data.address.to_domain()

            rate = order.commission_rate
            if rate is None:
                rate = self.commission.rate_for(order.seller)
            pending = order.pending_offer if order.mode == OrderMode.OFFER else None
            if order.mode == OrderMode.OFFER and pending is None:
                quote = None
            else:
                quote = self.quote(
                    order,
                    rate,
                    offer_amount_cents=pending.amount_cents if pending else None,
                    fulfillment_type=data.fulfillment_type,
                    destination=address,
                )

            if order.mode == OrderMode.BUY:
                # a charge awaiting client action was sized for the old totals
                self.void_pending_charge(order)
            order.fulfillment_type = data.fulfillment_type
            order.shipping_address = address
            if pending is not None:
                pending.shipping_total_cents = quote.totals.shipping_total_cents
                pending.tax_total_cents = quote.totals.tax_total_cents
            elif quote is not None:
                order.items_total_cents = quote.totals.items_total_cents
                order.shipping_total_cents = quote.totals.shipping_total_cents
                order.tax_total_cents = quote.totals.tax_total_cents
                order.buyer_total_cents = quote.totals.buyer_total_cents
                for li in order.line_items:
                    li.sales_tax_cents = quote.line_taxes[li.id]
            return order

        return self.run(order_id, step)

    def set_payment(self, order_id: str, payment_method_ref: str) -> Order:
        if not payment_method_ref or not payment_method_ref.strip():
            raise ValidationError("invalid_payment_method")

        def step(order: Order, follow_ups: FollowUps) -> Order:
            if order.state != OrderState.PENDING:
                raise ValidationError("invalid_state", state=order.state.value)
            if order.payment_method_ref != payment_method_ref:
                # a charge awaiting client action belongs to the previous method
                self.void_pending_charge(order)
            order.payment_method_ref = payment_method_ref
            return order

        return self.run(order_id, step)

    # ------------------------------------------------------------------ #
    # Totals
    # ------------------------------------------------------------------ #

    def quote(
        self,
        order: Order,
        commission_rate,
        offer_amount_cents: Optional[int] = None,
        fulfillment_type: Optional[FulfillmentType] = None,
        destination=None,
    ) -> Quote:
        """Compute shipping, tax and totals without touching the order.

        Calls the tax gateway once per line item. ``fulfillment_type`` and
        ``destination`` default to what is already stored on the order.
        """
        fulfillment_type = fulfillment_type or order.fulfillment_type
        if destination is None:
            destination = order.shipping_address
        try:
            shipping = {
                li.id: line_shipping_cents(li, fulfillment_type, destination) for li in order.line_items
            }
        except ValueError as exc:
            raise ValidationError(str(exc)) from None

        if offer_amount_cents is None:
            amounts = {li.id: li.total_price_cents for li in order.line_items}
        else:
            # the negotiated amount covers the whole (single item) order
            first = order.line_items[0]
            amounts = {li.id: offer_amount_cents if li is first else 0 for li in order.line_items}

        taxes = {
            li.id: self._compute_tax(order, li, amounts[li.id], shipping[li.id], fulfillment_type, destination)
            for li in order.line_items
        }
        totals = compute_totals(
            order.line_items,
            sum(shipping.values()),
            sum(taxes.values()),
            commission_rate,
            offer_amount_cents=offer_amount_cents,
        )
        commissions = {li_id: commission_fee(amount, commission_rate) for li_id, amount in amounts.items()}
        return Quote(totals=totals, line_taxes=taxes, line_commissions=commissions)

    def _compute_tax(self, order, line_item, amount_cents, shipping_cents, fulfillment_type, destination) -> int:
        if amount_cents == 0:
            return 0
        origin = line_item.location
        if origin is None:
            raise ValidationError("missing_item_location", item_id=line_item.item_id)
        if fulfillment_type != FulfillmentType.SHIP:
            destination = origin
        try:
            return int(self.tax.compute_tax(amount_cents, origin, destination, shipping_cents))
        except Exception as exc:
            self.observe("gateway.error", order, gateway="tax", error=repr(exc))
            raise ProcessingError("tax_calculator_failure", message=str(exc)) from exc

    def _freeze(self, order: Order, quote: Quote, totals: Optional[OrderTotals] = None) -> None:
        order.apply_totals(totals or quote.totals)
        for li in order.line_items:
            li.sales_tax_cents = quote.line_taxes[li.id]
            li.commission_fee_cents = quote.line_commissions[li.id]

    # ------------------------------------------------------------------ #
    # Gateway helpers
    # ------------------------------------------------------------------ #

    def validate_commit(self, order: Order) -> None:
        """Check the order carries everything needed to commit.

        Raises:
            ValidationError: ``missing_required_info`` or
                ``artwork_version_mismatch``.
        """
        if not order.can_commit():
            raise ValidationError("missing_required_info")
        for li in order.line_items:
            if li.version_id is None:
                continue
            try:
                current = self.inventory.current_version(li.item_id)
            except Exception as exc:
                self.observe("gateway.error", order, gateway="inventory", error=repr(exc))
                raise ProcessingError("inventory_gateway_error", message=str(exc)) from exc
            if current != li.version_id:
                self.observe("submit.artwork_version_mismatch", order, item_id=li.item_id)
                raise ValidationError("artwork_version_mismatch", item_id=li.item_id)

    def _deduct_inventory(self, order: Order) -> List[LineItem]:
        """Deduct stock for every line item, undoing partial work on failure."""
        deducted: List[LineItem] = []
        for li in order.line_items:
            try:
                ok = self.inventory.reserve(li.item_id, li.quantity)
            except Exception as exc:
                self.observe("gateway.error", order, gateway="inventory", error=repr(exc))
                self._release(order, deducted)
                raise ProcessingError("inventory_gateway_error", message=str(exc)) from exc
            if not ok:
                self.observe("inventory.insufficient", order, item_id=li.item_id)
                self._release(order, deducted)
                raise InsufficientInventoryError(item_id=li.item_id)
            deducted.append(li)
            self.observe("inventory.reserved", order, item_id=li.item_id, quantity=li.quantity)
        return deducted

    def _release(self, order: Order, line_items: List[LineItem]) -> None:
        for li in line_items:
            try:
                self.inventory.release(li.item_id, li.quantity)
            except Exception as exc:
                logger.exception("releasing %s failed for order %s", li.item_id, order.id)
                self.observe("compensation.failed", order, gateway="inventory", item_id=li.item_id, error=repr(exc))
            else:
                self.observe("inventory.released", order, item_id=li.item_id, quantity=li.quantity)

    def _compensate(self, order: Order, transition: Transition, deducted: List[LineItem]) -> None:
        if deducted and transition.compensation == Compensation.RELEASE_INVENTORY:
            self._release(order, deducted)
        self.observe("saga.compensated", order, event=transition.event.value, compensation=transition.compensation.value)

    def _record(self, order: Order, kind: TransactionType, result: PaymentResult, amount_cents=None) -> Transaction:
        transaction = Transaction(
            id=str(uuid.uuid4()),
            transaction_type=kind,
            status=result.status,
            created_at=self.clock(),
            external_id=result.external_id,
            amount_cents=result.amount_cents if result.amount_cents is not None else amount_cents,
            failure_code=result.failure_code,
            failure_message=result.failure_message,
            decline_code=result.decline_code,
            payload=dict(result.action_data or {}),
        )
        order.transactions.append(transaction)
        return transaction

    def _pay(self, order: Order, kind: TransactionType, call, *args, amount_cents=None) -> Tuple[Transaction, PaymentResult]:
        """Call the payment gateway and record the Transaction whatever happens.

        Raises:
            ProcessingError: ``payment_gateway_error`` when the gateway call
                raised (timeouts included); a failed Transaction is recorded.
        """
        try:
            result = call(*args)
        except Exception as exc:
            self.observe("gateway.error", order, gateway="payments", operation=kind.value, error=repr(exc))
            failed = PaymentResult(
                status=TransactionStatus.FAILURE,
                external_id=order.external_charge_id if kind != TransactionType.HOLD else None,
                failure_code="gateway_error",
                failure_message=str(exc) or exc.__class__.__name__,
            )
            self._record(order, kind, failed, amount_cents)
            raise ProcessingError("payment_gateway_error", operation=kind.value, message=str(exc)) from exc

        transaction = self._record(order, kind, result, amount_cents)
        if result.status == TransactionStatus.SUCCESS:
            past = {
                TransactionType.HOLD: "payment.held",
                TransactionType.CAPTURE: "payment.captured",
                TransactionType.CONFIRM: "payment.confirmed",
                TransactionType.REFUND: "payment.refunded",
            }[kind]
            self.observe(past, order, external_id=result.external_id)
        elif result.status == TransactionStatus.REQUIRES_ACTION:
            self.observe("payment.requires_action", order, operation=kind.value, external_id=result.external_id)
        else:
            self.observe(
                "payment.failed",
                order,
                operation=kind.value,
                failure_code=result.failure_code,
                decline_code=result.decline_code,
            )
        return transaction, result

    def _authorize(self, order: Order, amount_cents: int) -> Tuple[Transaction, PaymentResult]:
        """Place a hold, or confirm the one awaiting client action.

        A hold awaiting action is only confirmed when it was placed for
        ``amount_cents``; otherwise it is voided and a new hold is placed.
        """
        if order.external_charge_id:
            if self._held_amount(order) == amount_cents:
                return self._pay(order, TransactionType.CONFIRM, self.payments.confirm, order.external_charge_id)
            self.void_pending_charge(order)
        return self._pay(
            order,
            TransactionType.HOLD,
            self.payments.hold,
            amount_cents,
            order.currency_code,
            order.payment_method_ref,
            amount_cents=amount_cents,
        )

    def _held_amount(self, order: Order) -> Optional[int]:
        for transaction in reversed(order.transactions):
            if (
                transaction.transaction_type == TransactionType.HOLD
                and transaction.external_id == order.external_charge_id
            ):
                return transaction.amount_cents
        return None

    def void_pending_charge(self, order: Order) -> None:
        """Void a hold still awaiting client action and forget its reference.

        Only call this while no committed hold backs the order: Buy mode
        before submission, Offer mode before acceptance.
        """
        if order.external_charge_id:
            self._void(order, order.external_charge_id)
            order.external_charge_id = None

    def _void(self, order: Order, external_id: str) -> None:
        """Best-effort refund of a hold taken by a step that is being undone."""
        try:
            result = self.payments.refund(external_id)
        except Exception as exc:
            logger.exception("voiding %s failed for order %s", external_id, order.id)
            result = PaymentResult(
                status=TransactionStatus.FAILURE,
                external_id=external_id,
                failure_code="gateway_error",
                failure_message=str(exc) or exc.__class__.__name__,
            )
        self._record(order, TransactionType.REFUND, result)
        if result.status != TransactionStatus.SUCCESS:
            self.observe("compensation.failed", order, gateway="payments", external_id=external_id)
        else:
            self.observe("payment.refunded", order, external_id=external_id)

    # ------------------------------------------------------------------ #
    # Submit
    # ------------------------------------------------------------------ #

    def submit(self, order_id: str, actor_id: Optional[str] = None) -> Order:
        """Submit a Buy-mode order: freeze totals, deduct stock, hold payment.

        Raises:
            ValidationError: Preconditions not met; nothing was called.
            InsufficientInventoryError: Stock was not available.
            FailedTransactionError: The hold was declined; stock released.
            PaymentRequiresActionError: The client must act; stock released
                and the payment reference kept for the retry.
            ProcessingError: A gateway errored; completed steps compensated.
        """
        return self.run(order_id, lambda order, follow_ups: self._submit(order, actor_id, follow_ups))

    def _submit(self, order: Order, actor_id: Optional[str], follow_ups: FollowUps) -> Order:
        transition = self.state_machine.transition_for(order.state, OrderEvent.SUBMIT)
        if order.mode != OrderMode.BUY:
            raise ValidationError("cant_submit", mode=order.mode.value)
        self.validate_commit(order)
        quote = self.quote(order, self.commission.rate_for(order.seller))

        deducted = self._deduct_inventory(order)
        try:
            transaction, result = self._authorize(order, quote.totals.buyer_total_cents)
        except ProcessingError:
            self._compensate(order, transition, deducted)
            raise
        if result.status == TransactionStatus.FAILURE:
            self._compensate(order, transition, deducted)
            order.external_charge_id = None
            raise FailedTransactionError("charge_authorization_failed", transaction)
        if result.status == TransactionStatus.REQUIRES_ACTION:
            self._compensate(order, transition, deducted)
            order.external_charge_id = result.external_id
            raise PaymentRequiresActionError(result.action_data)

        now = self.clock()
        self._freeze(order, quote)
        order.external_charge_id = result.external_id
        order.inventory_deducted = True
        order.last_submitted_at = now
        self.state_machine.apply(order, transition, now)
        self.observe("saga.committed", order, event=transition.event.value, state=order.state.value)
        self.schedule_state_follow_ups(order, follow_ups)
        follow_ups.publish("order.submitted", actor_id)
        return order

    # ------------------------------------------------------------------ #
    # Approve
    # ------------------------------------------------------------------ #

    def approve(self, order_id: str, actor_id: Optional[str] = None) -> Order:
        """Seller approves a submitted order.

        Buy mode captures the existing hold. Offer-mode orders are approved by
        accepting the last offer (see ``OfferService.accept_offer``); calling
        this on one accepts the current last offer.
        """
        return self.run(order_id, lambda order, follow_ups: self.approve_step(order, follow_ups, actor_id))

    def approve_step(
        self, order: Order, follow_ups: FollowUps, actor_id: Optional[str], offer: Optional[Offer] = None
    ) -> Order:
        transition = self.state_machine.transition_for(order.state, OrderEvent.APPROVE)
        if order.mode == OrderMode.OFFER:
            return self._accept(order, transition, offer or order.last_offer, actor_id, follow_ups)

        if not order.external_charge_id:
            raise ValidationError("missing_payment_reference")
        transaction, result = self._pay(order, TransactionType.CAPTURE, self.payments.capture, order.external_charge_id)
        if result.status == TransactionStatus.REQUIRES_ACTION:
            raise PaymentRequiresActionError(result.action_data)
        if result.status == TransactionStatus.FAILURE:
            # the hold is still in place; the seller can retry
            raise FailedTransactionError("capture_failed", transaction)

        totals = compute_totals(
            order.line_items,
            order.shipping_total_cents or 0,
            order.tax_total_cents or 0,
            order.commission_rate,
            transaction_fee_cents=result.fee_cents or 0,
        )
        self._commit_approval(order, transition, totals, actor_id, follow_ups)
        return order

    def _accept(
        self,
        order: Order,
        transition: Transition,
        offer: Optional[Offer],
        actor_id: Optional[str],
        follow_ups: FollowUps,
    ) -> Order:
        if offer is None or not order.is_last_offer(offer):
            raise ValidationError("not_last_offer")
        if not offer.submitted:
            raise ValidationError("invalid_offer")
        if not order.payment_method_ref:
            raise ValidationError("missing_required_info")

        quote = Quote(
            totals=compute_totals(
                order.line_items,
                offer.shipping_total_cents or 0,
                offer.tax_total_cents or 0,
                order.commission_rate,
                offer_amount_cents=offer.amount_cents,
            ),
            line_taxes={li.id: (offer.tax_total_cents or 0) if i == 0 else 0 for i, li in enumerate(order.line_items)},
            line_commissions={
                li.id: commission_fee(offer.amount_cents, order.commission_rate) if i == 0 else 0
                for i, li in enumerate(order.line_items)
            },
        )

        deducted = self._deduct_inventory(order)
        try:
            hold, held = self._authorize(order, quote.totals.buyer_total_cents)
        except ProcessingError:
            self._compensate(order, transition, deducted)
            raise
        if held.status == TransactionStatus.FAILURE:
            self._compensate(order, transition, deducted)
            order.external_charge_id = None
            raise FailedTransactionError("charge_authorization_failed", hold)
        if held.status == TransactionStatus.REQUIRES_ACTION:
            self._compensate(order, transition, deducted)
            order.external_charge_id = held.external_id
            raise PaymentRequiresActionError(held.action_data)

        try:
            capture, captured = self._pay(order, TransactionType.CAPTURE, self.payments.capture, held.external_id)
        except ProcessingError:
            self._void(order, held.external_id)
            order.external_charge_id = None
            self._compensate(order, transition, deducted)
            raise
        if captured.status != TransactionStatus.SUCCESS:
            self._void(order, held.external_id)
            order.external_charge_id = None
            self._compensate(order, transition, deducted)
            raise FailedTransactionError("capture_failed", capture)

        order.external_charge_id = held.external_id
        order.inventory_deducted = True
        for li in order.line_items:
            li.sales_tax_cents = quote.line_taxes[li.id]
            li.commission_fee_cents = quote.line_commissions[li.id]
        totals = with_transaction_fee(quote.totals, captured.fee_cents or 0)
        self._commit_approval(order, transition, totals, actor_id, follow_ups)
        return order

    def _commit_approval(self, order, transition, totals, actor_id, follow_ups) -> None:
        now = self.clock()
        order.apply_totals(totals)
        order.last_approved_at = now
        self.state_machine.apply(order, transition, now)
        self.observe("saga.committed", order, event=transition.event.value, state=order.state.value)
        follow_ups.schedule(now, CallbackKind.RECORD_TAX, OrderState.APPROVED)
        follow_ups.publish("order.approved", actor_id)

    # ------------------------------------------------------------------ #
    # Cancel / refund / return
    # ------------------------------------------------------------------ #

    def reject(self, order_id: str, actor_id: Optional[str] = None, reason: Optional[StateReason] = None) -> Order:
        return self._cancel_transition(order_id, OrderEvent.REJECT, actor_id, reason)

    def buyer_cancel(self, order_id: str, actor_id: Optional[str] = None) -> Order:
        return self._cancel_transition(order_id, OrderEvent.BUYER_CANCEL, actor_id)

    def refund(self, order_id: str, actor_id: Optional[str] = None) -> Order:
        return self._cancel_transition(order_id, OrderEvent.REFUND, actor_id)

    def return_order(self, order_id: str, actor_id: Optional[str] = None) -> Order:
        return self._cancel_transition(order_id, OrderEvent.RETURN, actor_id)

    def _cancel_transition(self, order_id, event, actor_id, reason=None) -> Order:
        return self.run(
            order_id, lambda order, follow_ups: self.cancel_step(order, event, follow_ups, actor_id, reason)
        )

    def cancel_step(
        self,
        order: Order,
        event: OrderEvent,
        follow_ups: FollowUps,
        actor_id: Optional[str] = None,
        reason: Optional[StateReason] = None,
    ) -> Order:
        """Refund first, then release stock, then move the order.

        Raises:
            ValidationError: ``invalid_state`` when ``event`` does not lead
                to a transition that owes a refund and release.
            ProcessingError: ``refund_failed`` when the refund did not go
                through; the order keeps its state and no history is written.
        """
        transition = self.state_machine.transition_for(order.state, event)
        if transition.compensation != Compensation.REFUND_AND_RELEASE:
            raise ValidationError("invalid_state", state=order.state.value, event=event.value)
        if order.external_charge_id:
            try:
                transaction, result = self._pay(order, TransactionType.REFUND, self.payments.refund, order.external_charge_id)
            except ProcessingError as exc:
                raise ProcessingError("refund_failed", **exc.data) from exc
            if result.status != TransactionStatus.SUCCESS:
                raise ProcessingError(
                    "refund_failed",
                    failure_code=transaction.failure_code,
                    failure_message=transaction.failure_message,
                )
        if order.inventory_deducted:
            self._release(order, order.line_items)
            order.inventory_deducted = False

        now = self.clock()
        self.state_machine.apply(order, transition, now, reason=reason)
        self.observe("saga.committed", order, event=transition.event.value, state=order.state.value)
        if any(li.sales_tax_transaction_id for li in order.line_items):
            follow_ups.schedule(now, CallbackKind.RECORD_TAX_REFUND, order.state)
        follow_ups.publish(f"order.{order.state.value}", actor_id)
        return order

    # ------------------------------------------------------------------ #
    # Fulfillment and abandonment
    # ------------------------------------------------------------------ #

    def fulfill_at_once(self, order_id: str, fulfillment, actor_id: Optional[str] = None) -> Order:
        """Record shipment details for every line item and mark the order fulfilled."""
        try:
            data = fulfillment if isinstance(fulfillment, FulfillmentIn) else FulfillmentIn.model_validate(fulfillment)
        except SchemaError as exc:
            raise ValidationError("invalid_fulfillment", message=str(exc)) from None

        def step(order: Order, follow_ups: FollowUps) -> Order:
            transition = self.state_machine.transition_for(order.state, OrderEvent.FULFILL)
            if order.fulfillment_type != FulfillmentType.SHIP:
                raise ValidationError("wrong_fulfillment_type")
            now = self.clock()
            order.fulfillment = Fulfillment(id=str(uuid.uuid4()), created_at=now, **data.model_dump())
            for li in order.line_items:
                li.fulfillment_id = order.fulfillment.id
            return self._fulfill(order, transition, now, actor_id, follow_ups)

        return self.run(order_id, step)

    def confirm_pickup(self, order_id: str, actor_id: Optional[str] = None) -> Order:
        return self._confirm(order_id, FulfillmentType.PICKUP, actor_id)

    def confirm_fulfillment(self, order_id: str, actor_id: Optional[str] = None) -> Order:
        return self._confirm(order_id, FulfillmentType.SHIP, actor_id)

    def _confirm(self, order_id, fulfillment_type, actor_id) -> Order:
        def step(order: Order, follow_ups: FollowUps) -> Order:
            transition = self.state_machine.transition_for(order.state, OrderEvent.FULFILL)
            if order.fulfillment_type != fulfillment_type:
                raise ValidationError("wrong_fulfillment_type")
            return self._fulfill(order, transition, self.clock(), actor_id, follow_ups)

        return self.run(order_id, step)

    def _fulfill(self, order, transition, now, actor_id, follow_ups) -> Order:
        self.state_machine.apply(order, transition, now)
        self.observe("saga.committed", order, event=transition.event.value, state=order.state.value)
        follow_ups.publish("order.fulfilled", actor_id)
        return order

    def abandon(self, order_id: str) -> Order:
        return self.run(order_id, lambda order, follow_ups: self._abandon(order, follow_ups))

    def _abandon(self, order: Order, follow_ups: FollowUps) -> Order:
        transition = self.state_machine.transition_for(order.state, OrderEvent.ABANDON)
        # a hold still waiting on client action
        self.void_pending_charge(order)
        self.state_machine.apply(order, transition, self.clock())
        self.observe("saga.committed", order, event=transition.event.value, state=order.state.value)
        follow_ups.publish("order.abandoned")
        return order

    # ------------------------------------------------------------------ #
    # Scheduled callbacks
    # ------------------------------------------------------------------ #

    def handle_callback(self, order_id: str, kind, expected_state, attempt: int = 0) -> Order:
        """Entry point for the scheduled callback facility.

        Every callback is safe to deliver more than once: it does nothing when
        the order already left ``expected_state`` or the work is already done.
        """
        kind = CallbackKind(kind)
        expected_state = OrderState(expected_state)
        handler = {
            CallbackKind.EXPIRE: self._expire,
            CallbackKind.REMIND: self._remind,
            CallbackKind.RECORD_TAX: self._record_tax,
            CallbackKind.RECORD_TAX_REFUND: self._record_tax_refund,
        }[kind]
        return self.run(order_id, lambda order, follow_ups: handler(order, expected_state, attempt, follow_ups))

    def _skip(self, order: Order, kind: CallbackKind, why: str) -> Order:
        self.observe("callback.skipped", order, kind=kind.value, why=why, state=order.state.value)
        return order

    def _expire(self, order: Order, expected_state: OrderState, attempt: int, follow_ups: FollowUps) -> Order:
        if order.state != expected_state:
            return self._skip(order, CallbackKind.EXPIRE, "state_changed")
        if order.state_expires_at is None or order.state_expires_at > self.clock():
            return self._skip(order, CallbackKind.EXPIRE, "not_expired")
        if order.state == OrderState.PENDING:
            return self._abandon(order, follow_ups)
        if order.state == OrderState.SUBMITTED:
            last = order.last_offer
            if last is not None and order.offer_role(last) == PartyRole.SELLER:
                return self.cancel_step(order, OrderEvent.BUYER_LAPSE, follow_ups)
            return self.cancel_step(order, OrderEvent.SELLER_LAPSE, follow_ups)
        return self._skip(order, CallbackKind.EXPIRE, "no_expiry_transition")

    def _remind(self, order: Order, expected_state: OrderState, attempt: int, follow_ups: FollowUps) -> Order:
        if order.state != expected_state:
            return self._skip(order, CallbackKind.REMIND, "state_changed")
        if order.state_expires_at is None or order.state_expires_at <= self.clock():
            return self._skip(order, CallbackKind.REMIND, "expired")
        if order.mode == OrderMode.OFFER and order.state == OrderState.SUBMITTED:
            follow_ups.publish("offer.respond_reminder")
        else:
            follow_ups.publish("order.expiration_reminder")
        return order

    def _tax_addresses(self, order: Order, line_item: LineItem):
        origin = line_item.location
        destination = order.shipping_address if order.fulfillment_type == FulfillmentType.SHIP else origin
        return origin, destination

    def _record_tax(self, order: Order, expected_state: OrderState, attempt: int, follow_ups: FollowUps) -> Order:
        if order.state not in (OrderState.APPROVED, OrderState.FULFILLED):
            return self._skip(order, CallbackKind.RECORD_TAX, "state_changed")
        for li in order.line_items:
            if li.sales_tax_transaction_id or not li.sales_tax_cents:
                continue
            origin, destination = self._tax_addresses(order, li)
            try:
                li.sales_tax_transaction_id = self.tax.record_collected(
                    reference=f"{order.id}__{li.id}",
                    amount_cents=li.total_price_cents,
                    tax_cents=li.sales_tax_cents,
                    origin=origin,
                    destination=destination,
                    shipping_cents=line_shipping_cents(li, order.fulfillment_type, order.shipping_address),
                    transaction_date=order.last_approved_at or self.clock(),
                )
            except Exception as exc:
                logger.exception("recording tax failed for order %s", order.id)
                self.observe("tax.recording_failed", order, line_item_id=li.id, attempt=attempt, error=repr(exc))
                self._retry_tax(CallbackKind.RECORD_TAX, expected_state, attempt, follow_ups)
                return order
            self.observe("tax.recorded", order, line_item_id=li.id)
        return order

    def _record_tax_refund(self, order: Order, expected_state: OrderState, attempt: int, follow_ups: FollowUps) -> Order:
        if order.state != expected_state:
            return self._skip(order, CallbackKind.RECORD_TAX_REFUND, "state_changed")
        for li in order.line_items:
            if not li.sales_tax_transaction_id or li.sales_tax_refunded_at:
                continue
            try:
                self.tax.record_refund(f"{order.id}__{li.id}", order.state_updated_at)
                li.sales_tax_refunded_at = self.clock()
            except Exception as exc:
                logger.exception("recording tax refund failed for order %s", order.id)
                self.observe("tax.recording_failed", order, line_item_id=li.id, attempt=attempt, error=repr(exc))
                self._retry_tax(CallbackKind.RECORD_TAX_REFUND, expected_state, attempt, follow_ups)
                return order
            self.observe("tax.recorded", order, line_item_id=li.id, refund=True)
        return order

    def _retry_tax(self, kind, expected_state, attempt, follow_ups) -> None:
        if attempt + 1 < self.tax_max_attempts:
            follow_ups.schedule(self.clock() + self.tax_retry_delay, kind, expected_state, attempt + 1)
