"""Domain models and ports for orders and offers.

This module contains the dataclasses describing an order (parties, line
items, offers, transactions, state history, fulfillment), the enums used by
the state machines, and the protocol definitions (ports) for the external
collaborators the order saga talks to: inventory, payments, tax, event
sink, scheduled callbacks, commission policy, observer and the record store.
Nothing in here performs I/O.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar, ContextManager, List, Optional, Protocol, Union


# ---- Enums ----
class OrderState(str, Enum):
    """States of the order state machine."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    FULFILLED = "fulfilled"
    CANCELED = "canceled"
    REFUNDED = "refunded"
    RETURNED = "returned"
    ABANDONED = "abandoned"


class StateReason(str, Enum):
    SELLER_LAPSED = "seller_lapsed"
    SELLER_REJECTED = "seller_rejected"
    BUYER_LAPSED = "buyer_lapsed"
    BUYER_REJECTED = "buyer_rejected"
    BUYER_CANCELED = "buyer_canceled"


class OrderMode(str, Enum):
    BUY = "buy"
    OFFER = "offer"


class FulfillmentType(str, Enum):
    PICKUP = "pickup"
    SHIP = "ship"


class PartyRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"


class TransactionType(str, Enum):
    HOLD = "hold"
    CAPTURE = "capture"
    CONFIRM = "confirm"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    REQUIRES_ACTION = "requires_action"


class CallbackKind(str, Enum):
    """Follow-up work requested from the scheduled callback facility."""

    EXPIRE = "expire"
    REMIND = "remind"
    RECORD_TAX = "record_tax"
    RECORD_TAX_REFUND = "record_tax_refund"


# ---- Parties ----
@dataclass(frozen=True)
class User:
    """An individual collector taking part in an order."""

    id: str
    party_type: ClassVar[str] = "user"

    @property
    def party_id(self) -> str:
        return self.id


@dataclass(frozen=True)
class Partner:
    """A gallery or institution taking part in an order."""

    id: str
    party_type: ClassVar[str] = "partner"

    @property
    def party_id(self) -> str:
        return self.id


Party = Union[User, Partner]

PARTY_TYPES = {User.party_type: User, Partner.party_type: Partner}


def party_from(party_type: str, party_id: str) -> Party:
    """Build a Party from its persisted ``(type, id)`` pair.

    Raises:
        ValueError: If ``party_type`` is not a known party kind.
    """
    try:
        return PARTY_TYPES[party_type](party_id)
    except KeyError:
        raise ValueError(f"Unknown party type: {party_type}") from None


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class Address:
    """Postal address, used for shipping destinations and item locations."""

    country: str
    name: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    postal_code: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass
class LineItem:
    """A catalog item being purchased.

    Attributes:
        id: Identifier of the line item.
        item_id: Catalog item identifier.
        version_id: Catalog version the buyer saw when creating the order.
        unit_price_cents: Listed price per unit in minor units.
        quantity: Number of units.
        location: Where the item ships from; required to quote shipping.
        domestic_shipping_fee_cents: Shipping fee within the item's country.
        international_shipping_fee_cents: Shipping fee anywhere else.
        sales_tax_cents: Tax computed for this line at the last totals update.
        commission_fee_cents: Commission frozen for this line.
        sales_tax_transaction_id: Tax gateway reference once collected tax
            has been recorded.
        sales_tax_refunded_at: When the refund of that collected tax was
            recorded.
        fulfillment_id: Fulfillment this line item shipped with.
    """

    id: str
    item_id: str
    version_id: Optional[str]
    unit_price_cents: int
    quantity: int = 1
    location: Optional[Address] = None
    domestic_shipping_fee_cents: Optional[int] = None
    international_shipping_fee_cents: Optional[int] = None
    sales_tax_cents: Optional[int] = None
    commission_fee_cents: Optional[int] = None
    sales_tax_transaction_id: Optional[str] = None
    sales_tax_refunded_at: Optional[datetime] = None
    fulfillment_id: Optional[str] = None

    @property
    def total_price_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass
class Offer:
    """One round of negotiation on an Offer-mode order.

    An offer is pending until ``submitted_at`` is set, which happens exactly
    once. Later rounds create new offers pointing back through
    ``responds_to_id``.
    """

    id: str
    order_id: str
    amount_cents: int
    from_party: Party
    creator_id: str
    created_at: datetime
    responds_to_id: Optional[str] = None
    submitted_at: Optional[datetime] = None
    note: Optional[str] = None
    shipping_total_cents: Optional[int] = None
    tax_total_cents: Optional[int] = None

    @property
    def submitted(self) -> bool:
        return self.submitted_at is not None


@dataclass(frozen=True)
class Transaction:
    """Record of one payment gateway interaction. Never mutated."""

    id: str
    transaction_type: TransactionType
    status: TransactionStatus
    created_at: datetime
    external_id: Optional[str] = None
    amount_cents: Optional[int] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    decline_code: Optional[str] = None
    payload: dict = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.status == TransactionStatus.FAILURE


@dataclass(frozen=True)
class StateHistory:
    id: str
    state: OrderState
    created_at: datetime
    reason: Optional[StateReason] = None


@dataclass(frozen=True)
class Fulfillment:
    id: str
    created_at: datetime
    courier: Optional[str] = None
    tracking_id: Optional[str] = None
    estimated_delivery: Optional[date] = None
    notes: Optional[str] = None


@dataclass
class Order:
    """The root aggregate of a purchase between one buyer and one seller.

    Financial fields are ``None`` until a transition computes them. All
    amounts are integer minor units of ``currency_code``.
    """

    id: str
    code: str
    mode: OrderMode
    buyer: Party
    seller: Party
    currency_code: str
    state: OrderState
    created_at: datetime
    state_updated_at: datetime
    state_expires_at: Optional[datetime] = None
    state_reason: Optional[StateReason] = None
    line_items: List[LineItem] = field(default_factory=list)
    fulfillment_type: Optional[FulfillmentType] = None
    shipping_address: Optional[Address] = None
    payment_method_ref: Optional[str] = None
    external_charge_id: Optional[str] = None
    inventory_deducted: bool = False
    last_offer_id: Optional[str] = None
    items_total_cents: Optional[int] = None
    shipping_total_cents: Optional[int] = None
    tax_total_cents: Optional[int] = None
    buyer_total_cents: Optional[int] = None
    commission_rate: Optional[Decimal] = None
    commission_fee_cents: Optional[int] = None
    transaction_fee_cents: Optional[int] = None
    seller_total_cents: Optional[int] = None
    last_submitted_at: Optional[datetime] = None
    last_approved_at: Optional[datetime] = None
    offers: List[Offer] = field(default_factory=list)
    transactions: List[Transaction] = field(default_factory=list)
    state_histories: List[StateHistory] = field(default_factory=list)
    fulfillment: Optional[Fulfillment] = None

    # -- parties --
    def role_of(self, party: Party) -> Optional[PartyRole]:
        if party == self.buyer:
            return PartyRole.BUYER
        if party == self.seller:
            return PartyRole.SELLER
        return None

    # -- shipping / payment --
    def shipping_info(self) -> bool:
        if self.fulfillment_type == FulfillmentType.PICKUP:
            return True
        return (
            self.fulfillment_type == FulfillmentType.SHIP
            and self.shipping_address is not None
            and bool(self.shipping_address.country)
        )

    def can_commit(self) -> bool:
        return self.shipping_info() and bool(self.payment_method_ref)

    # -- offers --
    def find_offer(self, offer_id: str) -> Optional[Offer]:
        return next((o for o in self.offers if o.id == offer_id), None)

    @property
    def last_offer(self) -> Optional[Offer]:
        return self.find_offer(self.last_offer_id) if self.last_offer_id else None

    @property
    def pending_offer(self) -> Optional[Offer]:
        return next((o for o in self.offers if not o.submitted), None)

    def is_last_offer(self, offer: Offer) -> bool:
        return self.last_offer_id is not None and offer.id == self.last_offer_id

    def offer_role(self, offer: Offer) -> Optional[PartyRole]:
        return self.role_of(offer.from_party)

    def awaiting_response_from(self, offer: Offer) -> Optional[PartyRole]:
        """Return who must answer ``offer``: the counterparty of its submitter."""
        if not offer.submitted:
            return None
        role = self.offer_role(offer)
        if role == PartyRole.BUYER:
            return PartyRole.SELLER
        if role == PartyRole.SELLER:
            return PartyRole.BUYER
        return None

    def apply_totals(self, totals) -> None:
        """Copy a computed totals snapshot onto the order."""
        self.items_total_cents = totals.items_total_cents
        self.shipping_total_cents = totals.shipping_total_cents
        self.tax_total_cents = totals.tax_total_cents
        self.buyer_total_cents = totals.buyer_total_cents
        self.commission_rate = totals.commission_rate
        self.commission_fee_cents = totals.commission_fee_cents
        self.transaction_fee_cents = totals.transaction_fee_cents
        self.seller_total_cents = totals.seller_total_cents


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of a payment gateway call.

    Attributes:
        status: ``SUCCESS``, ``FAILURE`` or ``REQUIRES_ACTION``.
        external_id: Gateway charge/hold identifier.
        amount_cents: Amount the gateway acted on.
        failure_code: Gateway error code on failure.
        failure_message: Human readable failure message.
        decline_code: Issuer decline reason, when reported.
        action_data: Payload the client needs when action is required.
        fee_cents: Processing fee reported by the gateway (capture only).
    """

    status: TransactionStatus
    external_id: Optional[str] = None
    amount_cents: Optional[int] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    decline_code: Optional[str] = None
    action_data: Optional[dict] = None
    fee_cents: Optional[int] = None


# ---- Ports (DIP) ----
class InventoryPort(Protocol):
    """Port describing the inventory/catalog operations used by the saga."""

    def reserve(self, item_id: str, quantity: int) -> bool:
        """Deduct ``quantity`` units of ``item_id``.

        Args:
            item_id: Catalog item identifier.
            quantity: Units to deduct.

        Returns:
            True if the stock was deducted, False if there was not enough.

        Raises:
            NotImplementedError: If the method is not implemented by the
                concrete class.
        """
        raise NotImplementedError()

    def release(self, item_id: str, quantity: int) -> None:
        """Put ``quantity`` units back. Must tolerate a double release."""
        raise NotImplementedError()

    def current_version(self, item_id: str) -> Optional[str]:
        """Return the catalog item's current version id."""
        raise NotImplementedError()


class PaymentsPort(Protocol):
    """Port describing the two-phase payment operations.

    Every method returns a ``PaymentResult``; declines are results, not
    exceptions. Implementations raise only when the gateway could not be
    reached or answered something unexpected.
    """

    def hold(self, amount_cents: int, currency: str, payment_method_ref: str) -> PaymentResult:
        """Authorize ``amount_cents`` on the buyer's payment method."""
        raise NotImplementedError()

    def capture(self, external_id: str) -> PaymentResult:
        raise NotImplementedError()

    def confirm(self, external_id: str) -> PaymentResult:
        """Confirm a hold after the client completed a required action."""
        raise NotImplementedError()

    def refund(self, external_id: str) -> PaymentResult:
        """Refund a captured charge or release an uncaptured hold."""
        raise NotImplementedError()


class TaxPort(Protocol):
    """Port describing sales tax calculation and recording."""

    def compute_tax(
        self, amount_cents: int, origin: Address, destination: Address, shipping_cents: int
    ) -> int:
        """Return the tax to collect, in minor units."""
        raise NotImplementedError()

    def record_collected(
        self,
        reference: str,
        amount_cents: int,
        tax_cents: int,
        origin: Address,
        destination: Address,
        shipping_cents: int,
        transaction_date: datetime,
    ) -> str:
        """Record tax collected for a sale and return the tax transaction id."""
        raise NotImplementedError()

    def record_refund(self, reference: str, refund_date: datetime) -> None:
        raise NotImplementedError()


class EventSink(Protocol):
    def publish(self, event_type: str, order_id: str, actor_id: Optional[str]) -> None:
        raise NotImplementedError()


class Scheduler(Protocol):
    """Schedule ``OrderProcessor.handle_callback`` to run at ``when``."""

    def schedule_at(
        self,
        when: datetime,
        order_id: str,
        kind: CallbackKind,
        expected_state: OrderState,
        attempt: int = 0,
    ) -> None:
        raise NotImplementedError()


class SagaObserver(Protocol):
    def on_event(self, name: str, tags: dict) -> None:
        raise NotImplementedError()


class CommissionPolicy(Protocol):
    def rate_for(self, seller: Party) -> Decimal:
        raise NotImplementedError()


class OrderStore(Protocol):
    """Durable record store keyed by order id.

    ``lock`` yields the order while holding an exclusive lock on it; the
    lock is kept until the context exits, so everything done between load
    and ``save`` is serialized with other transitions on the same order.
    """

    def add(self, order: Order) -> None:
        raise NotImplementedError()

    def get(self, order_id: str) -> Optional[Order]:
        raise NotImplementedError()

    def lock(self, order_id: str) -> ContextManager[Order]:
        raise NotImplementedError()

    def save(self, order: Order) -> None:
        raise NotImplementedError()

    def find_active(
        self, buyer: Party, mode: OrderMode, item_id: str, quantity: int
    ) -> Optional[Order]:
        raise NotImplementedError()

    def order_id_for_offer(self, offer_id: str) -> Optional[str]:
        raise NotImplementedError()
