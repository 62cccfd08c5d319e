"""In-process stub adapters for the orders domain ports.

These stubs implement the gateway ports, the record store and the callback
scheduler without any network calls. They are intended for unit tests and
local development where deterministic behavior is useful and external
services are not required.
"""

import copy
import itertools
import logging
import threading
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Deque, Dict, Iterator, List, Optional, Tuple

from .domain import (
    Address,
    CallbackKind,
    CommissionPolicy,
    EventSink,
    InventoryPort,
    Order,
    OrderMode,
    OrderState,
    OrderStore,
    Party,
    PaymentResult,
    PaymentsPort,
    SagaObserver,
    Scheduler,
    TaxPort,
    TransactionStatus,
)
from .errors import ApplicationError, ValidationError
from .totals import round_cents

logger = logging.getLogger(__name__)


class InventoryStub(InventoryPort):
    """Stub implementation of ``InventoryPort``.

    Keeps a per-item stock counter. Items not listed in ``stock`` start with
    ``default_stock`` units. Every call is recorded in ``reserved`` /
    ``released`` so tests can assert on exactly what the saga did.
    Releases only put back units that are still reserved, so a repeated
    release is harmless.
    """

    def __init__(self, stock: Optional[Dict[str, int]] = None, versions: Optional[Dict[str, str]] = None,
                 default_stock: int = 10):
        self.stock = dict(stock or {})
        self.versions = dict(versions or {})
        self.default_stock = default_stock
        self.reserved: List[Tuple[str, int]] = []
        self.released: List[Tuple[str, int]] = []
        self._outstanding: Dict[str, int] = {}
        self._lock = threading.Lock()

    def reserve(self, item_id: str, quantity: int) -> bool:
        """Deduct ``quantity`` units if that many are available.

        Returns:
            bool: True when deducted; False when stock is insufficient.
        """
        with self._lock:
            available = self.stock.get(item_id, self.default_stock)
            if quantity < 1 or available < quantity:
                return False
            self.stock[item_id] = available - quantity
            self._outstanding[item_id] = self._outstanding.get(item_id, 0) + quantity
            self.reserved.append((item_id, quantity))
            return True

    def release(self, item_id: str, quantity: int) -> None:
        with self._lock:
            returned = min(quantity, self._outstanding.get(item_id, 0))
            self._outstanding[item_id] = self._outstanding.get(item_id, 0) - returned
            self.stock[item_id] = self.stock.get(item_id, self.default_stock) + returned
            self.released.append((item_id, quantity))

    def current_version(self, item_id: str) -> Optional[str]:
        return self.versions.get(item_id)


class PaymentsStub(PaymentsPort):
    """Stub implementation of ``PaymentsPort``.

    Holds succeed for positive amounts and return a generated charge id.
    Captures report a processing fee of ``fee_rate`` of the amount plus
    ``fee_fixed_cents``. Tests steer individual calls with ``script``: the
    next call of that operation returns the scripted ``PaymentResult`` or
    raises the scripted exception.
    """

    def __init__(self, fee_rate: Decimal = Decimal("0.029"), fee_fixed_cents: int = 30):
        self.fee_rate = Decimal(fee_rate)
        self.fee_fixed_cents = fee_fixed_cents
        self.charges: Dict[str, dict] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self._scripts: Dict[str, Deque] = {}
        self._lock = threading.Lock()

    def script(self, operation: str, *outcomes) -> None:
        """Queue outcomes (``PaymentResult`` or exception) for ``operation``."""
        self._scripts.setdefault(operation, deque()).extend(outcomes)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def _scripted(self, operation: str, external_id: Optional[str] = None) -> Optional[PaymentResult]:
        queue = self._scripts.get(operation)
        if not queue:
            return None
        outcome = queue.popleft()
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome.external_id is None and external_id is not None:
            outcome = replace(outcome, external_id=external_id)
        return outcome

    def hold(self, amount_cents: int, currency: str, payment_method_ref: str) -> PaymentResult:
        with self._lock:
            self.calls.append(("hold", (amount_cents, currency, payment_method_ref)))
            external_id = f"ch_{uuid.uuid4().hex[:16]}"
            scripted = self._scripted("hold", external_id)
            if scripted is not None:
                if scripted.status != TransactionStatus.FAILURE:
                    self.charges[scripted.external_id] = {"amount_cents": amount_cents, "status": "held"}
                return scripted
            if amount_cents <= 0:
                return PaymentResult(
                    status=TransactionStatus.FAILURE,
                    failure_code="invalid_amount",
                    failure_message="amount must be positive",
                )
            self.charges[external_id] = {"amount_cents": amount_cents, "status": "held"}
            return PaymentResult(status=TransactionStatus.SUCCESS, external_id=external_id, amount_cents=amount_cents)

    def _settle(self, operation: str, external_id: str, from_status: Tuple[str, ...], to_status: str) -> PaymentResult:
        with self._lock:
            self.calls.append((operation, (external_id,)))
            scripted = self._scripted(operation, external_id)
            charge = self.charges.get(external_id)
            if scripted is not None:
                if scripted.status == TransactionStatus.SUCCESS and charge is not None:
                    charge["status"] = to_status
                return scripted
            if charge is None or charge["status"] not in from_status:
                return PaymentResult(
                    status=TransactionStatus.FAILURE,
                    external_id=external_id,
                    failure_code="charge_not_found" if charge is None else "invalid_charge_state",
                )
            charge["status"] = to_status
            fee = None
            if operation == "capture":
                fee = round_cents(Decimal(charge["amount_cents"]) * self.fee_rate) + self.fee_fixed_cents
            return PaymentResult(
                status=TransactionStatus.SUCCESS,
                external_id=external_id,
                amount_cents=charge["amount_cents"],
                fee_cents=fee,
            )

    def capture(self, external_id: str) -> PaymentResult:
        return self._settle("capture", external_id, ("held",), "captured")

    def confirm(self, external_id: str) -> PaymentResult:
        return self._settle("confirm", external_id, ("held",), "held")

    def refund(self, external_id: str) -> PaymentResult:
        return self._settle("refund", external_id, ("held", "captured"), "refunded")


class TaxStub(TaxPort):
    """Flat-rate tax stub.

    Tax is ``rate`` of the item amount plus shipping when the item ships
    within ``taxed_country`` and zero otherwise.
    """

    def __init__(self, rate: Decimal = Decimal("0.08"), taxed_country: str = "US"):
        self.rate = Decimal(rate)
        self.taxed_country = taxed_country
        self.recorded: Dict[str, int] = {}
        self.refunded: List[str] = []
        self.fail_records = 0

    def compute_tax(self, amount_cents: int, origin: Address, destination: Address, shipping_cents: int) -> int:
        if destination is None or destination.country != self.taxed_country:
            return 0
        return round_cents(Decimal(amount_cents + shipping_cents) * self.rate)

    def record_collected(self, reference, amount_cents, tax_cents, origin, destination, shipping_cents,
                         transaction_date) -> str:
        if self.fail_records > 0:
            self.fail_records -= 1
            raise RuntimeError("tax service unavailable")
        self.recorded[reference] = tax_cents
        return f"tx_{uuid.uuid4().hex[:12]}"

    def record_refund(self, reference: str, refund_date: datetime) -> None:
        if self.fail_records > 0:
            self.fail_records -= 1
            raise RuntimeError("tax service unavailable")
        self.refunded.append(reference)


class FlatCommissionPolicy(CommissionPolicy):
    def __init__(self, rate):
        self.rate = Decimal(str(rate))

    def rate_for(self, seller: Party) -> Decimal:
        return self.rate


class RecordingEventSink(EventSink):
    """Keeps published events in memory; can be told to fail."""

    def __init__(self, fail: bool = False):
        self.events: List[Tuple[str, str, Optional[str]]] = []
        self.fail = fail

    def publish(self, event_type: str, order_id: str, actor_id: Optional[str]) -> None:
        if self.fail:
            raise ConnectionError("event sink unavailable")
        self.events.append((event_type, order_id, actor_id))

    def types(self) -> List[str]:
        return [event_type for event_type, _, _ in self.events]


class RecordingObserver(SagaObserver):
    def __init__(self):
        self.checkpoints: List[Tuple[str, dict]] = []

    def on_event(self, name: str, tags: dict) -> None:
        self.checkpoints.append((name, dict(tags)))

    def names(self) -> List[str]:
        return [name for name, _ in self.checkpoints]


class InMemoryOrderStore(OrderStore):
    """Thread-safe in-process record store.

    Orders are copied on the way in and out, so a saga step mutates its own
    copy and nothing is visible to other callers until ``save``. ``lock``
    holds a per-order lock; different orders never contend.
    """

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, order_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(order_id, threading.Lock())

    def add(self, order: Order) -> None:
        with self._guard:
            self._orders[order.id] = copy.deepcopy(order)

    def get(self, order_id: str) -> Optional[Order]:
        with self._guard:
            order = self._orders.get(order_id)
            return copy.deepcopy(order) if order is not None else None

    @contextmanager
    def lock(self, order_id: str) -> Iterator[Order]:
        if self.get(order_id) is None:
            raise ValidationError("order_not_found", order_id=order_id)
        with self._lock_for(order_id):
            yield self.get(order_id)

    def save(self, order: Order) -> None:
        self.add(order)

    def find_active(self, buyer: Party, mode: OrderMode, item_id: str, quantity: int) -> Optional[Order]:
        with self._guard:
            orders = list(self._orders.values())
        for order in sorted(orders, key=lambda o: o.created_at, reverse=True):
            if (
                order.buyer == buyer
                and order.mode == mode
                and order.state in (OrderState.PENDING, OrderState.SUBMITTED)
                and any(li.item_id == item_id and li.quantity == quantity for li in order.line_items)
            ):
                return copy.deepcopy(order)
        return None

    def order_id_for_offer(self, offer_id: str) -> Optional[str]:
        with self._guard:
            for order in self._orders.values():
                if order.find_offer(offer_id) is not None:
                    return order.id
        return None


class InMemoryScheduler(Scheduler):
    """Keeps scheduled callbacks in a list until ``run_due`` delivers them."""

    def __init__(self):
        self.pending: List[Tuple[datetime, int, str, CallbackKind, OrderState, int]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def schedule_at(self, when, order_id, kind, expected_state, attempt=0) -> None:
        with self._lock:
            self.pending.append((when, next(self._seq), order_id, CallbackKind(kind), OrderState(expected_state), attempt))

    def kinds(self, order_id: Optional[str] = None) -> List[CallbackKind]:
        return [entry[3] for entry in self.pending if order_id is None or entry[2] == order_id]

    def run_due(self, processor, now: datetime) -> int:
        """Deliver every callback due at ``now`` (including ones they schedule)."""
        delivered = 0
        while True:
            with self._lock:
                due = sorted(entry for entry in self.pending if entry[0] <= now)
                if not due:
                    return delivered
                entry = due[0]
                self.pending.remove(entry)
            _, _, order_id, kind, expected_state, attempt = entry
            delivered += 1
            try:
                processor.handle_callback(order_id, kind, expected_state, attempt=attempt)
            except ApplicationError as exc:
                logger.warning("callback %s for order %s failed: %s", kind.value, order_id, exc.code)
