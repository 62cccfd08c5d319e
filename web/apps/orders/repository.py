"""Repository layer for persisting orders.

``OrderRepository`` implements the ``OrderStore`` port on top of the Django
ORM, mapping the domain ``Order`` aggregate (line items, offers,
transactions, state history, fulfillment) to and from model rows so the
domain layer is not coupled to ORM types.

``lock`` opens a database transaction and takes a row lock on the order
(``SELECT ... FOR UPDATE``) that is held until the saga step leaves the
block. Transaction and state history rows are insert-only.
"""

from contextlib import contextmanager
from dataclasses import asdict
from typing import Iterator, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction

from .domain import (
    Address,
    FulfillmentType,
    Fulfillment,
    LineItem,
    Offer,
    Order,
    OrderMode,
    OrderState,
    OrderStore,
    Party,
    StateHistory,
    StateReason,
    Transaction,
    TransactionStatus,
    TransactionType,
    party_from,
)
from .errors import ValidationError
from .models import (
    FulfillmentModel,
    LineItemModel,
    OfferModel,
    OrderModel,
    StateHistoryModel,
    TransactionModel,
)

MISSING = (OrderModel.DoesNotExist, DjangoValidationError, ValueError)


def _value(enum_value):
    return enum_value.value if enum_value is not None else None


def _address_to_json(address: Optional[Address]) -> Optional[dict]:
    return asdict(address) if address is not None else None


def _address_from_json(data: Optional[dict]) -> Optional[Address]:
    return Address(**data) if data else None


class OrderRepository(OrderStore):
    """Repository that persists Order aggregates using Django ORM."""

    related = ("line_items", "offers", "transactions", "state_histories", "fulfillments")

    # ---- reads ----
    def get(self, order_id: str) -> Optional[Order]:
        try:
            obj = OrderModel.objects.prefetch_related(*self.related).get(pk=order_id)
        except MISSING:
            return None
        return self._to_domain(obj)

    @contextmanager
    def lock(self, order_id: str) -> Iterator[Order]:
        """Yield the order while holding its row lock inside a transaction.

        Raises:
            ValidationError: ``order_not_found`` when no such order exists.
        """
        with transaction.atomic():
            try:
                obj = OrderModel.objects.select_for_update().get(pk=order_id)
            except MISSING:
                raise ValidationError("order_not_found", order_id=order_id) from None
            yield self._to_domain(obj)

    def find_active(self, buyer: Party, mode: OrderMode, item_id: str, quantity: int) -> Optional[Order]:
        obj = (
            OrderModel.objects.filter(
                buyer_type=buyer.party_type,
                buyer_id=buyer.party_id,
                mode=mode.value,
                state__in=(OrderState.PENDING.value, OrderState.SUBMITTED.value),
                line_items__item_id=item_id,
                line_items__quantity=quantity,
            )
            .order_by("-created_at")
            .first()
        )
        return self.get(str(obj.id)) if obj is not None else None

    def order_id_for_offer(self, offer_id: str) -> Optional[str]:
        try:
            order_id = OfferModel.objects.filter(pk=offer_id).values_list("order_id", flat=True).first()
        except MISSING:
            return None
        return str(order_id) if order_id is not None else None

    # ---- writes ----
    @transaction.atomic
    def add(self, order: Order) -> None:
        OrderModel.objects.create(id=order.id, code=order.code, created_at=order.created_at, **self._order_fields(order))
        self._save_children(order)

    @transaction.atomic
    def save(self, order: Order) -> None:
        OrderModel.objects.filter(pk=order.id).update(**self._order_fields(order))
        self._save_children(order)

    def _order_fields(self, order: Order) -> dict:
        return {
            "mode": order.mode.value,
            "buyer_id": order.buyer.party_id,
            "buyer_type": order.buyer.party_type,
            "seller_id": order.seller.party_id,
            "seller_type": order.seller.party_type,
            "currency_code": order.currency_code,
            "state": order.state.value,
            "state_reason": _value(order.state_reason),
            "state_updated_at": order.state_updated_at,
            "state_expires_at": order.state_expires_at,
            "fulfillment_type": _value(order.fulfillment_type),
            "shipping_address": _address_to_json(order.shipping_address),
            "payment_method_ref": order.payment_method_ref,
            "external_charge_id": order.external_charge_id,
            "inventory_deducted": order.inventory_deducted,
            "last_offer_id": order.last_offer_id,
            "items_total_cents": order.items_total_cents,
            "shipping_total_cents": order.shipping_total_cents,
            "tax_total_cents": order.tax_total_cents,
            "buyer_total_cents": order.buyer_total_cents,
            "commission_rate": order.commission_rate,
            "commission_fee_cents": order.commission_fee_cents,
            "transaction_fee_cents": order.transaction_fee_cents,
            "seller_total_cents": order.seller_total_cents,
            "last_submitted_at": order.last_submitted_at,
            "last_approved_at": order.last_approved_at,
        }

    def _save_children(self, order: Order) -> None:
        if order.fulfillment is not None:
            f = order.fulfillment
            FulfillmentModel.objects.update_or_create(
                id=f.id,
                defaults={
                    "order_id": order.id,
                    "courier": f.courier,
                    "tracking_id": f.tracking_id,
                    "estimated_delivery": f.estimated_delivery,
                    "notes": f.notes,
                    "created_at": f.created_at,
                },
            )

        for li in order.line_items:
            LineItemModel.objects.update_or_create(
                id=li.id,
                defaults={
                    "order_id": order.id,
                    "item_id": li.item_id,
                    "version_id": li.version_id,
                    "unit_price_cents": li.unit_price_cents,
                    "quantity": li.quantity,
                    "location": _address_to_json(li.location),
                    "domestic_shipping_fee_cents": li.domestic_shipping_fee_cents,
                    "international_shipping_fee_cents": li.international_shipping_fee_cents,
                    "sales_tax_cents": li.sales_tax_cents,
                    "commission_fee_cents": li.commission_fee_cents,
                    "sales_tax_transaction_id": li.sales_tax_transaction_id,
                    "sales_tax_refunded_at": li.sales_tax_refunded_at,
                    "fulfillment_id": li.fulfillment_id,
                },
            )

        for offer in order.offers:
            OfferModel.objects.update_or_create(
                id=offer.id,
                defaults={
                    "order_id": order.id,
                    "amount_cents": offer.amount_cents,
                    "from_id": offer.from_party.party_id,
                    "from_type": offer.from_party.party_type,
                    "creator_id": offer.creator_id,
                    "responds_to_id": offer.responds_to_id,
                    "submitted_at": offer.submitted_at,
                    "note": offer.note,
                    "shipping_total_cents": offer.shipping_total_cents,
                    "tax_total_cents": offer.tax_total_cents,
                    "created_at": offer.created_at,
                },
            )

        known = {str(pk) for pk in TransactionModel.objects.filter(order_id=order.id).values_list("id", flat=True)}
        TransactionModel.objects.bulk_create(
            [
                TransactionModel(
                    id=t.id,
                    order_id=order.id,
                    sequence=index,
                    transaction_type=t.transaction_type.value,
                    status=t.status.value,
                    external_id=t.external_id,
                    amount_cents=t.amount_cents,
                    failure_code=t.failure_code,
                    failure_message=t.failure_message,
                    decline_code=t.decline_code,
                    payload=t.payload,
                    created_at=t.created_at,
                )
                for index, t in enumerate(order.transactions)
                if t.id not in known
            ]
        )

        known = {str(pk) for pk in StateHistoryModel.objects.filter(order_id=order.id).values_list("id", flat=True)}
        StateHistoryModel.objects.bulk_create(
            [
                StateHistoryModel(
                    id=h.id,
                    order_id=order.id,
                    sequence=index,
                    state=h.state.value,
                    reason=_value(h.reason),
                    created_at=h.created_at,
                )
                for index, h in enumerate(order.state_histories)
                if h.id not in known
            ]
        )

    # ---- mapping ----
    def _to_domain(self, obj: OrderModel) -> Order:
        fulfillment = next(iter(obj.fulfillments.all()), None)
        return Order(
            id=str(obj.id),
            code=obj.code,
            mode=OrderMode(obj.mode),
            buyer=party_from(obj.buyer_type, obj.buyer_id),
            seller=party_from(obj.seller_type, obj.seller_id),
            currency_code=obj.currency_code,
            state=OrderState(obj.state),
            created_at=obj.created_at,
            state_updated_at=obj.state_updated_at,
            state_expires_at=obj.state_expires_at,
            state_reason=StateReason(obj.state_reason) if obj.state_reason else None,
            line_items=[
                LineItem(
                    id=str(li.id),
                    item_id=li.item_id,
                    version_id=li.version_id,
                    unit_price_cents=li.unit_price_cents,
                    quantity=li.quantity,
                    location=_address_from_json(li.location),
                    domestic_shipping_fee_cents=li.domestic_shipping_fee_cents,
                    international_shipping_fee_cents=li.international_shipping_fee_cents,
                    sales_tax_cents=li.sales_tax_cents,
                    commission_fee_cents=li.commission_fee_cents,
                    sales_tax_transaction_id=li.sales_tax_transaction_id,
                    sales_tax_refunded_at=li.sales_tax_refunded_at,
                    fulfillment_id=str(li.fulfillment_id) if li.fulfillment_id else None,
                )
                for li in obj.line_items.all()
            ],
            fulfillment_type=FulfillmentType(obj.fulfillment_type) if obj.fulfillment_type else None,
            shipping_address=_address_from_json(obj.shipping_address),
            payment_method_ref=obj.payment_method_ref,
            external_charge_id=obj.external_charge_id,
            inventory_deducted=obj.inventory_deducted,
            last_offer_id=str(obj.last_offer_id) if obj.last_offer_id else None,
            items_total_cents=obj.items_total_cents,
            shipping_total_cents=obj.shipping_total_cents,
            tax_total_cents=obj.tax_total_cents,
            buyer_total_cents=obj.buyer_total_cents,
            commission_rate=obj.commission_rate,
            commission_fee_cents=obj.commission_fee_cents,
            transaction_fee_cents=obj.transaction_fee_cents,
            seller_total_cents=obj.seller_total_cents,
            last_submitted_at=obj.last_submitted_at,
            last_approved_at=obj.last_approved_at,
            offers=[
                Offer(
                    id=str(o.id),
                    order_id=str(obj.id),
                    amount_cents=o.amount_cents,
                    from_party=party_from(o.from_type, o.from_id),
                    creator_id=o.creator_id,
                    created_at=o.created_at,
                    responds_to_id=str(o.responds_to_id) if o.responds_to_id else None,
                    submitted_at=o.submitted_at,
                    note=o.note,
                    shipping_total_cents=o.shipping_total_cents,
                    tax_total_cents=o.tax_total_cents,
                )
                for o in obj.offers.order_by("created_at")
            ],
            transactions=[
                Transaction(
                    id=str(t.id),
                    transaction_type=TransactionType(t.transaction_type),
                    status=TransactionStatus(t.status),
                    created_at=t.created_at,
                    external_id=t.external_id,
                    amount_cents=t.amount_cents,
                    failure_code=t.failure_code,
                    failure_message=t.failure_message,
                    decline_code=t.decline_code,
                    payload=t.payload or {},
                )
                for t in obj.transactions.order_by("sequence")
            ],
            state_histories=[
                StateHistory(
                    id=str(h.id),
                    state=OrderState(h.state),
                    created_at=h.created_at,
                    reason=StateReason(h.reason) if h.reason else None,
                )
                for h in obj.state_histories.order_by("sequence")
            ],
            fulfillment=Fulfillment(
                id=str(fulfillment.id),
                created_at=fulfillment.created_at,
                courier=fulfillment.courier,
                tracking_id=fulfillment.tracking_id,
                estimated_delivery=fulfillment.estimated_delivery,
                notes=fulfillment.notes,
            )
            if fulfillment is not None
            else None,
        )
