"""Ledger computation for order and offer totals.

Pure functions, no I/O. Tax amounts come in from the caller (the tax
gateway has already been consulted) and the processing fee is only known
after capture, so both are inputs here.

Rounding: every per-line amount derived from a rate (commission) is rounded
on its own with ``ROUND_HALF_EVEN`` before the lines are summed. Payout
reconciliation relies on this being applied the same way everywhere, so all
rate arithmetic goes through :func:`round_cents`.
"""

from dataclasses import dataclass, replace
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Iterable, Optional

from .domain import Address, FulfillmentType, LineItem


@dataclass(frozen=True)
class OrderTotals:
    """Frozen financial snapshot of an order, in minor units."""

    items_total_cents: int
    shipping_total_cents: int
    tax_total_cents: int
    buyer_total_cents: int
    commission_rate: Decimal
    commission_fee_cents: int
    transaction_fee_cents: int
    seller_total_cents: int


def round_cents(amount: Decimal) -> int:
    """Round a fractional minor-unit amount to an integer (bankers' rounding)."""
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_EVEN))


def commission_fee(amount_cents: int, rate: Decimal) -> int:
    return round_cents(Decimal(amount_cents) * Decimal(rate))


def items_total(line_items: Iterable[LineItem]) -> int:
    return sum(li.unit_price_cents * li.quantity for li in line_items)


def line_shipping_cents(
    line_item: LineItem,
    fulfillment_type: Optional[FulfillmentType],
    destination: Optional[Address],
) -> int:
    """Shipping fee for one line item.

    Pickup is free. Shipping uses the domestic fee when the destination is
    in the item's country and the international fee otherwise.

    Raises:
        ValueError: If shipping is requested but the item has no location,
            the destination is missing, or no fee applies to the route.
    """
    if fulfillment_type != FulfillmentType.SHIP:
        return 0
    if destination is None or line_item.location is None:
        raise ValueError("missing_shipping_location")
    if destination.country.upper() == line_item.location.country.upper():
        fee = line_item.domestic_shipping_fee_cents
    else:
        fee = line_item.international_shipping_fee_cents
    if fee is None:
        raise ValueError("unsupported_shipping_location")
    return fee


def shipping_total(
    line_items: Iterable[LineItem],
    fulfillment_type: Optional[FulfillmentType],
    destination: Optional[Address],
) -> int:
    return sum(line_shipping_cents(li, fulfillment_type, destination) for li in line_items)


def seller_payout(
    items_total_cents: int,
    shipping_total_cents: int,
    tax_total_cents: int,
    transaction_fee_cents: int,
    commission_fee_cents: int,
) -> int:
    sub_total = items_total_cents + shipping_total_cents + tax_total_cents
    return sub_total - transaction_fee_cents - commission_fee_cents


def compute_totals(
    line_items: Iterable[LineItem],
    shipping_total_cents: int,
    tax_total_cents: int,
    commission_rate: Decimal,
    transaction_fee_cents: int = 0,
    offer_amount_cents: Optional[int] = None,
) -> OrderTotals:
    """Compute the full totals snapshot for an order.

    Args:
        line_items: The order's line items.
        shipping_total_cents: Shipping already quoted for the order.
        tax_total_cents: Tax reported by the tax gateway.
        commission_rate: Rate frozen at submission.
        transaction_fee_cents: Processing fee reported on capture, 0 before.
        offer_amount_cents: For Offer-mode orders, the negotiated amount
            replaces the sum of list prices.

    Returns:
        OrderTotals: The computed snapshot.
    """
    line_items = list(line_items)
    if offer_amount_cents is not None:
        items = offer_amount_cents
        commission = commission_fee(offer_amount_cents, commission_rate)
    else:
        items = items_total(line_items)
        commission = sum(commission_fee(li.total_price_cents, commission_rate) for li in line_items)

    return OrderTotals(
        items_total_cents=items,
        shipping_total_cents=shipping_total_cents,
        tax_total_cents=tax_total_cents,
        buyer_total_cents=items + shipping_total_cents + tax_total_cents,
        commission_rate=Decimal(commission_rate),
        commission_fee_cents=commission,
        transaction_fee_cents=transaction_fee_cents,
        seller_total_cents=seller_payout(
            items, shipping_total_cents, tax_total_cents, transaction_fee_cents, commission
        ),
    )


def with_transaction_fee(totals: OrderTotals, transaction_fee_cents: int) -> OrderTotals:
    """Return ``totals`` with the gateway-reported fee applied to the payout."""
    return replace(
        totals,
        transaction_fee_cents=transaction_fee_cents,
        seller_total_cents=seller_payout(
            totals.items_total_cents,
            totals.shipping_total_cents,
            totals.tax_total_cents,
            transaction_fee_cents,
            totals.commission_fee_cents,
        ),
    )
