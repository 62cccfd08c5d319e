"""Pydantic schemas for order inputs.

These validate the payloads handed to the order processor (order creation,
shipping and fulfillment) before they are mapped onto domain
objects.
"""

import re
from datetime import date
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .domain import Address, FulfillmentType, OrderMode


ITEM_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
CURRENCIES = {"EUR", "USD", "GBP"}
PARTY_TYPES = {"user", "partner"}


class AddressIn(BaseModel):
    """Input schema for a postal address.

    Attributes:
        country: ISO country code. Normalized to uppercase.
    """

    country: str = Field(min_length=2, max_length=2)
    name: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    postal_code: Optional[str] = None
    phone_number: Optional[str] = None

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str) -> str:
        return v.upper()

    def to_domain(self) -> Address:
        return Address(**self.model_dump())


class PartyIn(BaseModel):
    id: str = Field(min_length=1)
    type: str

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        v2 = v.lower()
        if v2 not in PARTY_TYPES:
            raise ValueError("Unknown party type")
        return v2


class LineItemIn(BaseModel):
    """Input schema for one catalog item being ordered.

    Attributes:
        item_id: Catalog item identifier.
        version_id: Catalog version the buyer is looking at.
        unit_price_cents: Listed price in minor units (must be > 0).
        quantity: Positive number of units.
        location: Where the item ships from.
        domestic_shipping_fee_cents: Fee when shipping inside the item's country.
        international_shipping_fee_cents: Fee when shipping elsewhere.
    """

    item_id: str
    version_id: Optional[str] = None
    unit_price_cents: int = Field(gt=0)
    quantity: int = Field(default=1, gt=0)
    location: Optional[AddressIn] = None
    domestic_shipping_fee_cents: Optional[int] = Field(default=None, ge=0)
    international_shipping_fee_cents: Optional[int] = Field(default=None, ge=0)

    @field_validator("item_id")
    @classmethod
    def validate_item_id(cls, v: str) -> str:
        if not ITEM_ID_RE.match(v):
            raise ValueError("Invalid item id format")
        return v


class CreateOrderIn(BaseModel):
    """Schema for creating an order for a single inventory item."""

    buyer: PartyIn
    seller: PartyIn
    mode: OrderMode
    line_item: LineItemIn
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Validate and normalize currency code.

        Raises:
            ValueError: When the currency is not in the supported set.
        """
        if v is None:
            return v
        v2 = v.upper()
        if v2 not in CURRENCIES:
            raise ValueError("Unsupported currency")
        return v2


class ShippingIn(BaseModel):
    fulfillment_type: FulfillmentType
    address: Optional[AddressIn] = None


class FulfillmentIn(BaseModel):
    courier: str = Field(min_length=1)
    tracking_id: Optional[str] = None
    estimated_delivery: Optional[date] = None
    notes: Optional[str] = None

