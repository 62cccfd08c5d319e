import uuid

from django.db import models


class OrderModel(models.Model):
    # UUID PK handed to callers
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    # Human readable 9-digit code
    code = models.CharField(max_length=9, unique=True)

    class Mode(models.TextChoices):
        BUY = "buy"
        OFFER = "offer"

    class State(models.TextChoices):
        PENDING = "pending"
        SUBMITTED = "submitted"
        APPROVED = "approved"
        FULFILLED = "fulfilled"
        CANCELED = "canceled"
        REFUNDED = "refunded"
        RETURNED = "returned"
        ABANDONED = "abandoned"

    mode = models.CharField(max_length=8, choices=Mode.choices)
    buyer_id = models.CharField(max_length=64)
    buyer_type = models.CharField(max_length=16)
    seller_id = models.CharField(max_length=64)
    seller_type = models.CharField(max_length=16)
    currency_code = models.CharField(max_length=3)

    state = models.CharField(max_length=16, choices=State.choices, default=State.PENDING)
    state_reason = models.CharField(max_length=32, null=True, blank=True)
    state_updated_at = models.DateTimeField()
    state_expires_at = models.DateTimeField(null=True, blank=True)

    fulfillment_type = models.CharField(max_length=8, null=True, blank=True)
    shipping_address = models.JSONField(null=True, blank=True)
    payment_method_ref = models.CharField(max_length=128, null=True, blank=True)
    external_charge_id = models.CharField(max_length=128, null=True, blank=True)
    inventory_deducted = models.BooleanField(default=False)
    last_offer_id = models.UUIDField(null=True, blank=True)

    # Frozen totals snapshot, minor units
    items_total_cents = models.BigIntegerField(null=True, blank=True)
    shipping_total_cents = models.BigIntegerField(null=True, blank=True)
    tax_total_cents = models.BigIntegerField(null=True, blank=True)
    buyer_total_cents = models.BigIntegerField(null=True, blank=True)
    commission_rate = models.DecimalField(max_digits=7, decimal_places=4, null=True, blank=True)
    commission_fee_cents = models.BigIntegerField(null=True, blank=True)
    transaction_fee_cents = models.BigIntegerField(null=True, blank=True)
    seller_total_cents = models.BigIntegerField(null=True, blank=True)

    last_submitted_at = models.DateTimeField(null=True, blank=True)
    last_approved_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField()

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=("buyer_type", "buyer_id", "state")),
        ]


class FulfillmentModel(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(OrderModel, related_name="fulfillments", on_delete=models.CASCADE)
    courier = models.CharField(max_length=64, null=True, blank=True)
    tracking_id = models.CharField(max_length=128, null=True, blank=True)
    estimated_delivery = models.DateField(null=True, blank=True)
    notes = models.TextField(null=True, blank=True)
    created_at = models.DateTimeField()

    class Meta:
        db_table = "order_fulfillments"


class LineItemModel(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(OrderModel, related_name="line_items", on_delete=models.CASCADE)
    item_id = models.CharField(max_length=64)
    version_id = models.CharField(max_length=64, null=True, blank=True)
    unit_price_cents = models.BigIntegerField()
    quantity = models.PositiveIntegerField(default=1)
    location = models.JSONField(null=True, blank=True)
    domestic_shipping_fee_cents = models.BigIntegerField(null=True, blank=True)
    international_shipping_fee_cents = models.BigIntegerField(null=True, blank=True)
    sales_tax_cents = models.BigIntegerField(null=True, blank=True)
    commission_fee_cents = models.BigIntegerField(null=True, blank=True)
    sales_tax_transaction_id = models.CharField(max_length=128, null=True, blank=True)
    sales_tax_refunded_at = models.DateTimeField(null=True, blank=True)
    fulfillment = models.ForeignKey(
        FulfillmentModel, related_name="line_items", null=True, blank=True, on_delete=models.SET_NULL
    )

    class Meta:
        db_table = "order_line_items"
        indexes = [models.Index(fields=("item_id",))]


class OfferModel(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(OrderModel, related_name="offers", on_delete=models.CASCADE)
    amount_cents = models.BigIntegerField()
    from_id = models.CharField(max_length=64)
    from_type = models.CharField(max_length=16)
    creator_id = models.CharField(max_length=64)
    responds_to_id = models.UUIDField(null=True, blank=True)
    submitted_at = models.DateTimeField(null=True, blank=True)
    note = models.TextField(null=True, blank=True)
    shipping_total_cents = models.BigIntegerField(null=True, blank=True)
    tax_total_cents = models.BigIntegerField(null=True, blank=True)
    created_at = models.DateTimeField()

    class Meta:
        db_table = "order_offers"
        ordering = ["created_at"]


class TransactionModel(models.Model):
    # Insert-only: one row per payment gateway call
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(OrderModel, related_name="transactions", on_delete=models.CASCADE)
    transaction_type = models.CharField(max_length=16)
    status = models.CharField(max_length=16)
    external_id = models.CharField(max_length=128, null=True, blank=True)
    amount_cents = models.BigIntegerField(null=True, blank=True)
    failure_code = models.CharField(max_length=64, null=True, blank=True)
    failure_message = models.TextField(null=True, blank=True)
    decline_code = models.CharField(max_length=64, null=True, blank=True)
    payload = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField()
    sequence = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "order_transactions"
        ordering = ["sequence"]


class StateHistoryModel(models.Model):
    # Insert-only audit trail
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(OrderModel, related_name="state_histories", on_delete=models.CASCADE)
    state = models.CharField(max_length=16)
    reason = models.CharField(max_length=32, null=True, blank=True)
    created_at = models.DateTimeField()
    sequence = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "order_state_histories"
        ordering = ["sequence"]


class ScheduledCallbackModel(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order_id = models.UUIDField()
    kind = models.CharField(max_length=32)
    expected_state = models.CharField(max_length=16)
    attempt = models.PositiveIntegerField(default=0)
    run_at = models.DateTimeField()
    processed = models.BooleanField(default=False)
    processed_at = models.DateTimeField(null=True, blank=True)
    failures = models.PositiveIntegerField(default=0)
    last_error = models.TextField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "order_scheduled_callbacks"
        indexes = [models.Index(fields=("processed", "run_at"))]
