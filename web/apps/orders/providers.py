"""Service provider helpers for wiring the order processor with its ports.

``get_order_processor`` returns an ``OrderProcessor`` backed by the Django
repository and the database scheduler. Gateways are the HTTP adapter
clients when ``settings.USE_HTTP_ADAPTERS`` is truthy and the in-process
stubs otherwise (tests and local development). Expiration windows, the
commission rate and tax retry policy come from settings.
"""

from datetime import timedelta
from decimal import Decimal

from django.conf import settings

from .adapters import FlatCommissionPolicy, InventoryStub, PaymentsStub, TaxStub
from .domain import OrderState
from .events import LoggingEventSink, LoggingObserver
from .http_adapters import HttpInventoryClient, HttpPaymentsClient, HttpTaxClient
from .offers import OfferService
from .processor import OrderProcessor
from .repository import OrderRepository
from .scheduling import DatabaseScheduler
from .state_machine import DEFAULT_EXPIRATIONS, OrderStateMachine


def _hours(value) -> timedelta:
    return timedelta(hours=float(value))


def get_state_machine() -> OrderStateMachine:
    configured = getattr(settings, "ORDER_STATE_EXPIRATION_HOURS", None)
    if not configured:
        return OrderStateMachine(DEFAULT_EXPIRATIONS)
    return OrderStateMachine({OrderState(state): _hours(hours) for state, hours in configured.items()})


def get_gateways():
    """Return ``(inventory, payments, tax)`` for the current settings."""
    if getattr(settings, "USE_HTTP_ADAPTERS", False):
        return HttpInventoryClient(), HttpPaymentsClient(), HttpTaxClient()
    return InventoryStub(), PaymentsStub(), TaxStub()


def get_order_processor() -> OrderProcessor:
    """Return a configured OrderProcessor instance.

    Returns:
        OrderProcessor: A processor with persistence, gateways and
        scheduling wired from settings.
    """
    inventory, payments, tax = get_gateways()
    return OrderProcessor(
        store=OrderRepository(),
        inventory=inventory,
        payments=payments,
        tax=tax,
        events=LoggingEventSink(),
        scheduler=DatabaseScheduler(),
        commission=FlatCommissionPolicy(Decimal(str(getattr(settings, "DEFAULT_COMMISSION_RATE", "0.10")))),
        observer=LoggingObserver(),
        state_machine=get_state_machine(),
        reminder_before=_hours(getattr(settings, "EXPIRATION_REMINDER_HOURS", 5)),
        tax_retry_delay=timedelta(minutes=float(getattr(settings, "TAX_RECORDING_RETRY_MINUTES", 15))),
        tax_max_attempts=int(getattr(settings, "TAX_RECORDING_MAX_ATTEMPTS", 5)),
        default_currency=getattr(settings, "DEFAULT_CURRENCY", "USD"),
    )


def get_offer_service(processor: OrderProcessor = None) -> OfferService:
    return OfferService(
        processor or get_order_processor(),
        offer_expiration=_hours(getattr(settings, "OFFER_EXPIRATION_HOURS", 48)),
    )
