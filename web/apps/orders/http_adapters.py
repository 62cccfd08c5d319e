"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements concrete HTTP clients for the gateway ports using
``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the correlation
    ContextVar set by the order processor for the current saga step.
- Circuit breaker per downstream service (inventory, payments, tax) to
    avoid hammering unhealthy dependencies, with HALF_OPEN probing after a
    timeout.
- Simple retry policy with exponential backoff for transport errors and 5xx.
- Payments idempotency: every payment call carries an ``Idempotency-Key``
    derived from the operation so a retried request cannot move money twice.

Business outcomes (insufficient stock, declined card) are returned as
values. Transport errors and unexpected statuses are raised after retries;
the order processor treats them as gateway failures and compensates.
"""

import threading
import time
import uuid
from datetime import datetime
from typing import Collection, Optional

import httpx
from django.conf import settings

from exchange.context import CORRELATION_ID_CTX

from .domain import Address, InventoryPort, PaymentResult, PaymentsPort, TaxPort, TransactionStatus

# ---------------- Circuit Breaker ---------------- #


class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; stays HALF_OPEN while a
      single probe is in flight; transitions back to OPEN on failure.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Returns:
            str: The state at call time.

        Raises:
            RuntimeError: If the circuit is OPEN or a HALF_OPEN probe is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise RuntimeError(f"CIRCUIT_OPEN:{self.name}")
            if st == "HALF_OPEN":
                # allow only one concurrent probe
                if self._half_open_probe_in_flight:
                    raise RuntimeError(f"CIRCUIT_HALF_OPEN_BUSY:{self.name}")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        """Record a successful call and close/reset the breaker."""
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        """Record a failed call and open the breaker if threshold reached."""
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        """Release any HALF_OPEN probe flag after a call finishes."""
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


def _breaker(name: str) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
        getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
    )


# Per-service instances
_inventory_cb = _breaker("inventory")
_payments_cb = _breaker("payments")
_tax_cb = _breaker("tax")


# ---------------- Helpers ---------------- #


def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras.

    Args:
        extra: Optional dict of additional headers to include.

    Returns:
        dict: Final headers dictionary for the outgoing request.
    """
    headers: dict = {}
    rid = CORRELATION_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base, max_sleep)."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 3),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
        getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport errors or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


def _send(
    breaker: CircuitBreaker,
    method: str,
    url: str,
    timeout: float,
    business_statuses: Collection[int] = (),
    json: Optional[dict] = None,
    extra_headers: Optional[dict] = None,
) -> httpx.Response:
    """Send one request through the breaker with retries.

    Returns the response for 2xx and for any status in
    ``business_statuses``; neither counts as a circuit failure. Other
    non-2xx statuses raise ``httpx.HTTPStatusError``; transport errors are
    re-raised once retries are exhausted.
    """
    max_retries, backoff, cap = _retry_policy()
    tries = 0

    state = breaker.before_call()
    headers = _request_headers({**(extra_headers or {}), "X-Circuit-State": state, "X-Retry-Count": "0"})

    try:
        with httpx.Client(timeout=timeout) as client:
            while True:
                resp = None
                exc = None
                try:
                    resp = client.request(method, url, json=json, headers=headers)
                    if 200 <= resp.status_code < 300 or resp.status_code in business_statuses:
                        breaker.on_success()
                        return resp
                    if not _should_retry(resp, None):
                        breaker.on_failure()
                        resp.raise_for_status()
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                headers["X-Retry-Count"] = str(tries)

                if tries > max_retries:
                    breaker.on_failure()
                    if exc:
                        raise exc
                    resp.raise_for_status()

                sleep_s = backoff * (2 ** (tries - 1))  # exponential backoff
                if sleep_s > 0:
                    time.sleep(min(sleep_s, cap))
    finally:
        breaker.on_finish()


def _address(address: Optional[Address]) -> Optional[dict]:
    if address is None:
        return None
    return {
        "country": address.country,
        "region": address.region,
        "city": address.city,
        "postal_code": address.postal_code,
        "line1": address.line1,
    }


# ---------------- Inventory Adapter ---------------- #


class HttpInventoryClient(InventoryPort):
    """HTTP client for the inventory service with retry and circuit breaker."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = base_url or settings.INVENTORY_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def reserve(self, item_id: str, quantity: int) -> bool:
        """Deduct stock for one item.

        Business mappings:
        - 200 → returns the "reserved" boolean
        - 422 → returns False (insufficient stock), not a circuit failure

        Raises:
            httpx.RequestError: For network/transport errors after retries.
            httpx.HTTPStatusError: For non-retriable non-2xx responses.
        """
        resp = _send(
            _inventory_cb,
            "POST",
            f"{self.base_url}/reserve",
            self.timeout,
            business_statuses=(422,),
            json={"item_id": item_id, "quantity": quantity},
        )
        if resp.status_code == 422:
            return False
        return bool(resp.json().get("reserved", False))

    def release(self, item_id: str, quantity: int) -> None:
        # 409 means already released
        _send(
            _inventory_cb,
            "POST",
            f"{self.base_url}/release",
            self.timeout,
            business_statuses=(409,),
            json={"item_id": item_id, "quantity": quantity},
        )

    def current_version(self, item_id: str) -> Optional[str]:
        resp = _send(_inventory_cb, "GET", f"{self.base_url}/items/{item_id}", self.timeout, business_statuses=(404,))
        if resp.status_code == 404:
            return None
        return resp.json().get("version_id")


# ---------------- Payments Adapter ---------------- #


def _payment_result(resp: httpx.Response) -> PaymentResult:
    """Map a payments service response onto a ``PaymentResult``.

    Raises:
        ValueError: When a 2xx body carries an unknown status.
    """
    data = resp.json() or {}
    if resp.status_code in (402, 409):
        return PaymentResult(
            status=TransactionStatus.FAILURE,
            external_id=data.get("id"),
            amount_cents=data.get("amount_cents"),
            failure_code=data.get("code") or "card_declined",
            failure_message=data.get("message"),
            decline_code=data.get("decline_code"),
        )
    status = data.get("status", "succeeded")
    if status == "requires_action":
        return PaymentResult(
            status=TransactionStatus.REQUIRES_ACTION,
            external_id=data.get("id"),
            amount_cents=data.get("amount_cents"),
            action_data=data.get("action") or {},
        )
    if status != "succeeded":
        raise ValueError(f"unexpected payment status: {status}")
    return PaymentResult(
        status=TransactionStatus.SUCCESS,
        external_id=data.get("id"),
        amount_cents=data.get("amount_cents"),
        fee_cents=data.get("fee_cents"),
    )


class HttpPaymentsClient(PaymentsPort):
    """HTTP client for the payments service with retry and circuit breaker.

    Declines (402) and conflicts (409) are business outcomes: they are
    returned as failed ``PaymentResult`` values and do not count as circuit
    failures.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = base_url or settings.PAYMENTS_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def _post(self, path: str, idempotency_key: str, payload: Optional[dict] = None) -> PaymentResult:
        resp = _send(
            _payments_cb,
            "POST",
            f"{self.base_url}{path}",
            self.timeout,
            business_statuses=(402, 409),
            json=payload,
            extra_headers={"Idempotency-Key": idempotency_key},
        )
        return _payment_result(resp)

    def hold(self, amount_cents: int, currency: str, payment_method_ref: str) -> PaymentResult:
        rid = CORRELATION_ID_CTX.get()
        key = f"hold:{rid}" if rid and rid != "-" else f"hold:{uuid.uuid4()}"
        return self._post(
            "/holds",
            key,
            {"amount_cents": amount_cents, "currency": currency, "payment_method": payment_method_ref},
        )

    def capture(self, external_id: str) -> PaymentResult:
        return self._post(f"/charges/{external_id}/capture", f"capture:{external_id}")

    def confirm(self, external_id: str) -> PaymentResult:
        return self._post(f"/charges/{external_id}/confirm", f"confirm:{external_id}")

    def refund(self, external_id: str) -> PaymentResult:
        return self._post(f"/charges/{external_id}/refund", f"refund:{external_id}")


# ---------------- Tax Adapter ---------------- #


class HttpTaxClient(TaxPort):
    """HTTP client for the sales tax service with retry and circuit breaker."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = base_url or settings.TAX_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def compute_tax(self, amount_cents: int, origin: Address, destination: Address, shipping_cents: int) -> int:
        resp = _send(
            _tax_cb,
            "POST",
            f"{self.base_url}/calculate",
            self.timeout,
            json={
                "amount_cents": amount_cents,
                "shipping_cents": shipping_cents,
                "origin": _address(origin),
                "destination": _address(destination),
            },
        )
        return int(resp.json()["tax_cents"])

    def record_collected(self, reference, amount_cents, tax_cents, origin, destination, shipping_cents,
                         transaction_date: datetime) -> str:
        resp = _send(
            _tax_cb,
            "POST",
            f"{self.base_url}/transactions",
            self.timeout,
            json={
                "reference": reference,
                "amount_cents": amount_cents,
                "tax_cents": tax_cents,
                "shipping_cents": shipping_cents,
                "origin": _address(origin),
                "destination": _address(destination),
                "transaction_date": transaction_date.isoformat(),
            },
        )
        return resp.json()["transaction_id"]

    def record_refund(self, reference: str, refund_date: datetime) -> None:
        _send(
            _tax_cb,
            "POST",
            f"{self.base_url}/transactions/{reference}/refund",
            self.timeout,
            json={"refund_date": refund_date.isoformat()},
        )
