"""Correlation id shared by every log line of one saga step.

The processor sets ``CORRELATION_ID_CTX`` while it runs a transition so log
records (through ``CorrelationIdFilter``) and outgoing gateway requests (as
``X-Request-ID``) can be tied back to the same step without passing the id
around explicitly.
"""

import contextvars
import uuid
from contextlib import contextmanager

CORRELATION_ID_CTX = contextvars.ContextVar("correlation_id", default="-")


@contextmanager
def correlation(order_id: str):
    """Set a fresh correlation id for ``order_id`` for the duration of the block."""
    token = CORRELATION_ID_CTX.set(f"{order_id}:{uuid.uuid4().hex[:8]}")
    try:
        yield CORRELATION_ID_CTX.get()
    finally:
        CORRELATION_ID_CTX.reset(token)
