"""Logging-backed observer and event sink.

``LoggingObserver`` receives the saga checkpoints (reserved, held, captured,
compensated, committed...) and writes one structured log line per
checkpoint. ``LoggingEventSink`` is the default downstream notification
channel: it emits the order event as a JSON log record for a log shipper to
forward.
"""

import logging
from typing import Optional

from .domain import EventSink, SagaObserver

logger = logging.getLogger("orders.saga")
events_logger = logging.getLogger("orders.events")

WARNING_EVENTS = {
    "payment.failed",
    "payment.requires_action",
    "inventory.insufficient",
    "saga.compensated",
    "callback.skipped",
}
ERROR_EVENTS = {
    "gateway.error",
    "compensation.failed",
    "notification.failed",
    "schedule.failed",
    "tax.recording_failed",
}


class LoggingObserver(SagaObserver):
    """Write saga checkpoints to the ``orders.saga`` logger."""

    def on_event(self, name: str, tags: dict) -> None:
        if name in ERROR_EVENTS:
            level = logging.ERROR
        elif name in WARNING_EVENTS:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(level, name, extra={"saga_event": name, **tags})


class LoggingEventSink(EventSink):
    def publish(self, event_type: str, order_id: str, actor_id: Optional[str]) -> None:
        events_logger.info(
            "order event",
            extra={"event_type": event_type, "order_id": order_id, "actor_id": actor_id},
        )
