"""Database-backed scheduled callbacks.

``DatabaseScheduler`` stores each requested callback as a
``ScheduledCallbackModel`` row. ``CallbackRunner`` picks up the rows that are
due and hands them to ``OrderProcessor.handle_callback``; the
``run_due_callbacks`` management command drives it.

Delivery is at-least-once: a row is marked processed only after its
callback ran, and every callback is a no-op when the order already left the
state it expected.
"""

import logging
from datetime import datetime
from typing import List, Optional

from django.conf import settings
from django.db.models import F
from django.utils import timezone

from .domain import CallbackKind, OrderState, Scheduler
from .errors import ApplicationError, ValidationError
from .models import ScheduledCallbackModel

logger = logging.getLogger(__name__)


class DatabaseScheduler(Scheduler):
    def schedule_at(
        self,
        when: datetime,
        order_id: str,
        kind: CallbackKind,
        expected_state: OrderState,
        attempt: int = 0,
    ) -> None:
        ScheduledCallbackModel.objects.create(
            order_id=order_id,
            kind=CallbackKind(kind).value,
            expected_state=OrderState(expected_state).value,
            attempt=attempt,
            run_at=when,
        )


class CallbackRunner:
    """Deliver due callbacks to the order processor.

    Args:
        processor: ``OrderProcessor`` receiving the callbacks.
        max_failures: Give up on a row after this many failed deliveries.
    """

    def __init__(self, processor, max_failures: Optional[int] = None):
        self.processor = processor
        self.max_failures = max_failures or getattr(settings, "CALLBACK_MAX_FAILURES", 5)

    def due(self, now: datetime, limit: int = 100) -> List[ScheduledCallbackModel]:
        return list(
            ScheduledCallbackModel.objects.filter(processed=False, run_at__lte=now).order_by("run_at")[:limit]
        )

    def run_due(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        """Deliver up to ``limit`` due callbacks and return how many completed."""
        now = now or timezone.now()
        processed = 0
        for row in self.due(now, limit):
            try:
                self.processor.handle_callback(str(row.order_id), row.kind, row.expected_state, attempt=row.attempt)
            except ValidationError as exc:
                # the order can never satisfy this callback
                logger.warning(
                    "callback_rejected",
                    extra={"callback_id": str(row.id), "order_id": str(row.order_id), "error": exc.code},
                )
                self._mark_processed(row, error=exc.code)
            except Exception as exc:
                code = exc.code if isinstance(exc, ApplicationError) else repr(exc)
                logger.error(
                    "callback_error",
                    extra={"callback_id": str(row.id), "order_id": str(row.order_id), "error": code},
                    exc_info=not isinstance(exc, ApplicationError),
                )
                self._record_failure(row, code)
            else:
                self._mark_processed(row)
                processed += 1
        return processed

    def _mark_processed(self, row: ScheduledCallbackModel, error: Optional[str] = None) -> None:
        ScheduledCallbackModel.objects.filter(pk=row.pk).update(
            processed=True, processed_at=timezone.now(), last_error=error
        )

    def _record_failure(self, row: ScheduledCallbackModel, error: str) -> None:
        ScheduledCallbackModel.objects.filter(pk=row.pk).update(failures=F("failures") + 1, last_error=error)
        if row.failures + 1 >= self.max_failures:
            logger.error("callback_abandoned", extra={"callback_id": str(row.id), "order_id": str(row.order_id)})
            self._mark_processed(row, error=error)
