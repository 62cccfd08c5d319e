"""Logging filters for enriching log records with saga context.

This module provides a logging filter that injects the current correlation
id into log records using the ContextVar set by the order processor. Adding
the filter to your logging configuration ties every line written during a
saga step together without modifying individual log statements.
"""

from logging import Filter, LogRecord

from .context import CORRELATION_ID_CTX


class CorrelationIdFilter(Filter):
    """Attach a ``correlation_id`` attribute to log records.

    If no saga step is running, a hyphen ("-") is used as a placeholder so
    formatters can reliably reference ``%(correlation_id)s``.
    """

    def filter(self, record: LogRecord) -> bool:
        record.correlation_id = CORRELATION_ID_CTX.get()
        return True
