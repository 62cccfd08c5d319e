"""Error taxonomy raised by the order and offer transitions.

Every error carries a short string ``code`` (e.g. ``"invalid_state"``) and a
``data`` dict with details for the caller. Errors are always raised
synchronously from the transition call; notification and tax-recording
failures never surface here.
"""

from typing import Any, Optional


class ApplicationError(Exception):
    """Base class for errors surfaced by a transition.

    Attributes:
        type: Broad category of the error (``validation``, ``processing``...).
        code: Short machine readable error code.
        data: Extra details about the failure.
    """

    type = "application"

    def __init__(self, code: str, **data: Any):
        super().__init__(code)
        self.code = code
        self.data = data

    def __str__(self) -> str:
        return self.code


class ValidationError(ApplicationError):
    """A precondition was not met. Raised before any gateway call."""

    type = "validation"


class ProcessingError(ApplicationError):
    """A downstream gateway call errored (timeout, malformed response...).

    Any step of the transition that already completed has been compensated
    by the time this error reaches the caller.
    """

    type = "processing"


class InsufficientInventoryError(ProcessingError):
    """The inventory gateway declined a reservation."""

    def __init__(self, **data: Any):
        super().__init__("insufficient_inventory", **data)


class PaymentRequiresActionError(ApplicationError):
    """Payment needs a client-side action (e.g. 3-D Secure) before it can go on.

    Attributes:
        action_data: Payload the client needs to complete the action.
    """

    type = "payment_requires_action"

    def __init__(self, action_data: Optional[dict] = None):
        super().__init__("payment_requires_action", action_data=action_data or {})
        self.action_data = action_data or {}


class FailedTransactionError(ApplicationError):
    """The payment gateway explicitly declined the charge.

    Attributes:
        transaction: The failed ``Transaction`` recorded on the order.
    """

    type = "payment_failed"

    def __init__(self, code: str, transaction):
        super().__init__(
            code,
            failure_code=transaction.failure_code,
            failure_message=transaction.failure_message,
            decline_code=transaction.decline_code,
        )
        self.transaction = transaction
