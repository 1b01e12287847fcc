"""Typed errors raised at the point of failure.

Persistence and parsing code raise these instead of leaking driver-specific
exceptions, so the ErrorClassifier can decide on the error's declared
category rather than on its message text.
"""


class OrderRelayError(Exception):
    """Base class for all orderrelay errors."""


class PublishError(OrderRelayError):
    """Broker did not accept a message (transient)."""


class PublishTimeoutError(PublishError):
    """Broker did not acknowledge a send within the configured timeout."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Broker send timed out after {timeout}s")


class BrokerUnavailableError(PublishError):
    """Raised when the broker fails consecutively beyond a threshold.

    Attributes:
        failure_count: Number of consecutive failures that triggered this error.
        last_error: The last exception message from the broker.
    """

    def __init__(self, message: str, failure_count: int = 0, last_error: str | None = None):
        self.failure_count = failure_count
        self.last_error = last_error
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.last_error:
            return f"{base} (last error: {self.last_error})"
        return base


class SerializationError(OrderRelayError):
    """A message could not be encoded for the wire."""

    def __init__(self, original: Exception):
        self.original = original
        super().__init__(f"Serialization error: {original}")


class MessageValidationError(OrderRelayError):
    """A message failed structural or business validation (permanent)."""


class DataIntegrityError(OrderRelayError):
    """The durable store rejected a write on a constraint (permanent)."""

    def __init__(self, message: str, constraint: str | None = None):
        self.constraint = constraint
        super().__init__(message)


class DuplicateOrderError(DataIntegrityError):
    """An order with the same order_id already exists.

    This is the idempotency path: the consumer treats it as a redelivery,
    never as a dead-letter.
    """

    def __init__(self, order_id: object):
        self.order_id = order_id
        super().__init__(f"Order {order_id} already exists", constraint="orders.order_id")


class DuplicateShopperError(DataIntegrityError):
    """A shopper with the same (store_id, email) was inserted concurrently.

    Retrying the unit of work finds the committed shopper.
    """

    def __init__(self, store_id: str, email: str):
        self.store_id = store_id
        self.email = email
        super().__init__(
            f"Shopper {email} already exists in store {store_id}",
            constraint="uq_shoppers_store_email",
        )


class RetryPersistenceError(OrderRelayError):
    """A failed publish could not be recorded for retry.

    The message is at risk of loss; this is the single unrecoverable
    condition of the pipeline.
    """

    def __init__(self, order_id: object, original: Exception):
        self.order_id = order_id
        self.original = original
        super().__init__(f"Failed to queue order {order_id} for retry: {original}")


def error_summary(error: BaseException) -> str:
    """One-line description stored as last_error / error_message."""
    text = str(error)
    return f"{type(error).__name__}: {text}" if text else type(error).__name__
