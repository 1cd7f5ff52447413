"""
Exception types for shop-tracker.
"""


class ShopTrackerError(Exception):
    """Base class for all shop-tracker errors."""


class RemoteError(ShopTrackerError):
    """An upstream HTTP call failed."""

    transient: bool = False

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        attempts: int = 1,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.attempts = attempts


class TransientRemoteError(RemoteError):
    """Retryable failure: 5xx, rate limit, connection reset, timeout."""

    transient = True


class PermanentRemoteError(RemoteError):
    """Non-retryable failure, or a transient one that ran out of retries."""

    transient = False


class CatalogUnavailable(ShopTrackerError):
    """No fresh, cached, or stale catalog snapshot could be produced."""


class DeliveryFailure(ShopTrackerError):
    """A notification bundle could not be delivered to one user."""

    def __init__(self, user_id: str, message: str):
        super().__init__(message)
        self.user_id = user_id


class ConfigurationMissing(ShopTrackerError):
    """An optional feature is not configured. Not an error condition."""
