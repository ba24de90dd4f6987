from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class SyncError(Exception):
    """Base class for failures raised by the POS sync pipeline."""


class AuthenticationError(SyncError):
    """Caller did not present valid request credentials."""


class EncryptionError(SyncError):
    pass


class ConnectionNotFound(SyncError):
    pass


class TokenRefreshError(SyncError):
    def __init__(self, provider: str, message: str, *, status_code: Optional[int] = None):
        super().__init__(f"{provider} token refresh failed: {message}")
        self.provider = provider
        self.status_code = status_code


class TransientNetworkError(SyncError):
    """Timeout, 429 or 5xx that survived every retry attempt."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, attempts: int = 0):
        super().__init__(message)
        self.status_code = status_code
        self.attempts = attempts


class ProviderRequestError(SyncError):
    """Non-retryable, non-2xx provider response."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ProviderAuthError(ProviderRequestError):
    """Provider still answered 401 after a forced token refresh."""


class ProviderDataError(SyncError):
    """Raw provider payload is missing required fields or has the wrong shape."""


@dataclass(frozen=True)
class ReconciliationMismatch:
    """Non-fatal warning: order total and payment total disagree."""

    external_order_id: str
    order_total_minor: int
    payments_total_minor: int
    tolerance_minor: int

    @property
    def difference_minor(self) -> int:
        return abs(self.order_total_minor - self.payments_total_minor)

    def message(self) -> str:
        return (
            f"order {self.external_order_id}: total {self.order_total_minor} != "
            f"payments {self.payments_total_minor} (diff {self.difference_minor}, "
            f"tolerance {self.tolerance_minor})"
        )
