"""
Error taxonomy for ingestion and persistence.

Hierarchy::

    IngestionError
    ├── VendorApiError                 non-retryable unless a subclass says so
    │   ├── VendorRateLimitedError     HTTP 429, retryable, carries Retry-After
    │   └── VendorTransientError       5xx / timeout / transport, retryable
    ├── BatchTooLargeError             caller bug, fail fast (also a ValueError)
    ├── PersistenceUnavailableError    ledger tables not deployed yet
    └── TransactionFailureError        write set rolled back

``VendorApiError.exhausted`` is set when the client gave up after its retry
budget; the caller sees the last underlying error, tagged.
"""

from __future__ import annotations

from typing import Optional


class IngestionError(RuntimeError):
    """Base class for every error raised by the ingestion core."""


class VendorApiError(IngestionError):
    """The market-data vendor rejected or failed a request.

    Attributes:
        status_code: HTTP status, or ``None`` for transport-level failures
            and errors embedded in a 200 body.
        retryable: Whether the client may retry this request.
        exhausted: ``True`` once the client has used its whole retry budget.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        exhausted: bool = False,
    ) -> None:
        self.status_code = status_code
        self.exhausted = exhausted
        super().__init__(message)

    @property
    def kind(self) -> str:
        """Short machine-readable label used in per-identifier error markers."""
        if self.exhausted:
            return "retries_exhausted"
        return "vendor_error"

    @property
    def identifier_specific(self) -> bool:
        """Whether a single bad identifier can explain the rejection (HTTP 400 or a body error)."""
        return not self.retryable and self.status_code in (400, None)


class VendorRateLimitedError(VendorApiError):
    """HTTP 429 from the vendor.

    Attributes:
        retry_after: Seconds the vendor asked us to wait, if it said.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = 429,
        exhausted: bool = False,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, status_code=status_code, exhausted=exhausted)


class VendorTransientError(VendorApiError):
    """5xx response, timeout, or network failure."""

    retryable = True


class BatchTooLargeError(IngestionError, ValueError):
    """More identifiers were passed to a single fetch than the batch cap."""

    def __init__(self, size: int, cap: int) -> None:
        self.size = size
        self.cap = cap
        super().__init__(f"Batch of {size} identifiers exceeds the cap of {cap}.")


class PersistenceUnavailableError(IngestionError):
    """Required ledger tables are missing (schema not applied or migrated yet)."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Persistence unavailable; missing tables: {', '.join(missing)}.")


class TransactionFailureError(IngestionError):
    """The per-identifier write set failed and was rolled back."""
