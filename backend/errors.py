"""
Error taxonomy shared by the ledger, runtime workers and HTTP layer.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for status-ledger failures."""

    error_code = "ledger_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context: Dict[str, Any] = dict(context)

    def to_detail(self, reason: Optional[str] = None) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "reason": reason or str(self),
            **self.context,
        }


class NotFound(LedgerError):
    """Unknown machine code or color name."""

    error_code = "not_found"


class InvalidTimeRange(LedgerError, ValueError):
    """A close or open would produce end_time < start_time or overlap history."""

    error_code = "invalid_time_range"


class StorageUnavailable(LedgerError, RuntimeError):
    """Storage timed out or raised; retryable."""

    error_code = "storage_unavailable"


class Overloaded(LedgerError):
    """Ingest queue is full; producers should retry later."""

    error_code = "ingest_overloaded"
