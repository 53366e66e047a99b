"""Exceptions raised by the co-purchase index and query path.

Each error carries an HTTP-ish ``status_code`` and a ``details`` dict so the
routers can surface it without re-deriving context.
"""

from typing import Any, Dict, Optional


class CoPurchaseError(Exception):
    """Base exception for co-purchase errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class LockUnavailable(CoPurchaseError):
    """Raised when the named refresh lock is held elsewhere.

    This is a normal concurrency outcome: the caller carries on with the data
    already in the pair table.
    """

    def __init__(self, lock_name: str, timeout_seconds: float):
        super().__init__(
            message=f"Lock '{lock_name}' not acquired within {timeout_seconds:.2f}s",
            status_code=409,
            details={"lock_name": lock_name, "timeout_seconds": timeout_seconds},
        )


class StoreWriteFailure(CoPurchaseError):
    """Raised when folding orders into the pair table fails."""

    def __init__(self, operation: str, error: Exception, details: Optional[Dict[str, Any]] = None):
        payload = {
            "operation": operation,
            "error": str(error),
            "error_type": type(error).__name__,
        }
        if details:
            payload.update(details)
        super().__init__(
            message=f"Co-purchase store write failed during {operation}: {error}",
            status_code=503,
            details=payload,
        )


class QueryFailure(CoPurchaseError):
    """Raised when recommendations cannot be read from the store."""

    def __init__(self, shop_id: int, error: Exception):
        super().__init__(
            message=f"Failed to read co-purchase recommendations for shop {shop_id}: {error}",
            status_code=503,
            details={
                "shop_id": shop_id,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )
