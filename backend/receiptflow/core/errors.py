"""Exception taxonomy for the receipt pipeline.

Service code raises these instead of ``HTTPException`` so that the
pipeline can be driven from the API, from Dramatiq actors and from
tests alike. ``receiptflow.api.error_handlers`` maps each class to an HTTP
status code.
"""

from __future__ import annotations

from typing import Any, Optional


class ReceiptFlowError(Exception):
    """Base class for all domain errors."""

    status_code: int = 400
    code: str = "receiptflow_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "details": self.message}
        if self.context:
            payload["context"] = self.context
        return payload


# --- Intake -----------------------------------------------------------------
class QuotaExceeded(ReceiptFlowError):
    status_code = 402
    code = "quota_exceeded"


class UnsupportedMedia(ReceiptFlowError):
    status_code = 415
    code = "unsupported_media"


class PayloadTooLarge(ReceiptFlowError):
    status_code = 413
    code = "payload_too_large"


class StorageError(ReceiptFlowError):
    status_code = 503
    code = "storage_error"


# --- Extraction -------------------------------------------------------------
class ExtractionFailed(ReceiptFlowError):
    status_code = 502
    code = "extraction_failed"


class ExtractionTimeout(ExtractionFailed):
    status_code = 504
    code = "extraction_timeout"


# --- Field validation -------------------------------------------------------
class ValidationError(ReceiptFlowError):
    """A single malformed field. Never aborts the whole record."""

    status_code = 422
    code = "validation_error"

    def __init__(self, field: str, message: str, value: Any = None) -> None:
        super().__init__(message, field=field)
        self.field = field
        self.value = value

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


# --- Ownership / state ------------------------------------------------------
class NotFoundOrForbidden(ReceiptFlowError):
    status_code = 404
    code = "not_found"


class IllegalTransition(ReceiptFlowError):
    status_code = 409
    code = "illegal_transition"

    def __init__(self, receipt_id: int, current: Optional[str], target: str) -> None:
        super().__init__(
            f"Receipt {receipt_id} cannot move from {current or 'missing'} to {target}",
            receipt_id=receipt_id,
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class DuplicateJob(ReceiptFlowError):
    status_code = 409
    code = "duplicate_job"


# --- Bookkeeping ------------------------------------------------------------
class WalletNotFound(ReceiptFlowError):
    status_code = 404
    code = "wallet_not_found"


class InsufficientBalance(ReceiptFlowError):
    status_code = 409
    code = "insufficient_balance"


__all__ = [
    "ReceiptFlowError",
    "QuotaExceeded",
    "UnsupportedMedia",
    "PayloadTooLarge",
    "StorageError",
    "ExtractionFailed",
    "ExtractionTimeout",
    "ValidationError",
    "NotFoundOrForbidden",
    "IllegalTransition",
    "DuplicateJob",
    "WalletNotFound",
    "InsufficientBalance",
]
