"""Enumeration types used throughout the receipt pipeline.

Enumerations make it easier to constrain the values that can be
stored in the database or passed through the API. They also
improve readability when dealing with domain concepts like plan
levels, queue states or wallet types.

When modifying these enums you should update any corresponding
database columns or Pydantic validators so that new values are
accepted where appropriate.
"""

from enum import Enum


class PlanType(str, Enum):
    """Subscription tier for an account."""

    FREE = "free"
    PREMIUM = "premium"


class JobStatus(str, Enum):
    """States of a receipt processing job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    MANUAL_REVIEW = "manual_review"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.MANUAL_REVIEW)


class ProcessingMethod(str, Enum):
    """Which extraction strategy produced (or will produce) the output."""

    VISION_AI = "vision_ai"
    FALLBACK = "fallback"
    MANUAL = "manual"


class WalletType(str, Enum):
    CASH = "cash"
    BANK = "bank"
    EWALLET = "ewallet"


class Feature(str, Enum):
    """Metered features tracked in ``feature_usage``."""

    RECEIPT_SCAN = "receipt_scan"


class ProgressMetric(str, Enum):
    RECEIPTS_SCANNED = "receipts_scanned"
