"""Pydantic schemas for extraction output and API payloads.

``ExtractionOutput`` is the validated shape of what the vision service
returns; it is what gets persisted in ``Receipt.extracted_data``. Money
fields are ``Decimal`` values quantised to two decimal places and are
serialised as decimal strings (``"15.30"``) in JSON mode, so no binary
floating point ever reaches the database.

The remaining models describe what crosses the API boundary. They are
intentionally separate from the ORM models so the stored shape and the
exposed shape can evolve independently.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import JobStatus


# ---------------------------------------------------------------------------
# Categories

RECEIPT_CATEGORIES: tuple[str, ...] = (
    "Food & Beverages",
    "Transport",
    "Inventory",
    "Utilities",
    "Marketing",
    "Rent",
    "Equipment",
    "Office Supplies",
    "Staff",
    "Banking",
    "Professional Services",
    "Other",
)

# Expenses accept a couple of categories the extractor never emits
EXPENSE_CATEGORIES: tuple[str, ...] = RECEIPT_CATEGORIES[:-1] + ("Insurance", "Maintenance", "Other")

DEFAULT_CATEGORY = "Other"


# ---------------------------------------------------------------------------
# Domain schemas


class LineItem(BaseModel):
    """Individual line item on a receipt."""

    name: str
    price: Decimal
    quantity: Optional[int] = None


class ExtractionOutput(BaseModel):
    """Validated structured data extracted from a receipt image.

    Every field except ``category`` is optional: a field that failed
    validation is simply absent.
    """

    store_name: Optional[str] = None
    total_amount: Optional[Decimal] = None
    date: Optional[dt.date] = None
    items: Optional[List[LineItem]] = None
    payment_method: Optional[str] = None
    gst_amount: Optional[Decimal] = None
    category: str = DEFAULT_CATEGORY

    def to_storage(self) -> Dict[str, Any]:
        """JSON-safe dict as persisted on the receipt row."""
        return self.model_dump(mode="json", exclude_none=True)


class FieldIssue(BaseModel):
    """A field that was dropped or ignored during validation."""

    field: str
    message: str


# ---------------------------------------------------------------------------
# API request/response schemas


class ReceiptUploadOptions(BaseModel):
    """Caller options accompanying an upload."""

    create_expense: bool = True
    wallet_id: Optional[int] = None
    category: Optional[str] = None
    description: Optional[str] = None

    @field_validator("category", "description", mode="before")
    def sanitize_fields(cls, v):
        from receiptflow.utils.sanitization import sanitize_string

        if v is None:
            return None
        return sanitize_string(str(v)) or None


class Base64ReceiptUpload(BaseModel):
    """JSON upload carrying the image as a ``data:image/...;base64,`` URL."""

    image: str
    filename: Optional[str] = None
    options: ReceiptUploadOptions = Field(default_factory=ReceiptUploadOptions)


class ReceiptRead(BaseModel):
    id: int
    owner_id: int
    image_url: str
    filename: str
    content_type: str
    extracted_data: Optional[Dict[str, Any]] = None
    processed_at: Optional[dt.datetime] = None
    created_at: dt.datetime
    status: Optional[JobStatus] = None
    error_message: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_row(cls, receipt: Any, job: Any = None) -> "ReceiptRead":
        data = cls.model_validate(receipt)
        if job is not None:
            data.status = job.status
            data.error_message = job.error_message
        return data


class ReceiptListResponse(BaseModel):
    receipts: List[ReceiptRead]
    limit: int
    offset: int


class ExpenseRead(BaseModel):
    id: int
    owner_id: int
    amount: Decimal
    category: str
    description: Optional[str] = None
    wallet_id: Optional[int] = None
    receipt_id: Optional[int] = None
    created_at: dt.datetime

    model_config = ConfigDict(from_attributes=True)


class ReceiptProcessingResult(BaseModel):
    """Outcome of a submit or correction call."""

    receipt: ReceiptRead
    extracted_data: Optional[ExtractionOutput] = None
    expense: Optional[ExpenseRead] = None
    success: bool
    error: Optional[str] = None
    status: JobStatus
    issues: List[FieldIssue] = Field(default_factory=list)
    processing_time_ms: float = 0.0


class StoreTotal(BaseModel):
    store_name: str
    count: int
    total_amount: Decimal


class ReceiptStats(BaseModel):
    window_days: int
    total_processed: int
    successful_extractions: int
    accuracy_rate: float = Field(description="Percentage of receipts with a completed extraction")
    average_processing_time_ms: Optional[float] = None
    max_processing_time_ms: Optional[float] = None
    top_stores: List[StoreTotal] = Field(default_factory=list)
    category_distribution: Dict[str, int] = Field(default_factory=dict)
    monthly_counts: Dict[str, int] = Field(default_factory=dict)
    status_counts: Dict[str, int] = Field(default_factory=dict)
    # Mean per-field confidence over the window's extraction runs
    average_confidence: Dict[str, float] = Field(default_factory=dict)
    corrected_extractions: int = 0


class UsageSummary(BaseModel):
    feature: str
    month_year: str
    used: int
    limit: Optional[int] = None
    remaining: Optional[int] = None
