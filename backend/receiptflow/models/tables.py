"""SQLAlchemy ORM models for the receipt pipeline.

These models define the relational schema the pipeline relies on:
receipts and their 1:1 processing job, wallets and the expenses that
debit them, the append-only correction log, per-run accuracy logs and
the per-month feature usage / lifetime progress counters.

Money columns use ``Numeric(12, 2)`` and are handled as ``Decimal`` in
Python. Enumerated fields are stored as strings using SQLAlchemy's
native Enum type.

If you extend or modify these models remember to call the ``init_db``
helper during development to recreate the tables.
"""

from __future__ import annotations

import datetime as dt

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from receiptflow.core.database import Base
from .enums import JobStatus, PlanType, ProcessingMethod, WalletType


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


class User(Base):
    """Account owning receipts, wallets and expenses."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=False)
    plan = Column(Enum(PlanType), nullable=False, default=PlanType.FREE)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    receipts = relationship("Receipt", back_populates="owner")
    wallets = relationship("Wallet", back_populates="owner")


class Wallet(Base):
    """A balance that expenses are paid from."""

    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(Enum(WalletType), nullable=False, default=WalletType.CASH)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    is_primary = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    owner = relationship("User", back_populates="wallets")


class Receipt(Base):
    """Uploaded receipt image and its (possibly absent) extraction output."""

    __tablename__ = "receipts"
    __table_args__ = (Index("ix_receipts_owner_created_at", "owner_id", "created_at"),)

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    image_url = Column(String, nullable=False)
    storage_key = Column(String, nullable=False)
    filename = Column(String, nullable=False)
    content_type = Column(String, nullable=False)
    # Null until the extraction engine produces an output
    extracted_data = Column(JSON, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    owner = relationship("User", back_populates="receipts")
    job = relationship(
        "ProcessingJob",
        back_populates="receipt",
        uselist=False,
        cascade="all, delete-orphan",
    )
    expense = relationship("Expense", back_populates="receipt", uselist=False)
    corrections = relationship(
        "CorrectionLog",
        back_populates="receipt",
        cascade="all, delete-orphan",
    )


class ProcessingJob(Base):
    """Processing state of a receipt. Exactly one per receipt."""

    __tablename__ = "receipt_processing_queue"

    id = Column(Integer, primary_key=True, index=True)
    receipt_id = Column(Integer, ForeignKey("receipts.id", ondelete="CASCADE"), nullable=False, unique=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.QUEUED, index=True)
    processing_method = Column(Enum(ProcessingMethod), nullable=True)
    error_message = Column(Text, nullable=True)
    processing_started_at = Column(DateTime, nullable=True)
    processing_completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    receipt = relationship("Receipt", back_populates="job")


class Expense(Base):
    """Ledger entry. At most one per receipt."""

    __tablename__ = "expenses"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    category = Column(String, nullable=False, default="Other")
    description = Column(String, nullable=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id"), nullable=True)
    receipt_id = Column(Integer, ForeignKey("receipts.id", ondelete="SET NULL"), nullable=True, unique=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    receipt = relationship("Receipt", back_populates="expense")
    wallet = relationship("Wallet")


class CorrectionLog(Base):
    """Append-only record of field-level corrections to an extraction."""

    __tablename__ = "ocr_correction_logs"

    id = Column(Integer, primary_key=True, index=True)
    receipt_id = Column(Integer, ForeignKey("receipts.id", ondelete="CASCADE"), nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    # {field: {"original": ..., "corrected": ...}}
    corrections = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    receipt = relationship("Receipt", back_populates="corrections")


class FeatureUsage(Base):
    """Per-month usage counter for a metered feature."""

    __tablename__ = "feature_usage"
    __table_args__ = (UniqueConstraint("owner_id", "feature_name", "month_year", name="uq_feature_usage_month"),)

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    feature_name = Column(String, nullable=False)
    month_year = Column(String(7), nullable=False)  # YYYY-MM
    usage_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)


class UserProgress(Base):
    """Lifetime progress counters (e.g. receipts scanned)."""

    __tablename__ = "user_progress"
    __table_args__ = (UniqueConstraint("owner_id", "metric_name", name="uq_user_progress_metric"),)

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    metric_name = Column(String, nullable=False)
    current_value = Column(Integer, nullable=False, default=0)
    all_time_value = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)


class AccuracyLog(Base):
    """Per-run extraction confidence, later annotated with human corrections."""

    __tablename__ = "ocr_accuracy_logs"

    id = Column(Integer, primary_key=True, index=True)
    receipt_id = Column(Integer, ForeignKey("receipts.id", ondelete="CASCADE"), nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    processing_method = Column(Enum(ProcessingMethod), nullable=False)
    # {"store_name": 0.9, "total_amount": 0.95, ...}
    confidence_scores = Column(JSON, nullable=False, default=dict)
    # Same shape as CorrectionLog.corrections; null until corrected
    manual_corrections = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
