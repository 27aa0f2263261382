"""Receipt capture-and-extraction pipeline.

``ReceiptPipeline`` wires the pieces together for one request::

    usage gate -> intake validation -> object store -> receipt + queued job
      -> processing -> extraction -> completed | manual_review | failed
      -> optional expense -> usage / progress reporting

Intake errors (quota, media, storage) abort before anything durable is
left behind. From the moment the receipt row exists it is never rolled
back: an extraction failure leaves a ``failed`` job and a null
``extracted_data`` that a correction can fix later. Expense creation and
the usage / progress counters are best-effort.

Collaborators are injected so the API, the worker and the tests can each
supply their own session factory, object store and vision client.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from collections import Counter, defaultdict
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receiptflow.core.background import BackgroundDispatcher
from receiptflow.core.errors import (
    ExtractionFailed,
    IllegalTransition,
    NotFoundOrForbidden,
    StorageError,
    ValidationError,
)
from receiptflow.core.observability import sentry_breadcrumb, sentry_set_tags
from receiptflow.models.enums import Feature, JobStatus, ProcessingMethod, ProgressMetric
from receiptflow.models.schemas import (
    DEFAULT_CATEGORY,
    ExpenseRead,
    ExtractionOutput,
    ReceiptProcessingResult,
    ReceiptRead,
    ReceiptStats,
    ReceiptUploadOptions,
    StoreTotal,
)
from receiptflow.models.tables import AccuracyLog, CorrectionLog, Expense, ProcessingJob, Receipt
from receiptflow.services.correction_service import CorrectionRecorder
from receiptflow.services.events import ReceiptEventPublisher
from receiptflow.services.expense_service import ExpenseService
from receiptflow.services.extraction_service import ExtractionEngine
from receiptflow.services.field_validation import field_confidence
from receiptflow.services.progress_service import ProgressTracker
from receiptflow.services.queue_service import ProcessingQueue
from receiptflow.services.reconciliation_service import BookkeepingReconciler
from receiptflow.services.storage_service import ObjectStore, StoredObject
from receiptflow.services.usage_service import UsageGate
from receiptflow.utils.helpers import month_key, utcnow
from receiptflow.utils.image_processing import CONTENT_TYPE_EXTENSIONS, decode_data_url, validate_receipt_image
from receiptflow.utils.sanitization import clean_text

logger = logging.getLogger(__name__)

MANUAL_REVIEW_MESSAGE = "Extraction found neither a store name nor a total; manual review needed"
RECEIPT_GONE_MESSAGE = "Receipt was removed while it was being processed"
MAX_PAGE_SIZE = 100
MAX_SEARCH_LENGTH = 100
TOP_STORES = 5


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class ReceiptPipeline:
    """Caller-facing receipt operations."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        object_store: ObjectStore,
        engine: ExtractionEngine,
        *,
        dispatcher: Optional[BackgroundDispatcher] = None,
        usage_gate: Optional[UsageGate] = None,
        progress: Optional[ProgressTracker] = None,
        reconciler: Optional[BookkeepingReconciler] = None,
        corrections: Optional[CorrectionRecorder] = None,
        events: Optional[ReceiptEventPublisher] = None,
    ) -> None:
        self.session_factory = session_factory
        self.object_store = object_store
        self.engine = engine
        self.dispatcher = dispatcher or BackgroundDispatcher()
        self.usage_gate = usage_gate or UsageGate(session_factory)
        self.progress = progress or ProgressTracker(session_factory)
        self.expenses = ExpenseService(session_factory)
        self.reconciler = reconciler or BookkeepingReconciler(self.expenses)
        self.corrections = corrections or CorrectionRecorder(session_factory)
        self.events = events

    # ------------------------------------------------------------------
    # Submit

    async def submit(
        self,
        owner_id: int,
        data: bytes,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
        options: Optional[ReceiptUploadOptions] = None,
    ) -> ReceiptProcessingResult:
        """Store, extract and (optionally) book a receipt.

        :raises QuotaExceeded: monthly limit reached
        :raises PayloadTooLarge: upload over the size limit
        :raises UnsupportedMedia: empty upload or unsupported image type
        :raises StorageError: the image or receipt row could not be stored
        """
        started = time.perf_counter()
        options = options or ReceiptUploadOptions()
        sentry_set_tags({"owner_id": owner_id})

        await self.usage_gate.check(owner_id, Feature.RECEIPT_SCAN)
        content_type = validate_receipt_image(data, filename, content_type)
        stored = await self.object_store.put(data, content_type, owner_id, filename)
        receipt = await self._create_record(owner_id, stored, clean_text(filename) or "receipt", content_type)
        self._publish(owner_id, receipt.id, "receipt_queued")
        sentry_breadcrumb("pipeline", "receipt stored", data={"receipt_id": receipt.id})

        async with self.session_factory() as db:
            async with db.begin():
                await ProcessingQueue(db).transition(receipt.id, JobStatus.PROCESSING)
        self._publish(owner_id, receipt.id, "receipt_processing")

        output: Optional[ExtractionOutput] = None
        issues = []
        error: Optional[str] = None
        try:
            extraction = await self.engine.extract(stored.url)
        except ExtractionFailed as exc:
            error = exc.message
            logger.warning("[pipeline] receipt=%s extraction failed: %s", receipt.id, error)
            recorded = await self._record_failure(receipt.id, error)
        else:
            output = extraction.output
            issues = extraction.issues
            status = JobStatus.MANUAL_REVIEW if extraction.needs_review else JobStatus.COMPLETED
            if status == JobStatus.MANUAL_REVIEW:
                error = MANUAL_REVIEW_MESSAGE
            recorded = await self._record_output(receipt.id, output, status, extraction.method, error)

        if recorded is None:
            logger.warning("[pipeline] receipt=%s removed during extraction; result discarded", receipt.id)
            await self._discard_blob(stored.key)
            return ReceiptProcessingResult(
                receipt=ReceiptRead.from_row(receipt),
                success=False,
                error=RECEIPT_GONE_MESSAGE,
                status=JobStatus.FAILED,
                processing_time_ms=_elapsed_ms(started),
            )
        receipt, job = recorded
        self._publish(owner_id, receipt.id, f"receipt_{job.status.value}", {"error": error})

        expense = await self.reconciler.reconcile(owner_id, receipt.id, output, options)

        if output is not None:
            self.dispatcher.dispatch("record_usage", self.usage_gate.record_usage, owner_id, Feature.RECEIPT_SCAN)
        self.dispatcher.dispatch("progress", self.progress.adjust, owner_id, 1, ProgressMetric.RECEIPTS_SCANNED)

        elapsed = _elapsed_ms(started)
        logger.info(
            "[pipeline] receipt=%s owner=%s status=%s expense=%s in %.0fms",
            receipt.id,
            owner_id,
            job.status.value,
            expense.id if expense else None,
            elapsed,
        )
        return ReceiptProcessingResult(
            receipt=ReceiptRead.from_row(receipt, job),
            extracted_data=output,
            expense=ExpenseRead.model_validate(expense) if expense else None,
            success=job.status == JobStatus.COMPLETED,
            error=error,
            status=job.status,
            issues=issues,
            processing_time_ms=elapsed,
        )

    async def submit_base64(
        self,
        owner_id: int,
        data_url: str,
        filename: Optional[str] = None,
        options: Optional[ReceiptUploadOptions] = None,
    ) -> ReceiptProcessingResult:
        """Decode a ``data:image/...;base64,`` URL and :meth:`submit` it.

        :raises UnsupportedMedia: not a base64 image data URL
        """
        data, declared_type = decode_data_url(data_url)
        if not filename:
            ext = CONTENT_TYPE_EXTENSIONS.get(declared_type or "", "jpg")
            filename = f"receipt_{utcnow().strftime('%Y%m%dT%H%M%S')}.{ext}"
        return await self.submit(owner_id, data, filename, declared_type, options)

    async def _create_record(self, owner_id: int, stored: StoredObject, filename: str, content_type: str) -> Receipt:
        """Receipt row and queued job in one transaction; no row means no blob."""
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    receipt = Receipt(
                        owner_id=owner_id,
                        image_url=stored.url,
                        storage_key=stored.key,
                        filename=filename,
                        content_type=content_type,
                    )
                    db.add(receipt)
                    await db.flush()
                    await ProcessingQueue(db).enqueue(receipt.id, owner_id)
        except SQLAlchemyError as exc:
            logger.error("[pipeline] could not record receipt for key=%s: %s", stored.key, exc)
            await self._discard_blob(stored.key)
            raise StorageError("Could not record the receipt") from exc
        return receipt

    @staticmethod
    async def _still_present(db: AsyncSession, queue: ProcessingQueue, receipt_id: int) -> Optional[Receipt]:
        """The receipt row, or ``None`` when it or its job vanished mid-run."""
        receipt = await db.get(Receipt, receipt_id)
        if receipt is None or await queue.current_status(receipt_id) is None:
            return None
        return receipt

    async def _record_failure(self, receipt_id: int, error: str) -> Optional[Tuple[Receipt, ProcessingJob]]:
        async with self.session_factory() as db:
            async with db.begin():
                queue = ProcessingQueue(db)
                receipt = await self._still_present(db, queue, receipt_id)
                if receipt is None:
                    return None
                job = await queue.transition(receipt_id, JobStatus.FAILED, error=error)
        return receipt, job

    async def _record_output(
        self,
        receipt_id: int,
        output: ExtractionOutput,
        status: JobStatus,
        method: ProcessingMethod,
        error: Optional[str],
    ) -> Optional[Tuple[Receipt, ProcessingJob]]:
        """Persist the output, its accuracy log and the job transition together."""
        async with self.session_factory() as db:
            async with db.begin():
                queue = ProcessingQueue(db)
                receipt = await self._still_present(db, queue, receipt_id)
                if receipt is None:
                    return None
                receipt.extracted_data = output.to_storage()
                receipt.processed_at = utcnow()
                db.add(
                    AccuracyLog(
                        receipt_id=receipt_id,
                        owner_id=receipt.owner_id,
                        processing_method=method,
                        confidence_scores=field_confidence(output),
                    )
                )
                job = await queue.transition(receipt_id, status, method=method, error=error)
        return receipt, job

    async def _discard_blob(self, key: str) -> None:
        try:
            await self.object_store.delete(key)
        except StorageError:
            logger.warning("[pipeline] orphaned blob %s could not be removed", key, exc_info=True)

    def _publish(self, owner_id: int, receipt_id: int, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        if self.events is not None and self.events.enabled:
            self.dispatcher.dispatch("publish_event", self.events.publish, owner_id, receipt_id, event_type, data)

    # ------------------------------------------------------------------
    # Correct / delete

    async def correct(self, owner_id: int, receipt_id: int, corrections: Mapping[str, Any]) -> ReceiptProcessingResult:
        """Apply human corrections and complete the receipt's job."""
        started = time.perf_counter()
        outcome = await self.corrections.apply(owner_id, receipt_id, corrections)
        expense = await self.expenses.get_for_receipt(receipt_id, owner_id)
        self._publish(owner_id, receipt_id, "receipt_corrected", {"fields": sorted(outcome.changes)})
        return ReceiptProcessingResult(
            receipt=ReceiptRead.from_row(outcome.receipt, outcome.job),
            extracted_data=outcome.output,
            expense=ExpenseRead.model_validate(expense) if expense else None,
            success=True,
            status=outcome.job.status,
            issues=outcome.issues,
            processing_time_ms=_elapsed_ms(started),
        )

    async def delete(self, owner_id: int, receipt_id: int) -> None:
        """Delete the receipt row (and its job and logs), then its blob.

        A linked expense stays in the ledger with its receipt link cleared.

        :raises IllegalTransition: the job is still queued or processing
        """
        async with self.session_factory() as db:
            async with db.begin():
                receipt = await self._owned_receipt(db, owner_id, receipt_id)
                status = await ProcessingQueue(db).current_status(receipt_id)
                if status in (JobStatus.QUEUED, JobStatus.PROCESSING):
                    raise IllegalTransition(receipt_id, status.value, "deleted")
                key = receipt.storage_key
                await db.execute(update(Expense).where(Expense.receipt_id == receipt_id).values(receipt_id=None))
                await db.execute(delete(CorrectionLog).where(CorrectionLog.receipt_id == receipt_id))
                await db.execute(delete(AccuracyLog).where(AccuracyLog.receipt_id == receipt_id))
                await db.execute(delete(ProcessingJob).where(ProcessingJob.receipt_id == receipt_id))
                await db.execute(delete(Receipt).where(Receipt.id == receipt_id))

        await self._discard_blob(key)
        self.dispatcher.dispatch("progress", self.progress.adjust, owner_id, -1, ProgressMetric.RECEIPTS_SCANNED)
        self._publish(owner_id, receipt_id, "receipt_deleted")
        logger.info("[pipeline] receipt=%s deleted by owner=%s", receipt_id, owner_id)

    # ------------------------------------------------------------------
    # Reads

    async def _owned_receipt(self, db: AsyncSession, owner_id: int, receipt_id: int) -> Receipt:
        receipt = await db.scalar(select(Receipt).where(Receipt.id == receipt_id, Receipt.owner_id == owner_id))
        if receipt is None:
            raise NotFoundOrForbidden(f"Receipt {receipt_id} not found", receipt_id=receipt_id)
        return receipt

    async def get_receipt(self, owner_id: int, receipt_id: int) -> ReceiptRead:
        async with self.session_factory() as db:
            receipt = await self._owned_receipt(db, owner_id, receipt_id)
            job = await ProcessingQueue(db).get(receipt_id)
        return ReceiptRead.from_row(receipt, job)

    async def list_receipts(self, owner_id: int, limit: int = 20, offset: int = 0) -> List[ReceiptRead]:
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError("limit", f"limit must be between 1 and {MAX_PAGE_SIZE}", limit)
        if offset < 0:
            raise ValidationError("offset", "offset must not be negative", offset)
        async with self.session_factory() as db:
            rows = (
                await db.execute(
                    select(Receipt, ProcessingJob)
                    .outerjoin(ProcessingJob, ProcessingJob.receipt_id == Receipt.id)
                    .where(Receipt.owner_id == owner_id)
                    .order_by(Receipt.created_at.desc(), Receipt.id.desc())
                    .limit(limit)
                    .offset(offset)
                )
            ).all()
        return [ReceiptRead.from_row(receipt, job) for receipt, job in rows]

    async def list_pending_review(self, owner_id: int, limit: int = 50) -> List[ReceiptRead]:
        """Receipts whose job is in ``manual_review``, newest first."""
        async with self.session_factory() as db:
            jobs = await ProcessingQueue(db).list_needing_review(owner_id, limit)
            return await self._receipts_for_jobs(db, owner_id, jobs)

    async def list_failed(self, owner_id: int, limit: int = 50) -> List[ReceiptRead]:
        """Receipts whose extraction failed and still await a correction."""
        async with self.session_factory() as db:
            jobs = await ProcessingQueue(db).list_failed(owner_id, limit)
            return await self._receipts_for_jobs(db, owner_id, jobs)

    @staticmethod
    async def _receipts_for_jobs(db: AsyncSession, owner_id: int, jobs: Sequence[ProcessingJob]) -> List[ReceiptRead]:
        if not jobs:
            return []
        result = await db.execute(
            select(Receipt).where(Receipt.owner_id == owner_id, Receipt.id.in_([job.receipt_id for job in jobs]))
        )
        receipts = {receipt.id: receipt for receipt in result.scalars()}
        return [ReceiptRead.from_row(receipts[job.receipt_id], job) for job in jobs if job.receipt_id in receipts]

    async def search_receipts(self, owner_id: int, term: str, limit: int = 20) -> List[ReceiptRead]:
        """Receipts whose store name or expense description contains ``term``.

        Matching is case-insensitive; newest first.
        """
        cleaned = clean_text(term, max_length=MAX_SEARCH_LENGTH)
        if not cleaned:
            raise ValidationError("q", "search term must not be empty", term)
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError("limit", f"limit must be between 1 and {MAX_PAGE_SIZE}", limit)

        escaped = cleaned.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        store_name = Receipt.extracted_data["store_name"].as_string()
        async with self.session_factory() as db:
            rows = (
                await db.execute(
                    select(Receipt, ProcessingJob)
                    .outerjoin(ProcessingJob, ProcessingJob.receipt_id == Receipt.id)
                    .outerjoin(Expense, Expense.receipt_id == Receipt.id)
                    .where(
                        Receipt.owner_id == owner_id,
                        or_(
                            store_name.ilike(pattern, escape="\\"),
                            Expense.description.ilike(pattern, escape="\\"),
                        ),
                    )
                    .order_by(Receipt.created_at.desc(), Receipt.id.desc())
                    .limit(limit)
                )
            ).all()
        return [ReceiptRead.from_row(receipt, job) for receipt, job in rows]

    async def get_stats(self, owner_id: int, window_days: int = 30) -> ReceiptStats:
        """Processing statistics over the last ``window_days`` days."""
        if window_days < 1:
            raise ValidationError("days", "window must be at least one day", window_days)
        since = utcnow() - dt.timedelta(days=window_days)
        async with self.session_factory() as db:
            rows = (
                await db.execute(
                    select(Receipt, ProcessingJob)
                    .outerjoin(ProcessingJob, ProcessingJob.receipt_id == Receipt.id)
                    .where(Receipt.owner_id == owner_id, Receipt.created_at >= since)
                )
            ).all()
            status_counts = await ProcessingQueue(db).status_counts(owner_id, since)
            accuracy_rows = (
                await db.execute(
                    select(AccuracyLog.confidence_scores, AccuracyLog.manual_corrections).where(
                        AccuracyLog.owner_id == owner_id, AccuracyLog.created_at >= since
                    )
                )
            ).all()

        total = len(rows)
        successful = 0
        durations: List[float] = []
        store_counts: Counter = Counter()
        store_totals: Dict[str, Decimal] = defaultdict(Decimal)
        categories: Counter = Counter()
        months: Counter = Counter()

        for receipt, job in rows:
            months[month_key(receipt.created_at)] += 1
            if job is not None and job.status == JobStatus.COMPLETED and receipt.extracted_data:
                successful += 1
            if job is not None and job.processing_started_at and job.processing_completed_at:
                delta = job.processing_completed_at - job.processing_started_at
                durations.append(delta.total_seconds() * 1000)
            data = receipt.extracted_data or {}
            if not data:
                continue
            categories[data.get("category") or DEFAULT_CATEGORY] += 1
            store = data.get("store_name")
            if store:
                store_counts[store] += 1
                if data.get("total_amount") is not None:
                    store_totals[store] += Decimal(str(data["total_amount"]))

        confidence_sums: Dict[str, float] = defaultdict(float)
        corrected = 0
        for scores, manual_corrections in accuracy_rows:
            for name, score in (scores or {}).items():
                confidence_sums[name] += float(score)
            if manual_corrections:
                corrected += 1

        top = sorted(store_counts, key=lambda s: (-store_counts[s], -store_totals[s], s))[:TOP_STORES]
        return ReceiptStats(
            window_days=window_days,
            total_processed=total,
            successful_extractions=successful,
            accuracy_rate=round(successful / total * 100, 1) if total else 0.0,
            average_processing_time_ms=round(sum(durations) / len(durations), 2) if durations else None,
            max_processing_time_ms=round(max(durations), 2) if durations else None,
            top_stores=[
                StoreTotal(store_name=s, count=store_counts[s], total_amount=store_totals[s].quantize(Decimal("0.01")))
                for s in top
            ],
            category_distribution=dict(categories),
            monthly_counts=dict(sorted(months.items())),
            status_counts=status_counts,
            average_confidence={
                name: round(total / len(accuracy_rows), 3) for name, total in sorted(confidence_sums.items())
            },
            corrected_extractions=corrected,
        )
