"""Human corrections of extraction output.

A correction merges validated field overrides into the stored output,
records the field-level diff in the append-only ``ocr_correction_logs``
table, annotates the receipt's accuracy logs with the same diff and moves
the job to ``completed``. Everything happens in one transaction.
Correction logs are written for later accuracy analysis and are never
read back by the pipeline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receiptflow.core.errors import IllegalTransition, NotFoundOrForbidden, ValidationError
from receiptflow.models.enums import JobStatus
from receiptflow.models.schemas import ExtractionOutput, FieldIssue
from receiptflow.models.tables import AccuracyLog, CorrectionLog, ProcessingJob, Receipt
from receiptflow.services.field_validation import validate_corrections, validate_extraction
from receiptflow.services.queue_service import ProcessingQueue
from receiptflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def diff_outputs(original: Mapping[str, Any], corrected: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Field-level diff between two stored (JSON) outputs."""
    changes: Dict[str, Dict[str, Any]] = {}
    for key in sorted(set(original) | set(corrected)):
        before, after = original.get(key), corrected.get(key)
        if before != after:
            changes[key] = {"original": before, "corrected": after}
    return changes


@dataclass
class CorrectionOutcome:
    receipt: Receipt
    job: ProcessingJob
    output: ExtractionOutput
    changes: Dict[str, Dict[str, Any]]
    issues: List[FieldIssue] = field(default_factory=list)


class CorrectionRecorder:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def apply(self, owner_id: int, receipt_id: int, corrections: Mapping[str, Any]) -> CorrectionOutcome:
        """Apply ``corrections`` to the receipt's extraction output.

        :raises NotFoundOrForbidden: the receipt does not exist or is not the owner's
        :raises IllegalTransition: the job is still queued or processing
        :raises ValidationError: every corrected field was rejected
        """
        async with self.session_factory() as db:
            async with db.begin():
                receipt = await db.scalar(select(Receipt).where(Receipt.id == receipt_id, Receipt.owner_id == owner_id))
                if receipt is None:
                    raise NotFoundOrForbidden(f"Receipt {receipt_id} not found", receipt_id=receipt_id)

                queue = ProcessingQueue(db)
                job = await queue.get(receipt_id)
                if job is not None and job.status in (JobStatus.QUEUED, JobStatus.PROCESSING):
                    raise IllegalTransition(receipt_id, job.status.value, JobStatus.COMPLETED.value)

                accepted, issues = validate_corrections(corrections)
                if issues and not accepted:
                    raise ValidationError(
                        issues[0].field,
                        "No corrected field was valid: " + "; ".join(f"{i.field}: {i.message}" for i in issues),
                    )

                stored: Dict[str, Any] = dict(receipt.extracted_data or {})
                current, _ = validate_extraction(stored)
                merged = current.model_copy(update=accepted)
                output, revalidation_issues = validate_extraction(merged.to_storage())
                issues.extend(revalidation_issues)
                corrected = output.to_storage()

                changes = diff_outputs(stored, corrected)
                receipt.extracted_data = corrected
                receipt.processed_at = utcnow()
                if changes:
                    db.add(CorrectionLog(receipt_id=receipt.id, owner_id=owner_id, corrections=changes))
                    await db.execute(
                        update(AccuracyLog)
                        .where(AccuracyLog.receipt_id == receipt.id)
                        .values(manual_corrections=changes)
                        .execution_options(synchronize_session=False)
                    )

                if job is None:
                    job = await queue.create_manual_completed(receipt.id, owner_id)
                else:
                    job = await queue.transition(receipt.id, JobStatus.COMPLETED)

        logger.info(
            "[correction] receipt=%s fields=%s ignored=%s",
            receipt_id,
            sorted(changes),
            [issue.field for issue in issues],
        )
        return CorrectionOutcome(receipt=receipt, job=job, output=output, changes=changes, issues=issues)
