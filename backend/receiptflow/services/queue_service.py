"""Processing queue: the per-receipt job state machine.

Every receipt has exactly one row in ``receipt_processing_queue``. Its
status only moves along the edges in ``TRANSITIONS``::

    queued        -> processing
    processing    -> completed | failed | manual_review
    failed        -> completed        (correction)
    manual_review -> completed        (correction)
    completed     -> completed        (re-correction)

Each transition is a single conditional ``UPDATE ... WHERE status IN
(<legal sources>)``; when no row matches the move was illegal or another
caller got there first, and ``IllegalTransition`` is raised. Timestamps
are written with ``COALESCE`` so they are set exactly once.

The service only flushes; callers own the transaction and commit.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Dict, FrozenSet, List, Optional, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from receiptflow.core.errors import DuplicateJob, IllegalTransition
from receiptflow.models.enums import JobStatus, ProcessingMethod
from receiptflow.models.tables import ProcessingJob
from receiptflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.MANUAL_REVIEW}),
    JobStatus.FAILED: frozenset({JobStatus.COMPLETED}),
    JobStatus.MANUAL_REVIEW: frozenset({JobStatus.COMPLETED}),
    JobStatus.COMPLETED: frozenset({JobStatus.COMPLETED}),
}


def legal_sources(target: JobStatus) -> List[JobStatus]:
    """States from which ``target`` may be entered."""
    return [source for source, targets in TRANSITIONS.items() if target in targets]


def can_transition(current: Optional[JobStatus], target: JobStatus) -> bool:
    return current is not None and target in TRANSITIONS.get(current, frozenset())


class ProcessingQueue:
    """Job state machine bound to one ``AsyncSession``."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # --- Writes ---------------------------------------------------------
    async def enqueue(self, receipt_id: int, owner_id: int) -> ProcessingJob:
        """Create the ``queued`` job for a receipt.

        :raises DuplicateJob: a job already exists for the receipt
        """
        existing = await self.db.scalar(select(ProcessingJob.id).where(ProcessingJob.receipt_id == receipt_id))
        if existing is not None:
            raise DuplicateJob(f"Receipt {receipt_id} already has a processing job", receipt_id=receipt_id)
        job = ProcessingJob(receipt_id=receipt_id, owner_id=owner_id, status=JobStatus.QUEUED)
        self.db.add(job)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise DuplicateJob(
                f"Receipt {receipt_id} already has a processing job", receipt_id=receipt_id
            ) from exc
        return job

    async def create_manual_completed(self, receipt_id: int, owner_id: int) -> ProcessingJob:
        """Job for a receipt that never had one, completed by hand."""
        now = utcnow()
        job = ProcessingJob(
            receipt_id=receipt_id,
            owner_id=owner_id,
            status=JobStatus.COMPLETED,
            processing_method=ProcessingMethod.MANUAL,
            processing_started_at=now,
            processing_completed_at=now,
        )
        self.db.add(job)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise DuplicateJob(
                f"Receipt {receipt_id} already has a processing job", receipt_id=receipt_id
            ) from exc
        return job

    async def transition(
        self,
        receipt_id: int,
        target: JobStatus,
        *,
        method: Optional[ProcessingMethod] = None,
        error: Optional[str] = None,
    ) -> ProcessingJob:
        """Move the receipt's job to ``target``.

        :raises IllegalTransition: the job is missing, in a state that
            cannot reach ``target``, or was moved concurrently
        """
        now = utcnow()
        values: dict = {"status": target, "updated_at": now}
        if target == JobStatus.PROCESSING:
            values["processing_started_at"] = func.coalesce(ProcessingJob.processing_started_at, now)
        if target.is_terminal:
            values["processing_completed_at"] = func.coalesce(ProcessingJob.processing_completed_at, now)
        if method is not None:
            values["processing_method"] = method
        if target == JobStatus.FAILED:
            values["error_message"] = error or "Processing failed"
        elif error is not None:
            values["error_message"] = error
        elif target == JobStatus.COMPLETED:
            values["error_message"] = None

        stmt = (
            update(ProcessingJob)
            .where(ProcessingJob.receipt_id == receipt_id, ProcessingJob.status.in_(legal_sources(target)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            current = await self.current_status(receipt_id)
            logger.info(
                "[queue] rejected transition receipt=%s %s -> %s",
                receipt_id,
                current.value if current else None,
                target.value,
            )
            raise IllegalTransition(receipt_id, current.value if current else None, target.value)

        job = await self.get(receipt_id)
        if job is None:
            # Deleted between the update and the read
            raise IllegalTransition(receipt_id, None, target.value)
        logger.debug("[queue] receipt=%s -> %s", receipt_id, target.value)
        return job

    async def mark_stuck_failed(self, older_than: dt.timedelta, *, now: Optional[dt.datetime] = None) -> int:
        """Fail jobs left in ``processing`` longer than ``older_than``.

        A crashed run would otherwise leave its receipt uncorrectable.
        """
        now = now or utcnow()
        cutoff = now - older_than
        stmt = (
            update(ProcessingJob)
            .where(
                ProcessingJob.status == JobStatus.PROCESSING,
                ProcessingJob.processing_started_at < cutoff,
            )
            .values(
                status=JobStatus.FAILED,
                error_message="Processing did not finish in time",
                processing_completed_at=func.coalesce(ProcessingJob.processing_completed_at, now),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return int(result.rowcount or 0)

    async def purge_finished(
        self,
        completed_days: int = 30,
        failed_days: int = 7,
        *,
        now: Optional[dt.datetime] = None,
    ) -> int:
        """Delete old finished jobs (completed after ``completed_days``, failed after ``failed_days``)."""
        now = now or utcnow()
        stmt = (
            delete(ProcessingJob)
            .where(
                or_(
                    and_(
                        ProcessingJob.status == JobStatus.COMPLETED,
                        ProcessingJob.processing_completed_at < now - dt.timedelta(days=completed_days),
                    ),
                    and_(
                        ProcessingJob.status == JobStatus.FAILED,
                        ProcessingJob.processing_completed_at < now - dt.timedelta(days=failed_days),
                    ),
                )
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return int(result.rowcount or 0)

    # --- Reads ----------------------------------------------------------
    async def get(self, receipt_id: int, owner_id: Optional[int] = None) -> Optional[ProcessingJob]:
        stmt = select(ProcessingJob).where(ProcessingJob.receipt_id == receipt_id)
        if owner_id is not None:
            stmt = stmt.where(ProcessingJob.owner_id == owner_id)
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def current_status(self, receipt_id: int) -> Optional[JobStatus]:
        return await self.db.scalar(select(ProcessingJob.status).where(ProcessingJob.receipt_id == receipt_id))

    async def list_needing_review(self, owner_id: int, limit: int = 50) -> Sequence[ProcessingJob]:
        return await self._list_by_status(owner_id, JobStatus.MANUAL_REVIEW, limit)

    async def list_failed(self, owner_id: int, limit: int = 50) -> Sequence[ProcessingJob]:
        return await self._list_by_status(owner_id, JobStatus.FAILED, limit)

    async def list_stuck(self, older_than: dt.timedelta, *, now: Optional[dt.datetime] = None) -> Sequence[ProcessingJob]:
        cutoff = (now or utcnow()) - older_than
        stmt = (
            select(ProcessingJob)
            .where(
                ProcessingJob.status.in_([JobStatus.QUEUED, JobStatus.PROCESSING]),
                func.coalesce(ProcessingJob.processing_started_at, ProcessingJob.created_at) < cutoff,
            )
            .order_by(ProcessingJob.created_at)
        )
        return (await self.db.execute(stmt)).scalars().all()

    async def status_counts(self, owner_id: int, since: Optional[dt.datetime] = None) -> Dict[str, int]:
        stmt = select(ProcessingJob.status, func.count(ProcessingJob.id)).where(ProcessingJob.owner_id == owner_id)
        if since is not None:
            stmt = stmt.where(ProcessingJob.created_at >= since)
        rows = (await self.db.execute(stmt.group_by(ProcessingJob.status))).all()
        return {status.value: int(count) for status, count in rows}

    async def _list_by_status(self, owner_id: int, status: JobStatus, limit: int) -> Sequence[ProcessingJob]:
        stmt = (
            select(ProcessingJob)
            .where(ProcessingJob.owner_id == owner_id, ProcessingJob.status == status)
            .order_by(ProcessingJob.created_at.desc(), ProcessingJob.id.desc())
            .limit(limit)
        )
        return (await self.db.execute(stmt)).scalars().all()
