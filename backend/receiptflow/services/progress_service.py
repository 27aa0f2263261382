"""Lifetime progress counters (``user_progress``).

Only the counter is maintained here; achievement rules live elsewhere.
Updates follow the same atomic update-then-insert pattern as the usage
counters and are dispatched after the receipt transaction commits.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receiptflow.models.enums import ProgressMetric
from receiptflow.models.tables import UserProgress
from receiptflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class ProgressTracker:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def adjust(
        self,
        owner_id: int,
        delta: int,
        metric: ProgressMetric = ProgressMetric.RECEIPTS_SCANNED,
    ) -> None:
        """Add ``delta`` to the current value (never below zero).

        ``all_time_value`` only ever grows: decrements leave it untouched.
        """
        for attempt in range(2):
            async with self.session_factory() as db:
                current = UserProgress.current_value + delta
                result = await db.execute(
                    update(UserProgress)
                    .where(UserProgress.owner_id == owner_id, UserProgress.metric_name == metric.value)
                    .values(
                        current_value=case((current < 0, 0), else_=current),
                        all_time_value=UserProgress.all_time_value + max(delta, 0),
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    db.add(
                        UserProgress(
                            owner_id=owner_id,
                            metric_name=metric.value,
                            current_value=max(delta, 0),
                            all_time_value=max(delta, 0),
                        )
                    )
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    if attempt:
                        raise
                    continue
                logger.debug("[progress] owner=%s %s %+d", owner_id, metric.value, delta)
                return

    async def get(self, owner_id: int, metric: ProgressMetric = ProgressMetric.RECEIPTS_SCANNED) -> Optional[UserProgress]:
        async with self.session_factory() as db:
            return await db.scalar(
                select(UserProgress).where(UserProgress.owner_id == owner_id, UserProgress.metric_name == metric.value)
            )
