"""Plan limits and monthly feature usage.

``UsageGate.check`` runs before an upload is accepted and only reads.
``record_usage`` is the reporting half and runs after the receipt
transaction has committed; it increments the counter with a single
``UPDATE ... SET usage_count = usage_count + 1`` and inserts the row on
first use of the month, retrying once if a concurrent caller inserted it
first.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receiptflow.core.config import settings
from receiptflow.core.errors import QuotaExceeded
from receiptflow.models.enums import Feature, PlanType
from receiptflow.models.schemas import UsageSummary
from receiptflow.models.tables import FeatureUsage, User
from receiptflow.utils.helpers import month_key, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanLimits:
    plan: PlanType
    monthly_receipt_scans: float  # per calendar month (inf => unlimited)


PLAN_LIMIT_MATRIX: Dict[PlanType, PlanLimits] = {
    PlanType.FREE: PlanLimits(plan=PlanType.FREE, monthly_receipt_scans=settings.FREE_MONTHLY_RECEIPT_SCANS),
    PlanType.PREMIUM: PlanLimits(plan=PlanType.PREMIUM, monthly_receipt_scans=float("inf")),
}


class UsageGate:
    """Quota checks and usage counters backed by ``feature_usage``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        limits: Optional[Dict[PlanType, PlanLimits]] = None,
    ) -> None:
        self.session_factory = session_factory
        self.limits = limits or PLAN_LIMIT_MATRIX

    def get_limits(self, plan: PlanType | None) -> PlanLimits:
        return self.limits.get(plan or PlanType.FREE, self.limits[PlanType.FREE])

    async def get_plan(self, db: AsyncSession, owner_id: int) -> PlanType:
        plan = await db.scalar(select(User.plan).where(User.id == owner_id))
        return plan or PlanType.FREE

    async def get_monthly_usage(
        self,
        db: AsyncSession,
        owner_id: int,
        feature: Feature = Feature.RECEIPT_SCAN,
        when: Optional[dt.datetime] = None,
    ) -> int:
        count = await db.scalar(
            select(FeatureUsage.usage_count).where(
                FeatureUsage.owner_id == owner_id,
                FeatureUsage.feature_name == feature.value,
                FeatureUsage.month_year == month_key(when),
            )
        )
        return int(count or 0)

    # --- Gate -----------------------------------------------------------
    async def check(self, owner_id: int, feature: Feature = Feature.RECEIPT_SCAN) -> None:
        """Raise ``QuotaExceeded`` when the owner is at or over the monthly ceiling."""
        async with self.session_factory() as db:
            plan = await self.get_plan(db, owner_id)
            limit = self.get_limits(plan).monthly_receipt_scans
            if limit == float("inf"):
                return
            used = await self.get_monthly_usage(db, owner_id, feature)
        if used >= limit:
            logger.info("[usage] owner=%s over quota (%s/%s, plan=%s)", owner_id, used, int(limit), plan.value)
            raise QuotaExceeded(
                f"Monthly limit of {int(limit)} receipt scans reached for the {plan.value} plan",
                used=used,
                limit=int(limit),
            )

    # --- Reporting ------------------------------------------------------
    async def record_usage(self, owner_id: int, feature: Feature = Feature.RECEIPT_SCAN) -> int:
        """Atomically add one use for the current month; returns the new count."""
        month = month_key()
        for attempt in range(2):
            async with self.session_factory() as db:
                result = await db.execute(
                    update(FeatureUsage)
                    .where(
                        FeatureUsage.owner_id == owner_id,
                        FeatureUsage.feature_name == feature.value,
                        FeatureUsage.month_year == month,
                    )
                    .values(usage_count=FeatureUsage.usage_count + 1, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    db.add(FeatureUsage(owner_id=owner_id, feature_name=feature.value, month_year=month, usage_count=1))
                try:
                    await db.commit()
                except IntegrityError:
                    # Lost the first-use insert race; the row exists now
                    await db.rollback()
                    if attempt:
                        raise
                    continue
                return await self.get_monthly_usage(db, owner_id, feature)
        return 0  # pragma: no cover - loop always returns or raises

    async def monthly_usage(self, owner_id: int, feature: Feature = Feature.RECEIPT_SCAN) -> int:
        async with self.session_factory() as db:
            return await self.get_monthly_usage(db, owner_id, feature)

    async def summary(self, owner_id: int, feature: Feature = Feature.RECEIPT_SCAN) -> UsageSummary:
        async with self.session_factory() as db:
            plan = await self.get_plan(db, owner_id)
            used = await self.get_monthly_usage(db, owner_id, feature)
        limit = self.get_limits(plan).monthly_receipt_scans
        if limit == float("inf"):
            return UsageSummary(feature=feature.value, month_year=month_key(), used=used)
        return UsageSummary(
            feature=feature.value,
            month_year=month_key(),
            used=used,
            limit=int(limit),
            remaining=max(int(limit) - used, 0),
        )

    async def remaining(self, owner_id: int, feature: Feature = Feature.RECEIPT_SCAN) -> Optional[int]:
        """Uses left this month, ``None`` when unlimited."""
        return (await self.summary(owner_id, feature)).remaining


__all__ = ["UsageGate", "PlanLimits", "PLAN_LIMIT_MATRIX"]
