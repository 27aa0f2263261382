"""Dramatiq task definitions for queue maintenance.

Receipts are processed inline by the request that uploads them; these
actors only keep the ``receipt_processing_queue`` table healthy:

* ``flag_stuck_receipts`` fails jobs left in ``processing`` by a crashed
  run so they can be corrected by hand.
* ``cleanup_processing_queue`` purges finished jobs (completed after 30
  days, failed after 7 by default).

To run these tasks start a Dramatiq worker pointed at the worker module:

```bash
dramatiq receiptflow.worker --processes 1 --threads 2
```

The broker URL defaults to ``REDIS_URL``; override it with
``DRAMATIQ_BROKER_URL``. Under ``ENVIRONMENT=test`` an in-memory stub
broker is used instead.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Optional

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, ShutdownNotifications, TimeLimit
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receiptflow.core.config import settings
from receiptflow.core.database import build_engine, build_session_factory
from receiptflow.core.observability import sentry_breadcrumb
from receiptflow.services.queue_service import ProcessingQueue
from receiptflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def _build_broker() -> dramatiq.Broker:
    if (settings.ENVIRONMENT or "").lower() == "test":
        return StubBroker()
    broker_url = settings.DRAMATIQ_BROKER_URL or settings.REDIS_URL
    redis_broker = RedisBroker(url=broker_url)

    def _has_mw(mw_cls) -> bool:
        return any(isinstance(m, mw_cls) for m in redis_broker.middleware)

    for mw_cls in (AgeLimit, TimeLimit, ShutdownNotifications):
        if not _has_mw(mw_cls):
            redis_broker.add_middleware(mw_cls())
    return redis_broker


broker = _build_broker()
dramatiq.set_broker(broker)


# --- Job bodies (async, session factory injected) -----------------------------
async def flag_stuck_jobs(
    session_factory: async_sessionmaker[AsyncSession],
    minutes: Optional[int] = None,
) -> int:
    minutes = minutes if minutes is not None else settings.STUCK_JOB_MINUTES
    older_than = dt.timedelta(minutes=minutes)
    now = utcnow()
    async with session_factory() as db:
        async with db.begin():
            queue = ProcessingQueue(db)
            for job in await queue.list_stuck(older_than, now=now):
                logger.warning(
                    "[maintenance] receipt=%s stuck in %s since %s",
                    job.receipt_id,
                    job.status.value,
                    job.processing_started_at or job.created_at,
                )
            count = await queue.mark_stuck_failed(older_than, now=now)
    if count:
        logger.warning("[maintenance] marked %d stuck job(s) as failed (>%d min)", count, minutes)
    return count


async def purge_processing_queue(
    session_factory: async_sessionmaker[AsyncSession],
    completed_days: Optional[int] = None,
    failed_days: Optional[int] = None,
) -> int:
    async with session_factory() as db:
        async with db.begin():
            count = await ProcessingQueue(db).purge_finished(
                completed_days=completed_days or settings.COMPLETED_JOB_RETENTION_DAYS,
                failed_days=failed_days or settings.FAILED_JOB_RETENTION_DAYS,
            )
    logger.info("[maintenance] purged %d finished job(s)", count)
    return count


async def _run_with_fresh_engine(job, *args):
    # Actors run on worker threads without a loop; each run gets its own engine
    engine = build_engine()
    try:
        return await job(build_session_factory(engine), *args)
    finally:
        await engine.dispose()


# --- Actors -------------------------------------------------------------------
@dramatiq.actor(max_retries=0)
def flag_stuck_receipts(minutes: Optional[int] = None):
    sentry_breadcrumb("maintenance", "flag_stuck_receipts", data={"minutes": minutes})
    return asyncio.run(_run_with_fresh_engine(flag_stuck_jobs, minutes))


@dramatiq.actor(max_retries=0)
def cleanup_processing_queue(completed_days: Optional[int] = None, failed_days: Optional[int] = None):
    sentry_breadcrumb("maintenance", "cleanup_processing_queue")
    return asyncio.run(_run_with_fresh_engine(purge_processing_queue, completed_days, failed_days))
