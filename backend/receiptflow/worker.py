"""Dramatiq worker configuration.

This module configures the broker (via ``receiptflow.core.tasks``) and
imports all actors so they are registered when the worker starts.

Run with:
    dramatiq receiptflow.worker
"""

import logging
import threading
import time

from receiptflow.core.config import settings
from receiptflow.core.observability import configure_logging, init_sentry
from receiptflow.core.tasks import broker, cleanup_processing_queue, flag_stuck_receipts  # noqa: F401

configure_logging()
logger = logging.getLogger(__name__)

if init_sentry("worker"):
    logger.info("Sentry SDK initialized for worker")

logger.info("Maintenance actors registered: flag_stuck_receipts, cleanup_processing_queue")


def _maybe_start_maintenance_cron():  # pragma: no cover - simple orchestrator
    """Optional lightweight cron loop (avoids an external scheduler).

    Enabled via ``MAINTENANCE_CRON_ENABLED=true``; the interval comes from
    ``MAINTENANCE_CRON_INTERVAL_SECONDS``.
    """
    if not settings.MAINTENANCE_CRON_ENABLED:
        return
    interval = settings.MAINTENANCE_CRON_INTERVAL_SECONDS

    def loop():
        while True:
            try:
                flag_stuck_receipts.send()
                cleanup_processing_queue.send()
            except Exception:
                logger.warning("[cron] failed to enqueue maintenance actors", exc_info=True)
            time.sleep(interval)

    threading.Thread(target=loop, name="maintenance-cron", daemon=True).start()
    logger.info("Maintenance cron loop started (interval=%ss)", interval)


_maybe_start_maintenance_cron()
