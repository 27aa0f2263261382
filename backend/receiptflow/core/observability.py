"""Observability helpers (logging, Sentry init & common scrubbing).

Centralises Sentry initialisation for API and worker so configuration
does not drift. Initialisation is a no-op when no DSN is configured,
and every helper here is best-effort: observability must never break
the receipt pipeline.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from receiptflow.core.config import settings

logger = logging.getLogger(__name__)


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _before_send(event: Dict[str, Any], hint: Dict[str, Any] | None = None):
    """Scrub obvious PII / secrets before sending to Sentry.

    - Drop Authorization & Cookie headers
    - Remove request data/body (receipt uploads are raw image bytes)
    """
    req = event.get("request") or {}
    headers = req.get("headers") or {}
    for k in list(headers.keys()):
        if k.lower() in ("authorization", "cookie", "set-cookie", "x-api-key"):
            headers.pop(k, None)
    req.pop("data", None)
    event["request"] = req
    return event


def init_sentry(service: str) -> bool:
    """Initialise Sentry once for a given process.

    Returns True if Sentry was initialised; False otherwise.
    """
    if not settings.SENTRY_DSN:
        return False
    if getattr(init_sentry, "_done", False):  # prevent duplicate init in same process
        return True
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        integrations=[FastApiIntegration(), SqlalchemyIntegration()],
        traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
        environment=settings.ENVIRONMENT,
        release=settings.SENTRY_RELEASE,
        before_send=_before_send,
    )
    sentry_sdk.set_tag("service", service)
    init_sentry._done = True  # type: ignore[attr-defined]
    return True


def sentry_set_tags(tags: Dict[str, Any]) -> None:
    """Best-effort: set tags on the current Sentry scope (strings only)."""
    if not settings.SENTRY_DSN:
        return
    try:
        for k, v in (tags or {}).items():
            sentry_sdk.set_tag(str(k), str(v)[:128] if v is not None else "")
    except Exception:
        logger.debug("sentry_set_tags failed", exc_info=True)


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
    """Best-effort: add a breadcrumb for important lifecycle steps."""
    if not settings.SENTRY_DSN:
        return
    try:
        sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=data or {})
    except Exception:
        logger.debug("sentry_breadcrumb failed", exc_info=True)


def capture_exception(exc: BaseException) -> None:
    if not settings.SENTRY_DSN:
        return
    try:
        sentry_sdk.capture_exception(exc)
    except Exception:
        logger.debug("sentry capture failed", exc_info=True)


__all__ = [
    "configure_logging",
    "init_sentry",
    "sentry_set_tags",
    "sentry_breadcrumb",
    "capture_exception",
]
