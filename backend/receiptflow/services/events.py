"""Receipt status events over Redis pub/sub.

Each status change is published on two channels so a UI can follow
either all of a user's receipts or a single one::

    receipts:user:<owner_id>
    receipts:receipt:<receipt_id>

Publishing is best-effort and disabled unless ``RECEIPT_EVENTS_ENABLED``
is set.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from redis import asyncio as aioredis

from receiptflow.core.config import settings

logger = logging.getLogger(__name__)


def user_channel(owner_id: int) -> str:
    return f"receipts:user:{owner_id}"


def receipt_channel(receipt_id: int) -> str:
    return f"receipts:receipt:{receipt_id}"


class ReceiptEventPublisher:
    def __init__(self, redis_url: Optional[str] = None, enabled: Optional[bool] = None) -> None:
        self.redis_url = redis_url or settings.REDIS_URL
        self.enabled = settings.RECEIPT_EVENTS_ENABLED if enabled is None else enabled
        self._client: Optional[aioredis.Redis] = None

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(self.redis_url, decode_responses=True)
        return self._client

    async def publish(self, owner_id: int, receipt_id: int, event_type: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """Publish an event; returns False when disabled or Redis is unreachable."""
        if not self.enabled:
            return False
        payload = json.dumps(
            {"type": event_type, "user_id": owner_id, "receipt_id": receipt_id, **(data or {})},
            default=str,
        )
        try:
            client = self._get_client()
            await client.publish(user_channel(owner_id), payload)
            await client.publish(receipt_channel(receipt_id), payload)
        except Exception as exc:
            logger.debug("[events] publish failed receipt=%s type=%s: %s", receipt_id, event_type, exc)
            return False
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
