"""Receipt extraction through an external vision model.

The engine sends the stored image URL plus a fixed instruction to an
OpenAI-compatible chat completions endpoint (Groq by default), bounds the
call with ``asyncio.wait_for`` and turns the free-form reply into a
validated ``ExtractionOutput``:

1. Call the vision client under ``EXTRACTION_TIMEOUT_SECONDS``. A late
   reply is cancelled and discarded.
2. Pull the first JSON object out of the reply (``extract_json_object``).
3. Validate field by field; malformed fields are dropped, not fatal.

When the call fails (exception, timeout, missing configuration or a reply
with no JSON) the engine either raises ``ExtractionFailed`` /
``ExtractionTimeout`` or, outside production and with
``EXTRACTION_FALLBACK_ENABLED``, returns one of a few canned outputs so
development environments work without an API key.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import zlib
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Protocol

from receiptflow.core.config import Settings, settings
from receiptflow.core.errors import ExtractionFailed, ExtractionTimeout
from receiptflow.models.enums import ProcessingMethod
from receiptflow.models.schemas import ExtractionOutput, FieldIssue, LineItem
from receiptflow.services.field_validation import is_low_confidence, validate_extraction
from receiptflow.utils.json_tools import extract_json_object
from receiptflow.utils.prompts import get_receipt_extraction_prompt

logger = logging.getLogger(__name__)


class VisionClient(Protocol):
    """Anything that can turn an image URL plus instruction into text."""

    async def complete(self, image_url: str, instruction: str) -> str:  # pragma: no cover - protocol
        ...


class OpenAIVisionClient:
    """Vision client backed by the ``openai`` SDK's async chat completions."""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> None:
        from openai import AsyncOpenAI

        # Retries are disabled: the pipeline makes exactly one attempt per run
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)
        self.model = model or settings.VISION_MODEL
        self.max_tokens = max_tokens or settings.VISION_MAX_TOKENS

    async def complete(self, image_url: str, instruction: str) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": instruction},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                }
            ],
            max_tokens=self.max_tokens,
            temperature=0.1,
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ExtractionFailed("No content received from vision service")
        return content


def build_vision_client(config: Settings = settings) -> Optional[VisionClient]:
    """Return the configured vision client, or ``None`` without an API key."""
    if not config.VISION_API_KEY:
        logger.info("[extraction] VISION_API_KEY not set; vision client disabled")
        return None
    return OpenAIVisionClient(
        api_key=config.VISION_API_KEY,
        base_url=config.VISION_API_BASE_URL,
        model=config.VISION_MODEL,
        max_tokens=config.VISION_MAX_TOKENS,
    )


# ---------------------------------------------------------------------------
# Canned development outputs


def _canned_outputs(today: dt.date) -> List[ExtractionOutput]:
    return [
        ExtractionOutput(
            store_name="99 Speedmart",
            total_amount=Decimal("15.30"),
            date=today,
            items=[
                LineItem(name="Maggi Curry", price=Decimal("1.20"), quantity=2),
                LineItem(name="100Plus", price=Decimal("2.50")),
                LineItem(name="Bread", price=Decimal("3.80")),
                LineItem(name="Milk", price=Decimal("6.50")),
            ],
            payment_method="Cash",
            gst_amount=Decimal("0.92"),
            category="Food & Beverages",
        ),
        ExtractionOutput(
            store_name="Shell Station",
            total_amount=Decimal("45.00"),
            date=today,
            items=[LineItem(name="Petrol RON95", price=Decimal("45.00"), quantity=1)],
            payment_method="Card",
            category="Transport",
        ),
        ExtractionOutput(
            store_name="Giant Supermarket",
            total_amount=Decimal("67.85"),
            date=today,
            items=[
                LineItem(name="Rice 5kg", price=Decimal("18.90")),
                LineItem(name="Chicken 1kg", price=Decimal("12.50")),
                LineItem(name="Vegetables", price=Decimal("8.90")),
                LineItem(name="Cooking Oil", price=Decimal("15.50")),
                LineItem(name="Onions", price=Decimal("4.20")),
                LineItem(name="Salt", price=Decimal("2.10")),
            ],
            payment_method="Cash",
            gst_amount=Decimal("4.07"),
            category="Inventory",
        ),
    ]


def fallback_output(image_url: str, today: Optional[dt.date] = None) -> ExtractionOutput:
    """Pick a canned output deterministically from the image URL."""
    options = _canned_outputs(today or dt.date.today())
    return options[zlib.crc32(image_url.encode("utf-8")) % len(options)]


# ---------------------------------------------------------------------------
# Engine


@dataclass
class ExtractionResult:
    output: ExtractionOutput
    method: ProcessingMethod
    issues: List[FieldIssue] = field(default_factory=list)
    # Underlying failure when the fallback stood in for the vision service
    error: Optional[str] = None

    @property
    def needs_review(self) -> bool:
        return is_low_confidence(self.output)


class ExtractionEngine:
    """Time-bounded, single-attempt extraction with an optional dev fallback."""

    def __init__(
        self,
        client: Optional[VisionClient],
        *,
        timeout: Optional[float] = None,
        allow_fallback: Optional[bool] = None,
        instruction: Optional[str] = None,
    ) -> None:
        self.client = client
        self.timeout = float(timeout if timeout is not None else settings.EXTRACTION_TIMEOUT_SECONDS)
        self.allow_fallback = settings.extraction_fallback_allowed if allow_fallback is None else allow_fallback
        self.instruction = instruction or get_receipt_extraction_prompt()

    async def extract(self, image_url: str) -> ExtractionResult:
        """Extract structured data for the image at ``image_url``.

        :raises ExtractionTimeout: the call exceeded the timeout (fallback off)
        :raises ExtractionFailed: any other failure (fallback off)
        """
        try:
            output, issues = await self._call(image_url)
        except ExtractionFailed as exc:
            if not self.allow_fallback:
                raise
            logger.warning("[extraction] %s; using canned fallback output", exc.message)
            return ExtractionResult(
                output=fallback_output(image_url),
                method=ProcessingMethod.FALLBACK,
                error=exc.message,
            )
        return ExtractionResult(output=output, method=ProcessingMethod.VISION_AI, issues=issues)

    async def _call(self, image_url: str):
        if self.client is None:
            raise ExtractionFailed("Vision service is not configured")

        try:
            reply = await asyncio.wait_for(
                self.client.complete(image_url, self.instruction),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise ExtractionTimeout(
                f"Vision service did not respond within {self.timeout:g}s",
                timeout=self.timeout,
            ) from None
        except ExtractionFailed:
            raise
        except Exception as exc:
            logger.warning("[extraction] vision call failed: %s", exc, exc_info=True)
            raise ExtractionFailed(f"Vision service error: {exc}") from exc

        raw = extract_json_object(reply)
        if raw is None:
            raise ExtractionFailed("Vision service reply contained no JSON object")
        return validate_extraction(raw)


__all__ = [
    "VisionClient",
    "OpenAIVisionClient",
    "build_vision_client",
    "fallback_output",
    "ExtractionResult",
    "ExtractionEngine",
    "is_low_confidence",
]
