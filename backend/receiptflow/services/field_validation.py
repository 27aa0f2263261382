"""Field-level validation of extraction output.

The vision service returns loosely typed JSON. Each field is validated on
its own: a malformed field is dropped and reported as a ``FieldIssue``
while the rest of the record survives. The same rules apply to human
corrections, where an invalid field is ignored instead of dropped.

Money rules: ``Decimal``, finite, non-negative, at most 999,999.99 and at
most two decimal places. Currency prefixes (``RM``) and thousands
separators are tolerated in string input.
"""

from __future__ import annotations

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from receiptflow.core.errors import ValidationError
from receiptflow.models.schemas import (
    DEFAULT_CATEGORY,
    RECEIPT_CATEGORIES,
    ExtractionOutput,
    FieldIssue,
    LineItem,
)
from receiptflow.utils.helpers import parse_calendar_date
from receiptflow.utils.sanitization import clean_text

logger = logging.getLogger(__name__)

MAX_AMOUNT = Decimal("999999.99")
CENT = Decimal("0.01")

_CURRENCY_RE = re.compile(r"^(?:RM|MYR)\s*|\s*(?:RM|MYR)$", re.IGNORECASE)


def parse_money(value: Any, field: str = "amount") -> Decimal:
    """Return ``value`` as a non-negative two-place ``Decimal``.

    :raises ValidationError: for anything that is not a valid amount
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(field, "amount is missing or not a number", value)
    if isinstance(value, str):
        text = _CURRENCY_RE.sub("", value.strip()).replace(",", "").strip()
        if not text:
            raise ValidationError(field, "amount is empty", value)
    elif isinstance(value, (int, float, Decimal)):
        text = str(value)
    else:
        raise ValidationError(field, "amount is not a number", value)

    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise ValidationError(field, f"not a valid amount: {value!r}", value) from None

    if not amount.is_finite():
        raise ValidationError(field, "amount must be finite", value)
    if amount < 0:
        raise ValidationError(field, "amount must not be negative", value)
    if amount > MAX_AMOUNT:
        raise ValidationError(field, f"amount exceeds {MAX_AMOUNT}", value)
    if amount != amount.quantize(CENT):
        raise ValidationError(field, "amount has more than two decimal places", value)
    return amount.quantize(CENT)


def parse_quantity(value: Any, field: str = "quantity") -> int:
    if isinstance(value, bool):
        raise ValidationError(field, "quantity must be a positive integer", value)
    if isinstance(value, str):
        value = value.strip()
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(field, "quantity must be a positive integer", value) from None
    if not number.is_finite() or number != number.to_integral_value() or number < 1:
        raise ValidationError(field, "quantity must be a positive integer", value)
    return int(number)


def _text(field: str) -> Callable[[Any], str]:
    def validate(value: Any) -> str:
        cleaned = clean_text(value)
        if cleaned is None:
            raise ValidationError(field, "must be a non-empty string", value)
        return cleaned

    return validate


def _money(field: str) -> Callable[[Any], Decimal]:
    return lambda value: parse_money(value, field)


def _date(value: Any):
    parsed = parse_calendar_date(value) if isinstance(value, str) else None
    if parsed is None:
        raise ValidationError("date", "date must be YYYY-MM-DD", value)
    return parsed


def _category(value: Any) -> str:
    if isinstance(value, str) and value.strip() in RECEIPT_CATEGORIES:
        return value.strip()
    raise ValidationError("category", f"unknown category {value!r}", value)


def _line_item(value: Any, index: int, issues: Optional[List[FieldIssue]] = None) -> LineItem:
    field = f"items[{index}]"
    if not isinstance(value, Mapping):
        raise ValidationError(field, "item must be an object", value)
    name = clean_text(value.get("name"))
    if name is None:
        raise ValidationError(f"{field}.name", "item name must be non-empty", value.get("name"))
    price = parse_money(value.get("price"), f"{field}.price")
    quantity = None
    if value.get("quantity") is not None:
        try:
            quantity = parse_quantity(value.get("quantity"), f"{field}.quantity")
        except ValidationError as exc:
            # Only the quantity is dropped, the item itself is still usable
            if issues is not None:
                issues.append(FieldIssue(field=exc.field, message=exc.message))
    return LineItem(name=name, price=price, quantity=quantity)


def _items(value: Any, issues: Optional[List[FieldIssue]] = None) -> List[LineItem]:
    if not isinstance(value, list):
        raise ValidationError("items", "items must be a list", value)
    items: List[LineItem] = []
    for index, raw in enumerate(value):
        try:
            items.append(_line_item(raw, index, issues))
        except ValidationError as exc:
            if issues is not None:
                issues.append(FieldIssue(field=exc.field, message=exc.message))
    if value and not items:
        raise ValidationError("items", "no valid items", value)
    return items


_SCALAR_VALIDATORS: Dict[str, Callable[[Any], Any]] = {
    "store_name": _text("store_name"),
    "total_amount": _money("total_amount"),
    "date": _date,
    "payment_method": _text("payment_method"),
    "gst_amount": _money("gst_amount"),
}

EXTRACTION_FIELDS: Tuple[str, ...] = tuple(ExtractionOutput.model_fields)


def validate_extraction(raw: Mapping[str, Any]) -> Tuple[ExtractionOutput, List[FieldIssue]]:
    """Build an ``ExtractionOutput`` from raw model output.

    Never raises for bad field values: each failing field is absent from
    the result and listed in the returned issues.
    """
    issues: List[FieldIssue] = []
    values: Dict[str, Any] = {}

    for field, validator in _SCALAR_VALIDATORS.items():
        if raw.get(field) is None:
            continue
        try:
            values[field] = validator(raw[field])
        except ValidationError as exc:
            issues.append(FieldIssue(field=exc.field, message=exc.message))

    if raw.get("items") is not None:
        try:
            items = _items(raw["items"], issues)
        except ValidationError as exc:
            issues.append(FieldIssue(field=exc.field, message=exc.message))
        else:
            if items:
                values["items"] = items

    category = raw.get("category")
    if category is not None:
        try:
            values["category"] = _category(category)
        except ValidationError as exc:
            issues.append(FieldIssue(field=exc.field, message=exc.message))

    if issues:
        logger.info("Dropped %d invalid extraction field(s): %s", len(issues), [i.field for i in issues])
    return ExtractionOutput(**values), issues


def validate_corrections(corrections: Mapping[str, Any]) -> Tuple[Dict[str, Any], List[FieldIssue]]:
    """Validate a partial correction payload field by field.

    Returns the accepted updates (``None`` means "clear this field";
    clearing ``category`` resets it to the default) and the issues for
    fields that were rejected and will be left untouched.
    """
    accepted: Dict[str, Any] = {}
    issues: List[FieldIssue] = []

    for field, value in corrections.items():
        if field not in EXTRACTION_FIELDS:
            issues.append(FieldIssue(field=field, message="unknown field"))
            continue
        if value is None:
            accepted[field] = DEFAULT_CATEGORY if field == "category" else None
            continue
        try:
            if field == "items":
                item_issues: List[FieldIssue] = []
                items = _items(value, item_issues)
                if item_issues:
                    # A correction is all-or-nothing per field
                    issues.extend(item_issues)
                    continue
                accepted[field] = items or None
            elif field == "category":
                accepted[field] = _category(value)
            else:
                accepted[field] = _SCALAR_VALIDATORS[field](value)
        except ValidationError as exc:
            issues.append(FieldIssue(field=exc.field, message=exc.message))

    return accepted, issues


def is_low_confidence(output: Optional[ExtractionOutput]) -> bool:
    """Sparse output that should be routed to manual review."""
    if output is None:
        return True
    return output.total_amount is None and output.store_name is None


# Heuristic per-field confidence recorded with every extraction run
FIELD_CONFIDENCE: Dict[str, float] = {
    "store_name": 0.9,
    "total_amount": 0.95,
    "date": 0.85,
    "items": 0.8,
}


def field_confidence(output: Optional[ExtractionOutput]) -> Dict[str, float]:
    """Confidence score per key field; ``0.0`` where the field is absent."""
    if output is None:
        return {}
    return {name: score if getattr(output, name) else 0.0 for name, score in FIELD_CONFIDENCE.items()}
