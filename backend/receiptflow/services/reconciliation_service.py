"""Turn a validated extraction into an expense, once.

Reconciliation is optional and best-effort. It runs only when the caller
asked for it and the extraction carries a positive total; any failure is
logged and swallowed so the receipt itself is never affected. The unique
``expenses.receipt_id`` column makes it idempotent: a receipt that
already has an expense gets that expense back.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError

from receiptflow.core.errors import ReceiptFlowError
from receiptflow.core.observability import sentry_breadcrumb
from receiptflow.models.schemas import DEFAULT_CATEGORY, ExtractionOutput, ReceiptUploadOptions
from receiptflow.models.tables import Expense
from receiptflow.services.expense_service import ExpenseService

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "Receipt scan"


def expense_category(output: ExtractionOutput, options: ReceiptUploadOptions) -> str:
    return options.category or output.category or DEFAULT_CATEGORY


def expense_description(output: ExtractionOutput, options: ReceiptUploadOptions) -> str:
    return options.description or output.store_name or DEFAULT_DESCRIPTION


def should_reconcile(output: Optional[ExtractionOutput], options: ReceiptUploadOptions) -> bool:
    if not options.create_expense or output is None:
        return False
    return output.total_amount is not None and output.total_amount > Decimal("0")


class BookkeepingReconciler:
    def __init__(self, expenses: ExpenseService) -> None:
        self.expenses = expenses

    async def reconcile(
        self,
        owner_id: int,
        receipt_id: int,
        output: Optional[ExtractionOutput],
        options: ReceiptUploadOptions,
    ) -> Optional[Expense]:
        """Create (or return the existing) expense for ``receipt_id``.

        Returns ``None`` when not eligible or when creation failed.
        """
        if output is None or not should_reconcile(output, options):
            return None

        try:
            existing = await self.expenses.get_for_receipt(receipt_id, owner_id)
            if existing is not None:
                return existing
            expense = await self.expenses.create_expense(
                owner_id,
                output.total_amount,
                category=expense_category(output, options),
                description=expense_description(output, options),
                wallet_id=options.wallet_id,
                receipt_id=receipt_id,
            )
        except IntegrityError:
            # A concurrent run created it first
            logger.info("[reconcile] receipt=%s already reconciled", receipt_id)
            try:
                return await self.expenses.get_for_receipt(receipt_id, owner_id)
            except Exception:
                logger.warning("[reconcile] receipt=%s lookup after conflict failed", receipt_id, exc_info=True)
                return None
        except ReceiptFlowError as exc:
            logger.warning("[reconcile] receipt=%s skipped: %s", receipt_id, exc)
            return None
        except Exception:
            logger.exception("[reconcile] receipt=%s failed", receipt_id)
            return None

        sentry_breadcrumb("reconcile", "expense created", data={"receipt_id": receipt_id, "expense_id": expense.id})
        return expense
