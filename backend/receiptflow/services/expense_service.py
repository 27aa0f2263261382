"""Expense creation with wallet debit.

The wallet balance is the one resource shared across concurrent
requests. It is only ever changed by a single conditional statement::

    UPDATE wallets SET balance = balance - :amount
     WHERE id = :wallet AND owner_id = :owner AND balance >= :amount

which either debits the full amount or matches nothing. The expense row
is inserted in the same transaction, so a failed insert also undoes the
debit.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receiptflow.core.errors import InsufficientBalance, ValidationError, WalletNotFound
from receiptflow.models.schemas import EXPENSE_CATEGORIES
from receiptflow.models.tables import Expense, Wallet
from receiptflow.services.field_validation import parse_money

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 500


def validate_expense_amount(amount: Any) -> Decimal:
    value = parse_money(amount, "amount")
    if value <= 0:
        raise ValidationError("amount", "amount must be a positive number", amount)
    return value


def validate_expense_category(category: Any) -> str:
    if not isinstance(category, str) or category not in EXPENSE_CATEGORIES:
        raise ValidationError("category", f"invalid category {category!r}", category)
    return category


class ExpenseService:
    """Creates expenses and debits wallets atomically."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def resolve_wallet(self, db: AsyncSession, owner_id: int, wallet_id: Optional[int]) -> Wallet:
        """The given wallet if owned by ``owner_id``, else the primary one."""
        stmt = select(Wallet).where(Wallet.owner_id == owner_id)
        if wallet_id is not None:
            stmt = stmt.where(Wallet.id == wallet_id)
        else:
            stmt = stmt.where(Wallet.is_primary.is_(True)).order_by(Wallet.id).limit(1)
        wallet = await db.scalar(stmt)
        if wallet is None:
            if wallet_id is not None:
                raise WalletNotFound(f"Wallet {wallet_id} not found", wallet_id=wallet_id)
            raise WalletNotFound("No wallet found. Please create a wallet first.")
        return wallet

    async def debit(self, db: AsyncSession, owner_id: int, wallet: Wallet, amount: Decimal) -> None:
        result = await db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id, Wallet.owner_id == owner_id, Wallet.balance >= amount)
            .values(balance=Wallet.balance - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            available = await db.scalar(select(Wallet.balance).where(Wallet.id == wallet.id))
            raise InsufficientBalance(
                f"Insufficient balance. Available: RM{Decimal(available or 0):.2f}, Required: RM{amount:.2f}",
                wallet_id=wallet.id,
            )

    async def create_expense(
        self,
        owner_id: int,
        amount: Any,
        *,
        category: str = "Other",
        description: Optional[str] = None,
        wallet_id: Optional[int] = None,
        receipt_id: Optional[int] = None,
    ) -> Expense:
        """Validate, debit the wallet and insert the expense in one transaction.

        :raises ValidationError: bad amount, category or description
        :raises WalletNotFound: no usable wallet for the owner
        :raises InsufficientBalance: the wallet cannot cover ``amount``
        """
        value = validate_expense_amount(amount)
        category = validate_expense_category(category)
        if description and len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError("description", f"description cannot exceed {MAX_DESCRIPTION_LENGTH} characters")

        async with self.session_factory() as db:
            async with db.begin():
                wallet = await self.resolve_wallet(db, owner_id, wallet_id)
                await self.debit(db, owner_id, wallet, value)
                expense = Expense(
                    owner_id=owner_id,
                    amount=value,
                    category=category,
                    description=description,
                    wallet_id=wallet.id,
                    receipt_id=receipt_id,
                )
                db.add(expense)
            # Reload so amount/created_at come back with their column types
            await db.refresh(expense)
        logger.info(
            "[expense] owner=%s wallet=%s receipt=%s amount=%s category=%s",
            owner_id,
            wallet.id,
            receipt_id,
            value,
            category,
        )
        return expense

    async def get_for_receipt(self, receipt_id: int, owner_id: Optional[int] = None) -> Optional[Expense]:
        async with self.session_factory() as db:
            stmt = select(Expense).where(Expense.receipt_id == receipt_id)
            if owner_id is not None:
                stmt = stmt.where(Expense.owner_id == owner_id)
            return await db.scalar(stmt)
