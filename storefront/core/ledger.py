"""
Stored balance ledger.

Debits are a single conditional UPDATE so that two concurrent purchases can
never both spend the same funds:

    UPDATE user_balances SET balance = balance - :amount
    WHERE user_id = :user_id AND balance >= :amount

Zero affected rows means the balance was insufficient.
"""
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.exceptions import InsufficientBalance, ValidationError
from storefront.core.pricing import quantize_money
from storefront.database.connection import get_session_factory
from storefront.database.models import BalanceTransaction, UserBalance, utcnow
from storefront.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PURCHASE = "purchase"
DEPOSIT = "deposit"
BONUS = "bonus"
REFUND = "refund"


class BalanceLedger:
    """Debit and credit stored balances with an append-only transaction log."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def get_balance(self, user_id: str) -> Decimal:
        async with self.session_factory() as db:
            result = await db.execute(
                select(UserBalance.balance).where(UserBalance.user_id == user_id)
            )
            balance = result.scalar_one_or_none()
        return quantize_money(balance) if balance is not None else Decimal("0.00")

    async def debit(
        self,
        user_id: str,
        amount: Decimal,
        reason: str,
        reference: Optional[str] = None,
        transaction_type: str = PURCHASE,
        db: Optional[AsyncSession] = None,
    ) -> Decimal:
        """
        Atomically debit a user's balance.

        When db is given the debit joins the caller's transaction (deposit
        reversals commit together with the payment intent transition);
        otherwise it commits on its own.

        Args:
            user_id: Balance owner
            amount: Positive amount to take
            reason: Human readable description
            reference: Checkout, order number or payment intent the debit belongs to
            transaction_type: Ledger entry type (purchase, refund)
            db: Optional session of the caller

        Returns:
            Decimal: New balance

        Raises:
            InsufficientBalance: If the balance does not cover amount
        """
        amount = quantize_money(amount)
        if amount <= 0:
            raise ValidationError("Debit amount must be positive")

        if db is not None:
            new_balance = await self._apply_debit(
                db, user_id, amount, transaction_type, reason, reference
            )
        else:
            async with self.session_factory() as own_db:
                try:
                    new_balance = await self._apply_debit(
                        own_db, user_id, amount, transaction_type, reason, reference
                    )
                except InsufficientBalance:
                    await own_db.rollback()
                    raise
                await own_db.commit()

        metrics.record_balance_operation(transaction_type, "success")
        logger.info(
            "balance_debited",
            user_id=user_id,
            amount=str(amount),
            type=transaction_type,
            balance_after=str(new_balance),
            reference=reference,
        )
        return new_balance

    async def _apply_debit(
        self,
        db: AsyncSession,
        user_id: str,
        amount: Decimal,
        transaction_type: str,
        reason: str,
        reference: Optional[str],
    ) -> Decimal:
        result = await db.execute(
            update(UserBalance)
            .where(UserBalance.user_id == user_id, UserBalance.balance >= amount)
            .values(balance=UserBalance.balance - amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            available = await self._current_balance(db, user_id)
            metrics.record_balance_operation(transaction_type, "insufficient")
            logger.info(
                "balance_debit_rejected",
                user_id=user_id,
                amount=str(amount),
                available=str(available),
                reference=reference,
            )
            raise InsufficientBalance(user_id, required=amount, available=available)

        new_balance = await self._current_balance(db, user_id)
        db.add(
            BalanceTransaction(
                user_id=user_id,
                type=transaction_type,
                amount=-amount,
                balance_before=new_balance + amount,
                balance_after=new_balance,
                reference=reference,
                description=reason,
            )
        )
        return new_balance

    async def credit(
        self,
        user_id: str,
        amount: Decimal,
        transaction_type: str,
        reason: str,
        reference: Optional[str] = None,
        db: Optional[AsyncSession] = None,
    ) -> Decimal:
        """
        Credit a user's balance.

        When db is given the credit joins the caller's transaction (deposit
        credits commit together with the payment intent transition);
        otherwise it commits on its own.

        Returns:
            Decimal: New balance
        """
        amount = quantize_money(amount)
        if amount <= 0:
            raise ValidationError("Credit amount must be positive")

        if db is not None:
            new_balance = await self._apply_credit(
                db, user_id, amount, transaction_type, reason, reference
            )
        else:
            async with self.session_factory() as own_db:
                new_balance = await self._apply_credit(
                    own_db, user_id, amount, transaction_type, reason, reference
                )
                await own_db.commit()

        metrics.record_balance_operation(transaction_type, "success")
        logger.info(
            "balance_credited",
            user_id=user_id,
            amount=str(amount),
            type=transaction_type,
            balance_after=str(new_balance),
            reference=reference,
        )
        return new_balance

    async def _apply_credit(
        self,
        db: AsyncSession,
        user_id: str,
        amount: Decimal,
        transaction_type: str,
        reason: str,
        reference: Optional[str],
    ) -> Decimal:
        result = await db.execute(
            update(UserBalance)
            .where(UserBalance.user_id == user_id)
            .values(balance=UserBalance.balance + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.add(UserBalance(user_id=user_id, balance=amount, updated_at=utcnow()))
            await db.flush()

        new_balance = await self._current_balance(db, user_id)
        db.add(
            BalanceTransaction(
                user_id=user_id,
                type=transaction_type,
                amount=amount,
                balance_before=new_balance - amount,
                balance_after=new_balance,
                reference=reference,
                description=reason,
            )
        )
        return new_balance

    @staticmethod
    async def _current_balance(db: AsyncSession, user_id: str) -> Decimal:
        result = await db.execute(
            select(UserBalance.balance).where(UserBalance.user_id == user_id)
        )
        balance = result.scalar_one_or_none()
        return quantize_money(balance) if balance is not None else Decimal("0.00")
