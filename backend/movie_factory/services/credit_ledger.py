"""
Credit ledger adapter.

Balances live in ``users.balance_credits`` and are mutated from outside this
service too (purchase flows), so every change is a single conditional UPDATE
evaluated by the database. Each mutation appends a CreditTransaction.

The caller owns the transaction: nothing here commits.
"""
from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from movie_factory.models import CreditTransaction, User

logger = logging.getLogger(__name__)


class InsufficientCredits(Exception):
    """Raised when a debit would take a balance below zero."""

    def __init__(self, user_id: int, required: int, available: int):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(f"User {user_id} has {available} credits, {required} required")


class CreditLedger:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def balance(self, user_id: int) -> int:
        value = await self.session.scalar(select(User.balance_credits).where(User.id == user_id))
        if value is None:
            raise LookupError(f"User {user_id} not found")
        return value

    async def debit(
        self,
        user_id: int,
        amount: int,
        *,
        reason: str,
        reference: str | None = None,
    ) -> int:
        """Atomically subtract ``amount``. Returns the new balance.

        Raises:
            InsufficientCredits: balance is below ``amount`` (nothing changed)
            LookupError: unknown user
            ValueError: non-positive amount
        """
        if amount <= 0:
            raise ValueError(f"Debit amount must be positive, got {amount}")

        result = await self.session.execute(
            update(User)
            .where(User.id == user_id, User.balance_credits >= amount)
            .values(balance_credits=User.balance_credits - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            available = await self.balance(user_id)
            raise InsufficientCredits(user_id, amount, available)

        new_balance = await self.balance(user_id)
        self.session.add(CreditTransaction(
            user_id=user_id,
            type="generation",
            amount=-amount,
            balance_after=new_balance,
            reference=reference,
            reason=reason,
        ))
        logger.info(f"[ledger] Debited {amount} from user {user_id} ({reference or reason}), balance={new_balance}")
        return new_balance

    async def credit(
        self,
        user_id: int,
        amount: int,
        *,
        reason: str,
        reference: str | None = None,
        kind: str = "refund",
    ) -> int:
        """Atomically add ``amount``. Returns the new balance."""
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")

        values = {"balance_credits": User.balance_credits + amount}
        if kind == "purchase":
            values["lifetime_purchased_credits"] = User.lifetime_purchased_credits + amount

        result = await self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise LookupError(f"User {user_id} not found")

        new_balance = await self.balance(user_id)
        self.session.add(CreditTransaction(
            user_id=user_id,
            type=kind,
            amount=amount,
            balance_after=new_balance,
            reference=reference,
            reason=reason,
        ))
        logger.info(f"[ledger] Credited {amount} to user {user_id} ({kind}: {reason}), balance={new_balance}")
        return new_balance
