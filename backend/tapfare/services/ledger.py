"""
Ledger service - atomic balance changes backed by transaction records.

The Ledger is responsible for:
- Locking the user's balance row for the duration of the caller's transaction
- Guarding debits against insufficient funds
- Appending exactly one COMPLETED transaction per balance change
- Answering daily journey-spend queries for the daily cap

All operations happen within the caller's session. The balance update and
the transaction record are flushed together and commit or roll back with
the caller's unit of work, so neither can exist without the other.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from uuid import uuid4

import structlog
from sqlalchemy.orm import Session

from tapfare import repository
from tapfare.clock import Clock, SystemClock
from tapfare.database import TransactionDB, TransactionStatus, TransactionType
from tapfare.exceptions import UserNotFoundError
from tapfare.services.fare_calculator import ZERO, round_money

logger = structlog.get_logger(__name__)


class LedgerStatus(str, Enum):
    """Outcome of a debit or credit."""

    COMPLETED = "completed"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_AMOUNT = "invalid_amount"
    USER_NOT_FOUND = "user_not_found"


@dataclass(frozen=True)
class LedgerResult:
    """
    Result of a Ledger debit() or credit().

    Carries either the appended transaction and resulting balance, or the
    reason nothing was written.
    """

    status: LedgerStatus
    transaction: Optional[TransactionDB] = None
    balance_after: Optional[Decimal] = None
    message: Optional[str] = None

    @classmethod
    def completed(cls, transaction: TransactionDB, balance_after: Decimal) -> "LedgerResult":
        return cls(status=LedgerStatus.COMPLETED, transaction=transaction, balance_after=balance_after)

    @classmethod
    def insufficient_funds(cls, required: Decimal, available: Decimal) -> "LedgerResult":
        return cls(
            status=LedgerStatus.INSUFFICIENT_FUNDS,
            balance_after=available,
            message=f"Insufficient balance. Required: {required}, Available: {available}",
        )

    @classmethod
    def invalid_amount(cls, amount: Decimal) -> "LedgerResult":
        return cls(status=LedgerStatus.INVALID_AMOUNT, message=f"Invalid amount: {amount}")

    @classmethod
    def user_not_found(cls, user_id: int) -> "LedgerResult":
        return cls(status=LedgerStatus.USER_NOT_FOUND, message=f"User not found: {user_id}")

    @property
    def is_success(self) -> bool:
        return self.status is LedgerStatus.COMPLETED


class LedgerService:
    """Balance mutations and ledger queries bound to one session."""

    def __init__(self, session: Session, clock: Optional[Clock] = None):
        self._session = session
        self._clock = clock or SystemClock()

    def debit(
        self,
        user_id: int,
        amount: Decimal,
        transaction_type: TransactionType = TransactionType.JOURNEY_PAYMENT,
        journey_id: Optional[int] = None,
        card_id: Optional[int] = None,
        description: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> LedgerResult:
        """
        Subtract ``amount`` from the user's balance and record it.

        A zero debit is valid (a journey made free by the daily cap) and is
        still recorded. Negative amounts are rejected. Nothing is written
        unless the result is COMPLETED.
        """
        amount = round_money(amount)
        if amount < ZERO:
            return LedgerResult.invalid_amount(amount)

        user = repository.get_user(self._session, user_id, for_update=True)
        if user is None:
            return LedgerResult.user_not_found(user_id)

        balance = round_money(user.balance)
        if amount > balance:
            logger.info(
                "debit_rejected",
                user_id=user_id,
                amount=str(amount),
                balance=str(balance),
                type=transaction_type.value,
            )
            return LedgerResult.insufficient_funds(amount, balance)

        user.balance = balance - amount
        transaction = self._append(
            user_id, amount, transaction_type, user.balance, journey_id, card_id, description, at
        )
        logger.info(
            "balance_debited",
            user_id=user_id,
            amount=str(amount),
            balance_after=str(user.balance),
            type=transaction_type.value,
            transaction_id=transaction.transaction_id,
        )
        return LedgerResult.completed(transaction, user.balance)

    def credit(
        self,
        user_id: int,
        amount: Decimal,
        transaction_type: TransactionType = TransactionType.TOP_UP,
        description: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> LedgerResult:
        """Add a strictly positive ``amount`` to the user's balance and record it."""
        amount = round_money(amount)
        if amount <= ZERO:
            return LedgerResult.invalid_amount(amount)

        user = repository.get_user(self._session, user_id, for_update=True)
        if user is None:
            return LedgerResult.user_not_found(user_id)

        user.balance = round_money(user.balance) + amount
        transaction = self._append(
            user_id,
            amount,
            transaction_type,
            user.balance,
            description=description or "Balance top-up",
            at=at,
        )
        logger.info(
            "balance_credited",
            user_id=user_id,
            amount=str(amount),
            balance_after=str(user.balance),
            transaction_id=transaction.transaction_id,
        )
        return LedgerResult.completed(transaction, user.balance)

    def daily_spend(self, user_id: int, on_date: date) -> Decimal:
        """Completed journey payments created on the given calendar date."""
        return round_money(repository.sum_journey_payments(self._session, user_id, on_date))

    def balance(self, user_id: int) -> Decimal:
        user = repository.get_user(self._session, user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return round_money(user.balance)

    def history(
        self,
        user_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[TransactionDB]:
        """Transactions for a user, newest first, optionally within [start, end]."""
        if repository.get_user(self._session, user_id) is None:
            raise UserNotFoundError(user_id)
        return repository.list_user_transactions(self._session, user_id, start, end)

    def _append(
        self,
        user_id: int,
        amount: Decimal,
        transaction_type: TransactionType,
        balance_after: Decimal,
        journey_id: Optional[int] = None,
        card_id: Optional[int] = None,
        description: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> TransactionDB:
        transaction = TransactionDB(
            transaction_id=str(uuid4()),
            user_id=user_id,
            journey_id=journey_id,
            card_id=card_id,
            type=transaction_type,
            amount=amount,
            status=TransactionStatus.COMPLETED,
            description=description,
            balance_after=balance_after,
            created_at=at or self._clock.now(),
        )
        self._session.add(transaction)
        self._session.flush()
        return transaction
