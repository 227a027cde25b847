"""Balance top-ups and ledger read queries for account holders."""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

import structlog

from tapfare.clock import Clock, SystemClock
from tapfare.database import DatabaseManager
from tapfare.exceptions import InvalidAmountError, UserNotFoundError
from tapfare.locking import KeyedLocks, user_key
from tapfare.models import BalanceResponse, DailySpendingResponse, TransactionView
from tapfare.services.fare_calculator import ZERO, FareCalculatorInterface, round_money
from tapfare.services.ledger import LedgerService, LedgerStatus

logger = structlog.get_logger(__name__)


class AccountService:
    """Wraps the ledger in its own units of work for account-level operations."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        fare_calculator: FareCalculatorInterface,
        locks: Optional[KeyedLocks] = None,
        clock: Optional[Clock] = None,
    ):
        self.db_manager = db_manager
        self.fare_calculator = fare_calculator
        self.locks = locks or KeyedLocks()
        self.clock = clock or SystemClock()

    def top_up(self, user_id: int, amount: Decimal) -> BalanceResponse:
        """
        Credit a user's balance.

        Raises:
            InvalidAmountError: amount is not positive
            UserNotFoundError: unknown user
        """
        with self.locks.hold(user_key(user_id)):
            with self.db_manager.session_scope() as session:
                result = LedgerService(session, self.clock).credit(user_id, amount)
                if result.status is LedgerStatus.INVALID_AMOUNT:
                    raise InvalidAmountError(amount)
                if result.status is LedgerStatus.USER_NOT_FOUND:
                    raise UserNotFoundError(user_id)

        return BalanceResponse(
            user_id=user_id,
            balance=result.balance_after,
            transaction_id=result.transaction.transaction_id,
            message="Top-up successful",
        )

    def balance(self, user_id: int) -> BalanceResponse:
        session = self.db_manager.get_session()
        try:
            return BalanceResponse(
                user_id=user_id, balance=LedgerService(session, self.clock).balance(user_id)
            )
        finally:
            session.close()

    def transactions(
        self,
        user_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[TransactionView]:
        session = self.db_manager.get_session()
        try:
            records = LedgerService(session, self.clock).history(user_id, start, end)
            return [
                TransactionView(
                    transaction_id=record.transaction_id,
                    type=record.type.value,
                    amount=record.amount,
                    status=record.status.value,
                    journey_id=record.journey_id,
                    card_id=record.card_id,
                    description=record.description,
                    balance_after=record.balance_after,
                    created_at=record.created_at,
                )
                for record in records
            ]
        finally:
            session.close()

    def daily_spending(self, user_id: int, on_date: Optional[date] = None) -> DailySpendingResponse:
        """Journey spend for a calendar day measured against the daily cap."""
        on_date = on_date or self.clock.now().date()
        session = self.db_manager.get_session()
        try:
            ledger = LedgerService(session, self.clock)
            ledger.balance(user_id)  # raises UserNotFoundError
            spent = ledger.daily_spend(user_id, on_date)
        finally:
            session.close()

        cap = self.fare_calculator.daily_cap_amount()
        return DailySpendingResponse(
            user_id=user_id,
            on_date=on_date,
            daily_spend=spent,
            daily_cap=cap,
            remaining=max(round_money(cap - spent), ZERO),
            daily_cap_reached=spent >= cap,
        )
