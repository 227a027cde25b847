"""Explicit lookup queries used by the journey engine.

Every function takes the caller's session so lookups share its transaction.
Relationships are resolved by id here rather than through lazy-loaded
associations.
"""

from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tapfare.database import (
    CardDB,
    JourneyDB,
    JourneyStatus,
    StationDB,
    TransactionDB,
    TransactionStatus,
    TransactionType,
    UserDB,
)


def find_card_by_number(
    session: Session, card_number: str, for_update: bool = False
) -> Optional[CardDB]:
    stmt = select(CardDB).where(CardDB.card_number == card_number)
    if for_update:
        stmt = stmt.with_for_update()
    return session.execute(stmt).scalar_one_or_none()


def find_station_by_code(session: Session, station_code: str) -> Optional[StationDB]:
    return session.execute(
        select(StationDB).where(StationDB.station_code == station_code)
    ).scalar_one_or_none()


def get_station(session: Session, station_id: int) -> Optional[StationDB]:
    return session.get(StationDB, station_id)


def get_user(session: Session, user_id: int, for_update: bool = False) -> Optional[UserDB]:
    stmt = select(UserDB).where(UserDB.id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    return session.execute(stmt).scalar_one_or_none()


def find_active_journey(
    session: Session, card_id: int, for_update: bool = False
) -> Optional[JourneyDB]:
    """The card's IN_PROGRESS journey, if any."""
    stmt = (
        select(JourneyDB)
        .where(JourneyDB.card_id == card_id, JourneyDB.status == JourneyStatus.IN_PROGRESS)
        .order_by(JourneyDB.tap_in_time.desc())
        .limit(1)
    )
    if for_update:
        stmt = stmt.with_for_update()
    return session.execute(stmt).scalars().first()


def get_journey(session: Session, journey_id: int, for_update: bool = False) -> Optional[JourneyDB]:
    stmt = select(JourneyDB).where(JourneyDB.id == journey_id)
    if for_update:
        stmt = stmt.with_for_update()
    return session.execute(stmt).scalar_one_or_none()


def find_stale_journeys(session: Session, cutoff: datetime) -> List[Tuple[int, str, int]]:
    """``(journey id, card number, user id)`` of IN_PROGRESS journeys tapped in
    before ``cutoff``, oldest first. The card number and user id are what the
    sweep needs to take the same locks as tap-out."""
    rows = session.execute(
        select(JourneyDB.id, CardDB.card_number, JourneyDB.user_id)
        .join(CardDB, CardDB.id == JourneyDB.card_id)
        .where(
            JourneyDB.status == JourneyStatus.IN_PROGRESS,
            JourneyDB.tap_in_time < cutoff,
        )
        .order_by(JourneyDB.tap_in_time, JourneyDB.id)
    ).all()
    return [(row[0], row[1], row[2]) for row in rows]


def list_user_journeys(session: Session, user_id: int) -> List[JourneyDB]:
    return list(
        session.execute(
            select(JourneyDB)
            .where(JourneyDB.user_id == user_id)
            .order_by(JourneyDB.tap_in_time.desc(), JourneyDB.id.desc())
        ).scalars()
    )


def day_bounds(on_date: date):
    """Half-open ``[start, end)`` datetime range covering one calendar day."""
    start = datetime.combine(on_date, time.min)
    return start, start + timedelta(days=1)


def sum_journey_payments(session: Session, user_id: int, on_date: date) -> Decimal:
    """Total of COMPLETED journey payments created on ``on_date``."""
    start, end = day_bounds(on_date)
    total = session.execute(
        select(func.coalesce(func.sum(TransactionDB.amount), 0)).where(
            TransactionDB.user_id == user_id,
            TransactionDB.type == TransactionType.JOURNEY_PAYMENT,
            TransactionDB.status == TransactionStatus.COMPLETED,
            TransactionDB.created_at >= start,
            TransactionDB.created_at < end,
        )
    ).scalar_one()
    return Decimal(str(total))


def list_user_transactions(
    session: Session,
    user_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[TransactionDB]:
    stmt = select(TransactionDB).where(TransactionDB.user_id == user_id)
    if start is not None:
        stmt = stmt.where(TransactionDB.created_at >= start)
    if end is not None:
        stmt = stmt.where(TransactionDB.created_at <= end)
    return list(
        session.execute(
            stmt.order_by(TransactionDB.created_at.desc(), TransactionDB.id.desc())
        ).scalars()
    )
