"""Database models and setup for the TapFare system."""

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Iterator, Optional
import os

import structlog
from sqlalchemy import (
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    create_engine,
    text,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = structlog.get_logger(__name__)

Base = declarative_base()

Money = Numeric(10, 2, asdecimal=True)


class CardStatus(str, Enum):
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"
    EXPIRED = "EXPIRED"


class StationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    MAINTENANCE = "MAINTENANCE"
    CLOSED = "CLOSED"


class JourneyStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"  # tapped in, not tapped out
    COMPLETED = "COMPLETED"
    INCOMPLETE = "INCOMPLETE"  # never tapped out, penalty charged
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not JourneyStatus.IN_PROGRESS


class TransactionType(str, Enum):
    JOURNEY_PAYMENT = "JOURNEY_PAYMENT"
    TOP_UP = "TOP_UP"
    PENALTY = "PENALTY"
    REFUND = "REFUND"
    DAILY_CAP_ADJUSTMENT = "DAILY_CAP_ADJUSTMENT"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class UserDB(Base):
    """Account holder owning a prepaid balance."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False)
    full_name = Column(String, nullable=False)
    balance = Column(Money, nullable=False, default=Decimal("0.00"))
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, balance={self.balance})>"


class CardDB(Base):
    """Database model for a transit card."""
    __tablename__ = "cards"

    id = Column(Integer, primary_key=True, index=True)
    card_number = Column(String, unique=True, nullable=False, index=True)
    holder_name = Column(String, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(SAEnum(CardStatus), nullable=False, default=CardStatus.ACTIVE)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    def __repr__(self):
        return f"<Card(card_number={self.card_number}, status={self.status})>"


class StationDB(Base):
    """Database model for a station and the zone it belongs to."""
    __tablename__ = "stations"

    id = Column(Integer, primary_key=True, index=True)
    station_code = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    zone_number = Column(Integer, nullable=False)
    status = Column(SAEnum(StationStatus), nullable=False, default=StationStatus.ACTIVE)

    def __repr__(self):
        return f"<Station(code={self.station_code}, zone={self.zone_number}, status={self.status})>"


class JourneyDB(Base):
    """Database model for a journey bounded by a tap-in and a tap-out."""
    __tablename__ = "journeys"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    card_id = Column(Integer, ForeignKey("cards.id"), nullable=False)
    entry_station_id = Column(Integer, ForeignKey("stations.id"), nullable=False)
    exit_station_id = Column(Integer, ForeignKey("stations.id"), nullable=True)
    tap_in_time = Column(DateTime, nullable=False)
    tap_out_time = Column(DateTime, nullable=True)
    status = Column(SAEnum(JourneyStatus), nullable=False, default=JourneyStatus.IN_PROGRESS)
    fare_amount = Column(Money, nullable=True)
    discount_amount = Column(Money, nullable=True)
    final_amount = Column(Money, nullable=True)
    zones_transited = Column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_journeys_card_status", "card_id", "status"),
        Index("ix_journeys_status_tap_in", "status", "tap_in_time"),
        # at most one open journey per card, enforced across processes
        Index(
            "uq_journeys_card_in_progress",
            "card_id",
            unique=True,
            sqlite_where=text("status = 'IN_PROGRESS'"),
            postgresql_where=text("status = 'IN_PROGRESS'"),
        ),
    )

    @property
    def duration_minutes(self) -> Optional[int]:
        if self.tap_out_time is None:
            return None
        return int((self.tap_out_time - self.tap_in_time).total_seconds() // 60)

    def __repr__(self):
        return f"<Journey(id={self.id}, card_id={self.card_id}, status={self.status})>"


class TransactionDB(Base):
    """Append-only ledger entry backing every balance change."""
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(String, unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    journey_id = Column(Integer, ForeignKey("journeys.id"), nullable=True)
    card_id = Column(Integer, ForeignKey("cards.id"), nullable=True)
    type = Column(SAEnum(TransactionType), nullable=False)
    amount = Column(Money, nullable=False)
    status = Column(SAEnum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING)
    description = Column(String(500), nullable=True)
    balance_after = Column(Money, nullable=True)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_transactions_user_type_created", "user_id", "type", "created_at"),
    )

    def __repr__(self):
        return f"<Transaction(id={self.transaction_id}, type={self.type}, amount={self.amount})>"


# Zone 1-3 network the demo data is seeded with
DEFAULT_STATIONS = [
    ("ST001", "Central Station", 1),
    ("ST002", "City Hall", 1),
    ("ST003", "Downtown", 1),
    ("ST004", "Uptown", 2),
    ("ST005", "Midtown", 2),
    ("ST006", "West End", 2),
    ("ST007", "Suburban North", 3),
    ("ST008", "Suburban South", 3),
    ("ST009", "Airport", 3),
]

DEMO_USER_EMAIL = "demo@example.com"
DEMO_CARD_NUMBER = "4000000000001234"


class DatabaseManager:
    """Manager class for database connections and sessions."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or os.getenv(
            "DATABASE_URL",
            "sqlite:///./tapfare.db"
        )

        # Create engine with appropriate settings for SQLite
        connect_args = {"check_same_thread": False} if "sqlite" in self.database_url else {}
        self.engine = create_engine(self.database_url, connect_args=connect_args)

        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

        # Create tables if they don't exist
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Transactional scope: commit on success, roll back on any exception."""
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_default_data(self):
        """Seed the default station network and a demo account."""
        with self.session_scope() as session:
            if session.query(StationDB).count() == 0:
                for code, name, zone in DEFAULT_STATIONS:
                    session.add(StationDB(station_code=code, name=name, zone_number=zone))
                logger.info("stations_initialized", count=len(DEFAULT_STATIONS))

            if session.query(UserDB).filter_by(email=DEMO_USER_EMAIL).first() is None:
                user = UserDB(
                    email=DEMO_USER_EMAIL,
                    full_name="Demo User",
                    balance=Decimal("50.00"),
                )
                session.add(user)
                session.flush()
                session.add(
                    CardDB(card_number=DEMO_CARD_NUMBER, holder_name="Demo User", user_id=user.id)
                )
                logger.info("demo_user_created", email=DEMO_USER_EMAIL, card_number=DEMO_CARD_NUMBER)

    def add_station(self, station_code: str, name: str, zone_number: int) -> StationDB:
        """Register a new station in the given zone."""
        if zone_number < 1:
            raise ValueError(f"Zone number must be positive, got {zone_number}")
        with self.session_scope() as session:
            station = StationDB(station_code=station_code, name=name, zone_number=zone_number)
            session.add(station)
        return station

    def set_station_status(self, station_code: str, status: StationStatus) -> Optional[StationDB]:
        """Change a station's operational status; returns None if unknown."""
        with self.session_scope() as session:
            station = session.query(StationDB).filter_by(station_code=station_code).first()
            if station is not None:
                station.status = status
        return station

    def get_all_stations(self) -> list:
        """Retrieve all stations ordered by zone then code."""
        session = self.get_session()
        try:
            return (
                session.query(StationDB)
                .order_by(StationDB.zone_number, StationDB.station_code)
                .all()
            )
        finally:
            session.close()

    def create_user_with_card(
        self,
        email: str,
        full_name: str,
        card_number: str,
        balance: Decimal = Decimal("0.00"),
        card_status: CardStatus = CardStatus.ACTIVE,
    ) -> CardDB:
        """Create an account and its card in one transaction."""
        with self.session_scope() as session:
            user = UserDB(email=email, full_name=full_name, balance=balance)
            session.add(user)
            session.flush()
            card = CardDB(
                card_number=card_number,
                holder_name=full_name,
                user_id=user.id,
                status=card_status,
            )
            session.add(card)
        return card

    def dispose(self):
        self.engine.dispose()
