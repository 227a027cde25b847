"""Shared fixtures: an isolated SQLite database per test and a pinned clock."""

from datetime import datetime
from decimal import Decimal

import pytest

from tapfare.clock import FixedClock
from tapfare.config import Settings
from tapfare.database import (
    DEMO_CARD_NUMBER,
    DEMO_USER_EMAIL,
    CardDB,
    CardStatus,
    UserDB,
)
from tapfare.main import build_components

# Tuesday morning; far enough from midnight that day boundaries are explicit
NOW = datetime(2026, 3, 10, 8, 0, 0)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'tapfare_test.db'}",
        REDIS_URL=None,
        STATION_CACHE_TTL=60,
        BASE_FARE=Decimal("2.50"),
        PER_ZONE_CHARGE=Decimal("1.50"),
        DAILY_CAP_AMOUNT=Decimal("10.00"),
        INCOMPLETE_JOURNEY_PENALTY=Decimal("5.00"),
        MAX_JOURNEY_DURATION_HOURS=24,
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def components(settings, clock):
    components = build_components(settings, clock=clock)
    components.db_manager.init_default_data()
    yield components
    components.db_manager.dispose()


@pytest.fixture
def db(components):
    return components.db_manager


@pytest.fixture
def journeys(components):
    return components.journeys


@pytest.fixture
def accounts(components):
    return components.accounts


@pytest.fixture
def demo_card():
    return DEMO_CARD_NUMBER


@pytest.fixture
def demo_user_id(db):
    session = db.get_session()
    try:
        return session.query(UserDB).filter_by(email=DEMO_USER_EMAIL).one().id
    finally:
        session.close()


@pytest.fixture
def make_card(db):
    """Create a user holding one card; returns the card."""
    counter = {"n": 0}

    def _make(balance="20.00", status=CardStatus.ACTIVE, card_number=None):
        counter["n"] += 1
        n = counter["n"]
        return db.create_user_with_card(
            email=f"rider{n}@example.com",
            full_name=f"Rider {n}",
            card_number=card_number or f"5000000000000{n:03d}",
            balance=Decimal(balance),
            card_status=status,
        )

    return _make


@pytest.fixture
def add_card(db):
    """Attach an extra card to an existing user."""

    def _add(user_id, card_number):
        with db.session_scope() as session:
            card = CardDB(card_number=card_number, holder_name="Second Card", user_id=user_id)
            session.add(card)
        return card

    return _add
