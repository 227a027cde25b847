"""Tests for the journey lifecycle: tap-in, tap-out, capping and the sweep."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from tapfare import repository
from tapfare.database import (
    CardStatus,
    JourneyDB,
    JourneyStatus,
    StationStatus,
    TransactionDB,
    TransactionType,
    UserDB,
)
from tapfare.exceptions import (
    ActiveJourneyExistsError,
    CardNotActiveError,
    CardNotFoundError,
    InsufficientBalanceError,
    InvalidTapTimeError,
    JourneyNotFoundError,
    NoActiveJourneyError,
    StationNotFoundError,
    StationNotOperationalError,
    TapFareError,
    UserNotFoundError,
)
from tapfare.locking import KeyedLocks
from tapfare.services.journey_service import JourneyService
from tapfare.services.ledger import LedgerService

from conftest import NOW


def journeys_of(db, user_id):
    session = db.get_session()
    try:
        return session.query(JourneyDB).filter_by(user_id=user_id).order_by(JourneyDB.id).all()
    finally:
        session.close()


def transactions_of(db, user_id):
    session = db.get_session()
    try:
        return session.query(TransactionDB).filter_by(user_id=user_id).order_by(TransactionDB.id).all()
    finally:
        session.close()


def balance_of(db, user_id):
    session = db.get_session()
    try:
        return session.get(UserDB, user_id).balance
    finally:
        session.close()


class TestTapIn:

    def test_creates_in_progress_journey(self, journeys, db, make_card):
        card = make_card(balance="20.00")

        response = journeys.tap_in(card.card_number, "ST001")

        assert response.success is True
        assert response.status == "IN_PROGRESS"
        assert response.station_name == "Central Station"
        assert response.timestamp == NOW
        assert response.current_balance == Decimal("20.00")

        [journey] = journeys_of(db, card.user_id)
        assert journey.id == response.journey_id
        assert journey.status is JourneyStatus.IN_PROGRESS
        assert journey.tap_out_time is None
        assert journey.final_amount is None

    def test_second_tap_in_rejected_and_nothing_persisted(self, journeys, db, make_card):
        card = make_card()
        first = journeys.tap_in(card.card_number, "ST001")

        with pytest.raises(ActiveJourneyExistsError) as exc_info:
            journeys.tap_in(card.card_number, "ST004")

        assert exc_info.value.journey_id == first.journey_id
        assert "Central Station" in exc_info.value.message
        assert len(journeys_of(db, card.user_id)) == 1

    def test_small_positive_balance_is_enough(self, journeys, make_card):
        card = make_card(balance="0.01")
        assert journeys.tap_in(card.card_number, "ST001").status == "IN_PROGRESS"

    def test_zero_balance_rejected(self, journeys, db, make_card):
        card = make_card(balance="0.00")
        with pytest.raises(InsufficientBalanceError):
            journeys.tap_in(card.card_number, "ST001")
        assert journeys_of(db, card.user_id) == []

    @pytest.mark.parametrize("status", [CardStatus.BLOCKED, CardStatus.EXPIRED])
    def test_inactive_card_rejected(self, journeys, make_card, status):
        card = make_card(status=status)
        with pytest.raises(CardNotActiveError):
            journeys.tap_in(card.card_number, "ST001")

    def test_station_under_maintenance_rejected(self, components, journeys, make_card):
        card = make_card()
        components.stations.set_status("ST002", StationStatus.MAINTENANCE)

        with pytest.raises(StationNotOperationalError) as exc_info:
            journeys.tap_in(card.card_number, "ST002")
        assert exc_info.value.code == "STATION_NOT_OPERATIONAL"

    def test_unknown_card_and_station(self, journeys, make_card):
        with pytest.raises(CardNotFoundError):
            journeys.tap_in("0000000000000000", "ST001")

        card = make_card()
        with pytest.raises(StationNotFoundError):
            journeys.tap_in(card.card_number, "NOPE")

    def test_aware_tap_time_is_stored_as_local_time(self, journeys, make_card):
        card = make_card()
        aware = NOW.astimezone()
        response = journeys.tap_in(card.card_number, "ST001", tap_time=aware)
        assert response.timestamp == NOW


class TestTapOut:

    def test_zone_one_to_zone_two(self, journeys, db, clock, make_card):
        card = make_card(balance="20.00")
        started = journeys.tap_in(card.card_number, "ST001")
        clock.advance(minutes=25)

        response = journeys.tap_out(card.card_number, "ST004")

        assert response.journey_id == started.journey_id
        assert response.status == "COMPLETED"
        assert response.zones_transited == 2
        assert response.base_fare == Decimal("5.50")
        assert response.fare_amount == Decimal("5.50")
        assert response.discount_amount == Decimal("0.00")
        assert response.duration_minutes == 25
        assert response.current_balance == Decimal("14.50")
        assert response.daily_spend == Decimal("5.50")
        assert response.daily_cap_reached is False

        [journey] = journeys_of(db, card.user_id)
        assert journey.status is JourneyStatus.COMPLETED
        assert journey.tap_out_time == NOW + timedelta(minutes=25)
        assert journey.final_amount == Decimal("5.50")

        [payment] = transactions_of(db, card.user_id)
        assert payment.type is TransactionType.JOURNEY_PAYMENT
        assert payment.journey_id == journey.id
        assert payment.amount == Decimal("5.50")
        assert payment.description == "Journey from Central Station to Uptown"

    def test_daily_cap_across_journeys(self, journeys, db, clock, make_card):
        card = make_card(balance="50.00")
        charged = []
        for entry, exit_ in [("ST001", "ST004"), ("ST004", "ST007"), ("ST007", "ST001")]:
            journeys.tap_in(card.card_number, entry)
            clock.advance(minutes=20)
            charged.append(journeys.tap_out(card.card_number, exit_))
            clock.advance(minutes=30)

        assert [r.fare_amount for r in charged] == [
            Decimal("5.50"), Decimal("4.50"), Decimal("0.00")
        ]
        assert [r.discount_amount for r in charged] == [
            Decimal("0.00"), Decimal("1.00"), Decimal("7.00")
        ]
        assert charged[-1].daily_spend == Decimal("10.00")
        assert charged[1].daily_cap_reached is True
        assert balance_of(db, card.user_id) == Decimal("40.00")
        # the free journey is still recorded
        assert len(transactions_of(db, card.user_id)) == 3

    def test_prior_spend_limits_charge(self, journeys, db, make_card):
        card = make_card(balance="50.00")
        with db.session_scope() as session:
            LedgerService(session).debit(card.user_id, Decimal("8.00"), at=NOW - timedelta(hours=2))

        journeys.tap_in(card.card_number, "ST001")
        response = journeys.tap_out(card.card_number, "ST004")

        assert response.fare_amount == Decimal("2.00")
        assert response.discount_amount == Decimal("3.50")
        assert response.daily_cap_reached is True

    def test_insufficient_balance_leaves_journey_open(self, journeys, accounts, db, make_card):
        card = make_card(balance="3.00")
        journeys.tap_in(card.card_number, "ST001")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            journeys.tap_out(card.card_number, "ST004")

        assert exc_info.value.required == Decimal("5.50")
        assert exc_info.value.available == Decimal("3.00")
        [journey] = journeys_of(db, card.user_id)
        assert journey.status is JourneyStatus.IN_PROGRESS
        assert transactions_of(db, card.user_id) == []
        assert balance_of(db, card.user_id) == Decimal("3.00")

        accounts.top_up(card.user_id, Decimal("10.00"))
        response = journeys.tap_out(card.card_number, "ST004")
        assert response.current_balance == Decimal("7.50")

    def test_no_active_journey(self, journeys, make_card):
        card = make_card()
        with pytest.raises(NoActiveJourneyError):
            journeys.tap_out(card.card_number, "ST001")

    def test_unknown_exit_station_keeps_journey_open(self, journeys, db, make_card):
        card = make_card()
        journeys.tap_in(card.card_number, "ST001")
        with pytest.raises(StationNotFoundError):
            journeys.tap_out(card.card_number, "ST999")
        assert journeys_of(db, card.user_id)[0].status is JourneyStatus.IN_PROGRESS

    def test_tap_out_before_tap_in_rejected(self, journeys, make_card):
        card = make_card()
        journeys.tap_in(card.card_number, "ST001")
        with pytest.raises(InvalidTapTimeError):
            journeys.tap_out(card.card_number, "ST004", tap_time=NOW - timedelta(minutes=5))

    def test_exit_at_station_under_maintenance_allowed(self, components, journeys, make_card):
        card = make_card()
        journeys.tap_in(card.card_number, "ST001")
        components.stations.set_status("ST002", StationStatus.MAINTENANCE)

        response = journeys.tap_out(card.card_number, "ST002")
        assert response.fare_amount == Decimal("4.00")

    def test_midnight_journey_billed_to_completion_day(self, journeys, make_card):
        card = make_card(balance="50.00")
        morning = datetime(2026, 3, 9, 10, 0)
        journeys.tap_in(card.card_number, "ST001", tap_time=morning)
        journeys.tap_out(card.card_number, "ST007", tap_time=morning + timedelta(minutes=40))

        journeys.tap_in(card.card_number, "ST001", tap_time=datetime(2026, 3, 9, 23, 30))
        response = journeys.tap_out(
            card.card_number, "ST004", tap_time=datetime(2026, 3, 10, 0, 20)
        )

        # 7.00 spent on the 9th does not count against the 10th
        assert response.fare_amount == Decimal("5.50")
        assert response.daily_spend == Decimal("5.50")
        assert response.duration_minutes == 50


class TestConcurrency:

    def test_concurrent_tap_ins_create_one_journey(self, journeys, db, make_card):
        card = make_card(balance="20.00")

        def attempt(_):
            try:
                return journeys.tap_in(card.card_number, "ST001")
            except ActiveJourneyExistsError as e:
                return e

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, range(8)))

        successes = [o for o in outcomes if not isinstance(o, TapFareError)]
        assert len(successes) == 1
        assert len(journeys_of(db, card.user_id)) == 1

    def test_concurrent_tap_outs_share_one_daily_cap(self, journeys, db, make_card, add_card):
        first = make_card(balance="50.00")
        second = add_card(first.user_id, "6000000000000001")
        journeys.tap_in(first.card_number, "ST001")
        journeys.tap_in(second.card_number, "ST001")

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(
                lambda number: journeys.tap_out(number, "ST007"),
                [first.card_number, second.card_number],
            ))

        charged = sorted(r.fare_amount for r in results)
        assert charged == [Decimal("3.00"), Decimal("7.00")]
        assert sum(charged) == Decimal("10.00")
        assert balance_of(db, first.user_id) == Decimal("40.00")

    def test_second_worker_cannot_open_another_journey(self, components, db, clock, make_card, monkeypatch):
        card = make_card(balance="20.00")
        worker_a, worker_b = (
            JourneyService(
                db,
                components.fare_calculator,
                components.stations,
                24,
                locks=KeyedLocks(),
                clock=clock,
            )
            for _ in range(2)
        )
        started = worker_a.tap_in(card.card_number, "ST001")

        # worker B checked for an open journey before worker A committed
        original = repository.find_active_journey

        def lookup_before_commit(session, card_id, for_update=False):
            if for_update:
                return None
            return original(session, card_id, for_update)

        monkeypatch.setattr(repository, "find_active_journey", lookup_before_commit)

        with pytest.raises(ActiveJourneyExistsError) as exc_info:
            worker_b.tap_in(card.card_number, "ST004")

        assert exc_info.value.journey_id == started.journey_id
        assert [j.status for j in journeys_of(db, card.user_id)] == [JourneyStatus.IN_PROGRESS]

    def test_open_journeys_unique_per_card_in_database(self, db, make_card):
        card = make_card()

        def open_journey(session, status=JourneyStatus.IN_PROGRESS):
            session.add(JourneyDB(
                user_id=card.user_id,
                card_id=card.id,
                entry_station_id=1,
                tap_in_time=NOW,
                status=status,
            ))

        with db.session_scope() as session:
            open_journey(session)
            open_journey(session, JourneyStatus.COMPLETED)
            open_journey(session, JourneyStatus.INCOMPLETE)

        with pytest.raises(IntegrityError):
            with db.session_scope() as session:
                open_journey(session)

    def test_lock_registry_empty_after_taps(self, journeys, clock, make_card):
        cards = [make_card(balance="20.00") for _ in range(50)]
        for card in cards:
            journeys.tap_in(card.card_number, "ST001")
            clock.advance(minutes=1)
            journeys.tap_out(card.card_number, "ST002")

        assert len(journeys.locks) == 0


class TestSweep:

    def test_stale_journey_charged_penalty(self, journeys, db, make_card):
        card = make_card(balance="20.00")
        journeys.tap_in(card.card_number, "ST001", tap_time=NOW - timedelta(hours=30))

        report = journeys.sweep_incomplete_journeys()

        assert report.processed == 1
        assert report.skipped == []
        assert report.failed == []
        [journey] = journeys_of(db, card.user_id)
        assert journey.status is JourneyStatus.INCOMPLETE
        assert journey.tap_out_time == NOW
        assert journey.final_amount == Decimal("5.00")
        [penalty] = transactions_of(db, card.user_id)
        assert penalty.type is TransactionType.PENALTY
        assert penalty.amount == Decimal("5.00")
        assert balance_of(db, card.user_id) == Decimal("15.00")

    def test_recent_journey_left_alone(self, journeys, db, make_card):
        card = make_card()
        journeys.tap_in(card.card_number, "ST001", tap_time=NOW - timedelta(hours=10))

        report = journeys.sweep_incomplete_journeys()

        assert report.processed == 0
        assert journeys_of(db, card.user_id)[0].status is JourneyStatus.IN_PROGRESS

    def test_penalty_not_counted_toward_daily_cap(self, journeys, accounts, make_card):
        card = make_card(balance="20.00")
        journeys.tap_in(card.card_number, "ST001", tap_time=NOW - timedelta(hours=30))
        journeys.sweep_incomplete_journeys()

        assert accounts.daily_spending(card.user_id).daily_spend == Decimal("0.00")

    def test_unpaid_penalty_skipped(self, journeys, db, make_card):
        card = make_card(balance="0.01")
        journeys.tap_in(card.card_number, "ST001", tap_time=NOW - timedelta(hours=30))

        report = journeys.sweep_incomplete_journeys()

        assert report.processed == 0
        assert report.skipped == [journeys_of(db, card.user_id)[0].id]
        assert journeys_of(db, card.user_id)[0].status is JourneyStatus.IN_PROGRESS
        assert transactions_of(db, card.user_id) == []

    def test_one_failure_does_not_stop_the_sweep(self, journeys, db, make_card, monkeypatch):
        broken = make_card(balance="20.00")
        healthy = make_card(balance="20.00")
        journeys.tap_in(broken.card_number, "ST001", tap_time=NOW - timedelta(hours=40))
        journeys.tap_in(healthy.card_number, "ST001", tap_time=NOW - timedelta(hours=30))

        original_debit = LedgerService.debit

        def flaky_debit(self, user_id, *args, **kwargs):
            if user_id == broken.user_id:
                raise RuntimeError("ledger unavailable")
            return original_debit(self, user_id, *args, **kwargs)

        monkeypatch.setattr(LedgerService, "debit", flaky_debit)

        report = journeys.sweep_incomplete_journeys()

        assert report.processed == 1
        assert report.failed == [journeys_of(db, broken.user_id)[0].id]
        assert journeys_of(db, broken.user_id)[0].status is JourneyStatus.IN_PROGRESS
        assert journeys_of(db, healthy.user_id)[0].status is JourneyStatus.INCOMPLETE

    def test_journey_closed_after_listing_is_ignored(self, journeys, db, make_card, monkeypatch):
        card = make_card(balance="20.00")
        journeys.tap_in(card.card_number, "ST001", tap_time=NOW - timedelta(hours=30))

        original = repository.find_stale_journeys

        def list_then_tap_out(session, cutoff):
            candidates = original(session, cutoff)
            journeys.tap_out(card.card_number, "ST004")
            return candidates

        monkeypatch.setattr(repository, "find_stale_journeys", list_then_tap_out)

        report = journeys.sweep_incomplete_journeys()

        assert report.processed == 0
        assert report.skipped == []
        assert journeys_of(db, card.user_id)[0].status is JourneyStatus.COMPLETED
        assert [t.type for t in transactions_of(db, card.user_id)] == [
            TransactionType.JOURNEY_PAYMENT
        ]


class TestQueries:

    def test_active_journey(self, journeys, make_card):
        card = make_card()
        assert journeys.active_journey(card.card_number) is None

        started = journeys.tap_in(card.card_number, "ST003")
        view = journeys.active_journey(card.card_number)
        assert view.id == started.journey_id
        assert view.entry_station_code == "ST003"
        assert view.exit_station_code is None

    def test_history_newest_first(self, journeys, clock, make_card):
        card = make_card(balance="50.00")
        journeys.tap_in(card.card_number, "ST001")
        clock.advance(minutes=10)
        journeys.tap_out(card.card_number, "ST004")
        clock.advance(minutes=10)
        journeys.tap_in(card.card_number, "ST004")

        history = journeys.journey_history(card.user_id)

        assert [j.status for j in history] == ["IN_PROGRESS", "COMPLETED"]
        assert history[1].exit_station_name == "Uptown"
        assert history[1].duration_minutes == 10

    def test_journey_by_id(self, journeys, make_card):
        card = make_card()
        started = journeys.tap_in(card.card_number, "ST001")

        view = journeys.journey(started.journey_id)
        assert view.status == "IN_PROGRESS"
        assert view.entry_station_name == "Central Station"

        with pytest.raises(JourneyNotFoundError):
            journeys.journey(started.journey_id + 1000)

    def test_history_unknown_user(self, journeys):
        with pytest.raises(UserNotFoundError):
            journeys.journey_history(424242)


class TestLedgerConsistency:

    def test_balance_reconciles_with_transactions(self, journeys, accounts, db, clock, make_card):
        card = make_card(balance="12.00")
        for entry, exit_ in [("ST001", "ST004"), ("ST004", "ST009")]:
            journeys.tap_in(card.card_number, entry)
            clock.advance(minutes=15)
            journeys.tap_out(card.card_number, exit_)
        accounts.top_up(card.user_id, Decimal("20.00"))
        journeys.tap_in(card.card_number, "ST002", tap_time=NOW - timedelta(hours=26))
        journeys.sweep_incomplete_journeys(now=clock.now())

        credits = debits = Decimal("0.00")
        for record in transactions_of(db, card.user_id):
            if record.type is TransactionType.TOP_UP:
                credits += record.amount
            else:
                debits += record.amount
        assert Decimal("12.00") + credits - debits == balance_of(db, card.user_id)

        for journey in journeys_of(db, card.user_id):
            assert journey.status.is_terminal
            assert journey.tap_out_time >= journey.tap_in_time
            assert journey.fare_amount == journey.final_amount + journey.discount_amount
