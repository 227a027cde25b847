"""Journey lifecycle: tap-in, tap-out and the abandoned-journey sweep.

A journey is created IN_PROGRESS at tap-in and changed exactly once more,
either to COMPLETED at tap-out or to INCOMPLETE by the sweep. Each of those
changes commits together with its ledger debit or not at all, so a failed
tap-out leaves the journey open and can simply be retried.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tapfare import repository
from tapfare.cache import StationDirectory, StationInfo
from tapfare.clock import Clock, SystemClock
from tapfare.database import (
    CardDB,
    CardStatus,
    DatabaseManager,
    JourneyDB,
    JourneyStatus,
    TransactionType,
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
    UserNotFoundError,
)
from tapfare.locking import KeyedLocks, card_key, user_key
from tapfare.models import JourneyView, TapInResponse, TapOutResponse
from tapfare.services.fare_calculator import ZERO, FareCalculatorInterface, round_money
from tapfare.services.ledger import LedgerService, LedgerStatus

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SweepReport:
    """Outcome of one sweep run."""

    processed: int = 0
    skipped: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)


def normalize_tap_time(tap_time: Optional[datetime]) -> Optional[datetime]:
    """Readers may send offset-aware timestamps; journeys store local naive time."""
    if tap_time is not None and tap_time.tzinfo is not None:
        return tap_time.astimezone().replace(tzinfo=None)
    return tap_time


class JourneyService:
    """Owns the journey state machine for every card."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        fare_calculator: FareCalculatorInterface,
        stations: StationDirectory,
        max_journey_duration_hours: int,
        locks: Optional[KeyedLocks] = None,
        clock: Optional[Clock] = None,
    ):
        self.db_manager = db_manager
        self.fare_calculator = fare_calculator
        self.stations = stations
        self.max_journey_duration = timedelta(hours=max_journey_duration_hours)
        self.locks = locks or KeyedLocks()
        self.clock = clock or SystemClock()

    # --- Tap-in --------------------------------------------------------------

    def tap_in(
        self, card_number: str, station_code: str, tap_time: Optional[datetime] = None
    ) -> TapInResponse:
        """
        Start a journey for a card at a station.

        Raises:
            CardNotFoundError, CardNotActiveError: card missing or not ACTIVE
            StationNotFoundError, StationNotOperationalError: station missing or not ACTIVE
            ActiveJourneyExistsError: the card already has an IN_PROGRESS journey
            InsufficientBalanceError: the owner's balance is not above zero
        """
        logger.info("tap_in_received", card_number=card_number, station_code=station_code)

        with self.locks.hold(card_key(card_number)):
            with self.db_manager.session_scope() as session:
                card = self._resolve_card(
                    session, card_number, require_active=True, for_update=True
                )
                station = self._resolve_station(station_code, require_operational=True)

                existing = repository.find_active_journey(session, card.id, for_update=True)
                if existing is not None:
                    self._reject_second_journey(session, card_number, existing)

                # Coarse pre-check only; the binding check happens at tap-out.
                user = repository.get_user(session, card.user_id)
                if user is None:
                    raise UserNotFoundError(card.user_id)
                balance = round_money(user.balance)
                if balance <= ZERO:
                    raise InsufficientBalanceError(
                        "Insufficient balance. Please top up your account.",
                        available=balance,
                    )

                tapped_at = normalize_tap_time(tap_time) or self.clock.now()
                journey = JourneyDB(
                    user_id=card.user_id,
                    card_id=card.id,
                    entry_station_id=station.id,
                    tap_in_time=tapped_at,
                    status=JourneyStatus.IN_PROGRESS,
                )
                session.add(journey)
                try:
                    session.flush()
                except IntegrityError:
                    # another process opened a journey for this card since the check above
                    session.rollback()
                    existing = repository.find_active_journey(session, card.id)
                    if existing is None:
                        raise
                    self._reject_second_journey(session, card_number, existing)

        logger.info(
            "journey_started",
            journey_id=journey.id,
            user_id=card.user_id,
            station_code=station.station_code,
        )
        return TapInResponse(
            message=f"Tap-in successful at {station.name}",
            journey_id=journey.id,
            status=journey.status.value,
            station_name=station.name,
            station_code=station.station_code,
            timestamp=tapped_at,
            current_balance=balance,
        )

    # --- Tap-out -------------------------------------------------------------

    def tap_out(
        self, card_number: str, station_code: str, tap_time: Optional[datetime] = None
    ) -> TapOutResponse:
        """
        Complete the card's journey, price it and debit the owner.

        The daily-spend read, the debit and the journey update run under the
        card and user locks in one transaction. On any failure the journey
        stays IN_PROGRESS and no transaction is recorded.

        Raises:
            CardNotFoundError: unknown card
            NoActiveJourneyError: the card has no IN_PROGRESS journey
            StationNotFoundError: unknown exit station
            InvalidTapTimeError: tap-out time precedes tap-in time
            InsufficientBalanceError: the owner cannot pay the capped fare
        """
        logger.info("tap_out_received", card_number=card_number, station_code=station_code)

        # Card ownership never changes, so the user lock can be chosen up front.
        owner_id = self._card_owner(card_number)

        with self.locks.hold(card_key(card_number), user_key(owner_id)):
            with self.db_manager.session_scope() as session:
                card = self._resolve_card(session, card_number, for_update=True)
                journey = repository.find_active_journey(session, card.id, for_update=True)
                if journey is None:
                    raise NoActiveJourneyError(card_number)

                exit_station = self._resolve_station(station_code)
                entry_station = repository.get_station(session, journey.entry_station_id)

                tapped_at = normalize_tap_time(tap_time) or self.clock.now()
                if tapped_at < journey.tap_in_time:
                    raise InvalidTapTimeError(
                        f"Tap-out time {tapped_at.isoformat()} precedes tap-in time "
                        f"{journey.tap_in_time.isoformat()}"
                    )

                zones = self.fare_calculator.zones_transited(
                    entry_station.zone_number, exit_station.zone_number
                )
                base_fare = self.fare_calculator.base_fare(zones)

                # hold the balance row across the daily-spend read and the debit
                repository.get_user(session, journey.user_id, for_update=True)
                ledger = LedgerService(session, self.clock)
                spent_today = ledger.daily_spend(journey.user_id, tapped_at.date())
                split = self.fare_calculator.apply_daily_cap(spent_today, base_fare)

                result = ledger.debit(
                    journey.user_id,
                    split.charged,
                    TransactionType.JOURNEY_PAYMENT,
                    journey_id=journey.id,
                    card_id=card.id,
                    description=f"Journey from {entry_station.name} to {exit_station.name}",
                    at=tapped_at,
                )
                if result.status is LedgerStatus.INSUFFICIENT_FUNDS:
                    raise InsufficientBalanceError(
                        result.message, required=split.charged, available=result.balance_after
                    )
                if result.status is LedgerStatus.USER_NOT_FOUND:
                    raise UserNotFoundError(journey.user_id)

                journey.exit_station_id = exit_station.id
                journey.tap_out_time = tapped_at
                journey.zones_transited = zones
                journey.fare_amount = base_fare
                journey.discount_amount = split.discount
                journey.final_amount = split.charged
                journey.status = JourneyStatus.COMPLETED
                session.flush()

        daily_spend = round_money(spent_today + split.charged)
        cap_reached = daily_spend >= self.fare_calculator.daily_cap_amount()
        logger.info(
            "journey_completed",
            journey_id=journey.id,
            zones=zones,
            fare=str(base_fare),
            charged=str(split.charged),
            discount=str(split.discount),
            duration_minutes=journey.duration_minutes,
            daily_cap_reached=cap_reached,
        )
        return TapOutResponse(
            message="Tap-out successful. Journey completed.",
            journey_id=journey.id,
            status=journey.status.value,
            entry_station_name=entry_station.name,
            exit_station_name=exit_station.name,
            station_code=exit_station.station_code,
            timestamp=tapped_at,
            fare_amount=split.charged,
            base_fare=base_fare,
            discount_amount=split.discount,
            zones_transited=zones,
            duration_minutes=journey.duration_minutes,
            current_balance=result.balance_after,
            daily_spend=daily_spend,
            daily_cap_reached=cap_reached,
        )

    # --- Sweep ---------------------------------------------------------------

    def sweep_incomplete_journeys(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Resolve journeys left open longer than the maximum journey duration.

        Each stale journey is charged the incomplete-journey penalty and
        marked INCOMPLETE in its own transaction. A journey whose owner cannot
        pay is left IN_PROGRESS for the next sweep; an error on one journey is
        logged and does not stop the others.
        """
        now = now or self.clock.now()
        cutoff = now - self.max_journey_duration

        session = self.db_manager.get_session()
        try:
            candidates = repository.find_stale_journeys(session, cutoff)
        finally:
            session.close()

        logger.info("sweep_started", candidates=len(candidates), cutoff=cutoff.isoformat())

        processed = 0
        skipped = []
        failed = []
        for journey_id, card_number, user_id in candidates:
            try:
                resolved = self._resolve_incomplete(journey_id, card_number, user_id, now, cutoff)
            except Exception:
                logger.exception("sweep_journey_failed", journey_id=journey_id)
                failed.append(journey_id)
                continue
            if resolved:
                processed += 1
            elif resolved is False:
                skipped.append(journey_id)

        logger.info("sweep_finished", processed=processed, skipped=len(skipped), failed=len(failed))
        return SweepReport(processed=processed, skipped=skipped, failed=failed)

    def _resolve_incomplete(
        self, journey_id: int, card_number: str, user_id: int, now: datetime, cutoff: datetime
    ) -> Optional[bool]:
        """True if resolved, False if the owner cannot pay, None if the
        journey was closed by a tap-out since it was listed."""
        penalty = self.fare_calculator.incomplete_journey_penalty()

        with self.locks.hold(card_key(card_number), user_key(user_id)):
            with self.db_manager.session_scope() as session:
                journey = repository.get_journey(session, journey_id, for_update=True)
                if (
                    journey is None
                    or journey.status.is_terminal
                    or journey.tap_in_time >= cutoff
                ):
                    return None

                result = LedgerService(session, self.clock).debit(
                    journey.user_id,
                    penalty,
                    TransactionType.PENALTY,
                    journey_id=journey.id,
                    card_id=journey.card_id,
                    description="Incomplete journey penalty",
                    at=now,
                )
                if result.status is LedgerStatus.INSUFFICIENT_FUNDS:
                    logger.warning(
                        "sweep_penalty_unpaid",
                        journey_id=journey.id,
                        user_id=journey.user_id,
                        reason=result.message,
                    )
                    return False
                if not result.is_success:
                    raise UserNotFoundError(journey.user_id)

                journey.status = JourneyStatus.INCOMPLETE
                journey.tap_out_time = now
                journey.fare_amount = penalty
                journey.discount_amount = ZERO
                journey.final_amount = penalty
                session.flush()

        logger.info("journey_marked_incomplete", journey_id=journey_id, penalty=str(penalty))
        return True

    # --- Queries -------------------------------------------------------------

    def active_journey(self, card_number: str) -> Optional[JourneyView]:
        """The card's IN_PROGRESS journey, or None."""
        session = self.db_manager.get_session()
        try:
            card = self._resolve_card(session, card_number)
            journey = repository.find_active_journey(session, card.id)
            return self._to_view(session, journey) if journey is not None else None
        finally:
            session.close()

    def journey(self, journey_id: int) -> JourneyView:
        """A single journey by id; raises JourneyNotFoundError if unknown."""
        session = self.db_manager.get_session()
        try:
            journey = repository.get_journey(session, journey_id)
            if journey is None:
                raise JourneyNotFoundError(journey_id)
            return self._to_view(session, journey)
        finally:
            session.close()

    def journey_history(self, user_id: int) -> List[JourneyView]:
        """All journeys of a user, most recent tap-in first."""
        session = self.db_manager.get_session()
        try:
            if repository.get_user(session, user_id) is None:
                raise UserNotFoundError(user_id)
            stations = {}
            return [
                self._to_view(session, journey, stations)
                for journey in repository.list_user_journeys(session, user_id)
            ]
        finally:
            session.close()

    # --- Helpers -------------------------------------------------------------

    def _card_owner(self, card_number: str) -> int:
        session = self.db_manager.get_session()
        try:
            return self._resolve_card(session, card_number).user_id
        finally:
            session.close()

    def _resolve_card(
        self,
        session: Session,
        card_number: str,
        require_active: bool = False,
        for_update: bool = False,
    ) -> CardDB:
        card = repository.find_card_by_number(session, card_number, for_update=for_update)
        if card is None:
            raise CardNotFoundError(card_number)
        if require_active and card.status is not CardStatus.ACTIVE:
            raise CardNotActiveError(card_number, card.status.value)
        return card

    def _reject_second_journey(self, session: Session, card_number: str, existing: JourneyDB):
        entry = repository.get_station(session, existing.entry_station_id)
        logger.info(
            "tap_in_rejected_active_journey",
            card_number=card_number,
            journey_id=existing.id,
        )
        raise ActiveJourneyExistsError(existing.id, entry.name)

    def _resolve_station(self, station_code: str, require_operational: bool = False) -> StationInfo:
        station = self.stations.find(station_code)
        if station is None:
            raise StationNotFoundError(station_code)
        if require_operational and not station.is_operational:
            raise StationNotOperationalError(station_code, station.status.value)
        return station

    def _to_view(self, session: Session, journey: JourneyDB, stations=None) -> JourneyView:
        stations = {} if stations is None else stations

        def station(station_id):
            if station_id is None:
                return None
            if station_id not in stations:
                stations[station_id] = repository.get_station(session, station_id)
            return stations[station_id]

        entry = station(journey.entry_station_id)
        exit_ = station(journey.exit_station_id)
        return JourneyView(
            id=journey.id,
            user_id=journey.user_id,
            card_id=journey.card_id,
            entry_station_code=entry.station_code,
            entry_station_name=entry.name,
            exit_station_code=exit_.station_code if exit_ else None,
            exit_station_name=exit_.name if exit_ else None,
            tap_in_time=journey.tap_in_time,
            tap_out_time=journey.tap_out_time,
            status=journey.status.value,
            fare_amount=journey.fare_amount,
            discount_amount=journey.discount_amount,
            final_amount=journey.final_amount,
            zones_transited=journey.zones_transited,
            duration_minutes=journey.duration_minutes,
        )
