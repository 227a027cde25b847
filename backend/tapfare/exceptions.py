"""
Typed exceptions for the TapFare journey engine.

Every failure the engine reports to its callers is a subclass of
``TapFareError`` carrying a machine-readable ``code``. The API layer maps
the four families onto HTTP statuses:

    TapFareError
    |
    +-- NotFoundError            (404)
    |   +-- CardNotFoundError
    |   +-- StationNotFoundError
    |   +-- JourneyNotFoundError
    |   +-- UserNotFoundError
    |
    +-- InvalidStateError        (409)
    |   +-- CardNotActiveError
    |   +-- StationNotOperationalError
    |   +-- ActiveJourneyExistsError
    |   +-- NoActiveJourneyError
    |   +-- InvalidTapTimeError
    |
    +-- InsufficientBalanceError (402)
    +-- InvalidAmountError       (400)
    +-- ConfigurationError

Persistence failures are not wrapped; SQLAlchemy errors propagate as
infrastructure errors.
"""

from decimal import Decimal
from typing import Optional


class TapFareError(Exception):
    """Base class for domain failures."""

    code: str = "TAPFARE_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(TapFareError):
    code = "CONFIGURATION_ERROR"


# --- Not found ---------------------------------------------------------------


class NotFoundError(TapFareError):
    code = "NOT_FOUND"


class CardNotFoundError(NotFoundError):
    code = "CARD_NOT_FOUND"

    def __init__(self, card_number: str):
        self.card_number = card_number
        super().__init__(f"Card not found: {card_number}")


class StationNotFoundError(NotFoundError):
    code = "STATION_NOT_FOUND"

    def __init__(self, station_code: str):
        self.station_code = station_code
        super().__init__(f"Station not found: {station_code}")


class JourneyNotFoundError(NotFoundError):
    code = "JOURNEY_NOT_FOUND"

    def __init__(self, journey_id: int):
        self.journey_id = journey_id
        super().__init__(f"Journey not found: {journey_id}")


class UserNotFoundError(NotFoundError):
    code = "USER_NOT_FOUND"

    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


# --- Invalid state -----------------------------------------------------------


class InvalidStateError(TapFareError):
    code = "INVALID_STATE"


class CardNotActiveError(InvalidStateError):
    code = "CARD_NOT_ACTIVE"

    def __init__(self, card_number: str, status: str):
        self.card_number = card_number
        self.status = status
        super().__init__(f"Card is not active (status: {status})")


class StationNotOperationalError(InvalidStateError):
    code = "STATION_NOT_OPERATIONAL"

    def __init__(self, station_code: str, status: str):
        self.station_code = station_code
        self.status = status
        super().__init__(f"Station {station_code} is not operational (status: {status})")


class ActiveJourneyExistsError(InvalidStateError):
    code = "ACTIVE_JOURNEY_EXISTS"

    def __init__(self, journey_id: int, entry_station_name: str):
        self.journey_id = journey_id
        self.entry_station_name = entry_station_name
        super().__init__(
            f"Active journey already exists. Please tap out at: {entry_station_name}"
        )


class NoActiveJourneyError(InvalidStateError):
    code = "NO_ACTIVE_JOURNEY"

    def __init__(self, card_number: str):
        self.card_number = card_number
        super().__init__("No active journey found. Please tap in first.")


class InvalidTapTimeError(InvalidStateError):
    code = "INVALID_TAP_TIME"


# --- Money -------------------------------------------------------------------


class InsufficientBalanceError(TapFareError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(
        self,
        message: str,
        required: Optional[Decimal] = None,
        available: Optional[Decimal] = None,
    ):
        self.required = required
        self.available = available
        super().__init__(message)


class InvalidAmountError(TapFareError):
    code = "INVALID_AMOUNT"

    def __init__(self, amount: Decimal):
        self.amount = amount
        super().__init__(f"Invalid amount: {amount}")
