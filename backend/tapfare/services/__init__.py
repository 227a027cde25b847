"""Services package for the TapFare system."""

from .fare_calculator import (
    FareCalculatorInterface,
    ZoneBasedFareCalculator,
    CapResult,
    FareQuote,
)
from .ledger import LedgerService, LedgerResult, LedgerStatus
from .journey_service import JourneyService, SweepReport
from .account_service import AccountService

__all__ = [
    'FareCalculatorInterface',
    'ZoneBasedFareCalculator',
    'CapResult',
    'FareQuote',
    'LedgerService',
    'LedgerResult',
    'LedgerStatus',
    'JourneyService',
    'SweepReport',
    'AccountService',
]
