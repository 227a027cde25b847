"""Fare calculation service implementing zone pricing and daily capping."""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable
from abc import ABC, abstractmethod

import structlog

from tapfare.config import FareSettings

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def round_money(amount) -> Decimal:
    """Round to 2 decimal places, half up."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CapResult:
    """Split of a proposed fare into the charged part and the cap discount."""

    charged: Decimal
    discount: Decimal


@dataclass(frozen=True)
class QuotedJourney:
    from_zone: int
    to_zone: int
    zones_transited: int
    fare: Decimal
    charged: Decimal
    discount: Decimal


@dataclass(frozen=True)
class FareQuote:
    journeys: List[QuotedJourney] = field(default_factory=list)
    total_fare: Decimal = ZERO
    total_charged: Decimal = ZERO
    total_discount: Decimal = ZERO
    daily_cap_reached: bool = False


@runtime_checkable
class FareCalculatorInterface(Protocol):
    """
    Interface for fare calculation.
    The journey service depends on this contract, not on a concrete class.
    """

    def zones_transited(self, entry_zone: int, exit_zone: int) -> int:
        ...

    def base_fare(self, zones_transited: int) -> Decimal:
        ...

    def apply_daily_cap(
        self, spent_so_far: Decimal, proposed_fare: Decimal, cap_amount: Optional[Decimal] = None
    ) -> CapResult:
        ...

    def incomplete_journey_penalty(self) -> Decimal:
        ...

    def daily_cap_amount(self) -> Decimal:
        ...

    def quote_journeys(
        self, zone_pairs: Sequence[Tuple[int, int]], spent_so_far: Decimal = ZERO
    ) -> FareQuote:
        ...


class BaseFareCalculator(ABC):
    """Capping and batch quoting shared by every pricing rule."""

    def __init__(self, fare_settings: FareSettings):
        self.settings = fare_settings

    @abstractmethod
    def zones_transited(self, entry_zone: int, exit_zone: int) -> int:
        pass

    @abstractmethod
    def base_fare(self, zones_transited: int) -> Decimal:
        pass

    def daily_cap_amount(self) -> Decimal:
        return round_money(self.settings.daily_cap_amount)

    def incomplete_journey_penalty(self) -> Decimal:
        """Fixed charge applied instead of a fare when a journey is swept."""
        return round_money(self.settings.incomplete_journey_penalty)

    def apply_daily_cap(
        self,
        spent_so_far: Decimal,
        proposed_fare: Decimal,
        cap_amount: Optional[Decimal] = None,
    ) -> CapResult:
        """
        Split a fare against what the user has already spent today.

        Args:
            spent_so_far: Journey payments already made today
            proposed_fare: Full fare for the journey being priced
            cap_amount: Daily ceiling; defaults to the configured cap

        Returns:
            CapResult with the amount to charge and the discount granted
        """
        cap = round_money(self.settings.daily_cap_amount if cap_amount is None else cap_amount)
        spent = round_money(spent_so_far)
        fare = round_money(proposed_fare)

        if spent >= cap:
            logger.info("daily_cap_reached", cap=str(cap), spent=str(spent), fare=str(fare))
            return CapResult(charged=ZERO, discount=fare)

        if spent + fare > cap:
            remaining = round_money(cap - spent)
            logger.info(
                "daily_cap_applied", cap=str(cap), fare=str(fare), charged=str(remaining)
            )
            return CapResult(charged=remaining, discount=round_money(fare - remaining))

        return CapResult(charged=fare, discount=ZERO)

    def quote_journeys(
        self, zone_pairs: Sequence[Tuple[int, int]], spent_so_far: Decimal = ZERO
    ) -> FareQuote:
        """
        Price an ordered day of journeys, applying the cap cumulatively.
        Uses zones_transited/base_fare so subclasses only supply the pricing rule.
        """
        quoted = []
        spent = round_money(spent_so_far)
        total_fare = ZERO
        total_discount = ZERO

        for from_zone, to_zone in zone_pairs:
            zones = self.zones_transited(from_zone, to_zone)
            fare = self.base_fare(zones)
            split = self.apply_daily_cap(spent, fare)
            quoted.append(
                QuotedJourney(
                    from_zone=from_zone,
                    to_zone=to_zone,
                    zones_transited=zones,
                    fare=fare,
                    charged=split.charged,
                    discount=split.discount,
                )
            )
            spent += split.charged
            total_fare += fare
            total_discount += split.discount

        return FareQuote(
            journeys=quoted,
            total_fare=round_money(total_fare),
            total_charged=round_money(spent - round_money(spent_so_far)),
            total_discount=round_money(total_discount),
            daily_cap_reached=spent >= self.daily_cap_amount(),
        )


class ZoneBasedFareCalculator(BaseFareCalculator):
    """
    Prices a journey as a flat base fare plus a charge per zone transited.

    Zones transited is ``|entry - exit| + 1``, so same-zone travel still costs
    one zone unit.
    """

    def zones_transited(self, entry_zone: int, exit_zone: int) -> int:
        if entry_zone < 1 or exit_zone < 1:
            raise ValueError(f"Zone numbers must be positive, got {entry_zone} and {exit_zone}")
        zones = abs(entry_zone - exit_zone) + 1
        logger.debug("zones_transited", entry_zone=entry_zone, exit_zone=exit_zone, zones=zones)
        return zones

    def base_fare(self, zones_transited: int) -> Decimal:
        fare = self.settings.base_fare + self.settings.per_zone_charge * zones_transited
        return round_money(fare)
