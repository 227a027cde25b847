"""Configuration for the TapFare journey service."""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional
import os
from dotenv import load_dotenv

from tapfare.exceptions import ConfigurationError

load_dotenv()


@dataclass(frozen=True)
class FareSettings:
    """Numeric constants the fare and journey engine is built with."""

    base_fare: Decimal
    per_zone_charge: Decimal
    daily_cap_amount: Decimal
    incomplete_journey_penalty: Decimal
    max_journey_duration_hours: int


def _money(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ConfigurationError(f"{name} must be a decimal amount, got {raw!r}")


def _integer(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


class Settings:
    """Application settings.

    Values are read from the environment (and a ``.env`` file) when the
    instance is created. Keyword overrides take precedence, which is how
    tests build isolated configurations.
    """

    # API Settings
    API_TITLE = "TapFare Journey Service"
    API_VERSION = "1.0.0"
    API_DESCRIPTION = (
        "Tap-in/tap-out journey lifecycle with zone pricing, daily capping "
        "and a prepaid balance ledger"
    )

    # CORS Settings
    CORS_ORIGINS = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8000",
        "http://127.0.0.1:8000",
    ]

    def __init__(self, **overrides):
        # Database / cache
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./tapfare.db")
        self.REDIS_URL: Optional[str] = os.getenv("REDIS_URL") or None
        self.STATION_CACHE_TTL: int = _integer("STATION_CACHE_TTL", 60)

        # Fare engine
        self.BASE_FARE: Decimal = _money("BASE_FARE", "2.50")
        self.PER_ZONE_CHARGE: Decimal = _money("PER_ZONE_CHARGE", "1.50")
        self.DAILY_CAP_AMOUNT: Decimal = _money("DAILY_CAP_AMOUNT", "10.00")
        self.INCOMPLETE_JOURNEY_PENALTY: Decimal = _money(
            "INCOMPLETE_JOURNEY_PENALTY", "5.00"
        )
        self.MAX_JOURNEY_DURATION_HOURS: int = _integer("MAX_JOURNEY_DURATION_HOURS", 24)
        self.MAX_JOURNEYS_PER_QUOTE: int = _integer("MAX_JOURNEYS_PER_QUOTE", 20)

        # Logging
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
        self.LOG_JSON: bool = os.getenv("LOG_JSON", "false").lower() in ("1", "true", "yes")

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise ConfigurationError(f"Unknown setting: {key}")
            setattr(self, key, value)

        self.validate()

    def validate(self):
        """Reject configurations the fare engine cannot run with."""
        for name in (
            "BASE_FARE",
            "PER_ZONE_CHARGE",
            "DAILY_CAP_AMOUNT",
            "INCOMPLETE_JOURNEY_PENALTY",
        ):
            value = Decimal(getattr(self, name))
            if value < 0:
                raise ConfigurationError(f"{name} must be non-negative, got {value}")
            setattr(self, name, value)

        if self.MAX_JOURNEY_DURATION_HOURS <= 0:
            raise ConfigurationError("MAX_JOURNEY_DURATION_HOURS must be positive")
        if self.MAX_JOURNEYS_PER_QUOTE <= 0:
            raise ConfigurationError("MAX_JOURNEYS_PER_QUOTE must be positive")
        if self.STATION_CACHE_TTL < 0:
            raise ConfigurationError("STATION_CACHE_TTL must be non-negative")

    def fare_settings(self) -> FareSettings:
        """Snapshot of the fare constants handed to the fare calculator."""
        return FareSettings(
            base_fare=self.BASE_FARE,
            per_zone_charge=self.PER_ZONE_CHARGE,
            daily_cap_amount=self.DAILY_CAP_AMOUNT,
            incomplete_journey_penalty=self.INCOMPLETE_JOURNEY_PENALTY,
            max_journey_duration_hours=self.MAX_JOURNEY_DURATION_HOURS,
        )
