"""Request and response models for the TapFare API."""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TapRequest(BaseModel):
    """A card presented at a station reader."""
    card_number: str = Field(..., min_length=1, description="Card number as read by the reader")
    station_code: str = Field(..., min_length=1, description="Code of the station the reader belongs to")
    tap_time: Optional[datetime] = Field(None, description="Reader timestamp; server time if omitted")

    @field_validator("card_number", "station_code")
    @classmethod
    def strip_identifier(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class TapInResponse(BaseModel):
    success: bool = True
    message: str
    journey_id: int
    status: str
    station_name: str
    station_code: str
    timestamp: datetime
    current_balance: Decimal


class TapOutResponse(BaseModel):
    success: bool = True
    message: str
    journey_id: int
    status: str
    entry_station_name: str
    exit_station_name: str
    station_code: str
    timestamp: datetime
    fare_amount: Decimal = Field(..., description="Amount charged after daily capping")
    base_fare: Decimal
    discount_amount: Decimal
    zones_transited: int
    duration_minutes: int
    current_balance: Decimal
    daily_spend: Decimal
    daily_cap_reached: bool


class JourneyView(BaseModel):
    """Journey as reported by history and active-journey queries."""
    id: int
    user_id: int
    card_id: int
    entry_station_code: str
    entry_station_name: str
    exit_station_code: Optional[str] = None
    exit_station_name: Optional[str] = None
    tap_in_time: datetime
    tap_out_time: Optional[datetime] = None
    status: str
    fare_amount: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    final_amount: Optional[Decimal] = None
    zones_transited: Optional[int] = None
    duration_minutes: Optional[int] = None


class SweepResponse(BaseModel):
    processed: int
    skipped: List[int] = Field(default_factory=list, description="Left IN_PROGRESS: owner could not pay the penalty")
    failed: List[int] = Field(default_factory=list, description="Errored; retried by the next sweep")
    message: str


class TopUpRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)


class BalanceResponse(BaseModel):
    user_id: int
    balance: Decimal
    transaction_id: Optional[str] = None
    message: Optional[str] = None


class TransactionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: str
    type: str
    amount: Decimal
    status: str
    journey_id: Optional[int] = None
    card_id: Optional[int] = None
    description: Optional[str] = None
    balance_after: Optional[Decimal] = None
    created_at: datetime


class DailySpendingResponse(BaseModel):
    user_id: int
    on_date: date
    daily_spend: Decimal
    daily_cap: Decimal
    remaining: Decimal
    daily_cap_reached: bool


class ZonePair(BaseModel):
    from_zone: int = Field(..., ge=1, description="Starting zone")
    to_zone: int = Field(..., ge=1, description="Ending zone")


class FareQuoteRequest(BaseModel):
    """Request model for a one-day fare quote."""
    journeys: List[ZonePair] = Field(
        ...,
        min_length=1,
        max_length=20,
        description="Journeys in travel order (max 20 per day)"
    )
    spent_so_far: Decimal = Field(Decimal("0.00"), ge=0, description="Journey spend already made today")


class QuotedJourneyView(ZonePair):
    zones_transited: int
    fare: Decimal
    charged: Decimal
    discount: Decimal


class FareQuoteResponse(BaseModel):
    journeys: List[QuotedJourneyView]
    total_fare: Decimal
    total_charged: Decimal
    total_discount: Decimal
    daily_cap: Decimal
    daily_cap_reached: bool
    journey_count: int


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: str
