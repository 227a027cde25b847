"""API endpoints for taps, journeys, balances and fare quotes.

Handlers are plain ``def`` so FastAPI runs them on its worker thread pool;
the journey service serializes work per card and per user.
"""

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from tapfare.models import (
    BalanceResponse,
    DailySpendingResponse,
    FareQuoteRequest,
    FareQuoteResponse,
    JourneyView,
    QuotedJourneyView,
    SweepResponse,
    TapInResponse,
    TapOutResponse,
    TapRequest,
    TopUpRequest,
    TransactionView,
)
from tapfare.services import AccountService, JourneyService
from tapfare.services.fare_calculator import FareCalculatorInterface

router = APIRouter(prefix="/api")


def get_journey_service(request: Request) -> JourneyService:
    return request.app.state.components.journeys


def get_account_service(request: Request) -> AccountService:
    return request.app.state.components.accounts


def get_calculator(request: Request) -> FareCalculatorInterface:
    """
    Dependency injection for fare calculator.
    Returns any implementation of FareCalculatorInterface.
    """
    return request.app.state.components.fare_calculator


# --- Journeys ----------------------------------------------------------------


@router.post(
    "/journeys/tap-in",
    response_model=TapInResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Journeys"],
)
def tap_in(request: TapRequest, journeys: JourneyService = Depends(get_journey_service)):
    """Start a journey: card presented at an entry reader."""
    return journeys.tap_in(request.card_number, request.station_code, request.tap_time)


@router.post("/journeys/tap-out", response_model=TapOutResponse, tags=["Journeys"])
def tap_out(request: TapRequest, journeys: JourneyService = Depends(get_journey_service)):
    """End the card's journey, charging the capped fare."""
    return journeys.tap_out(request.card_number, request.station_code, request.tap_time)


@router.get(
    "/journeys/active",
    response_model=JourneyView,
    responses={204: {"description": "No journey in progress"}},
    tags=["Journeys"],
)
def active_journey(
    card_number: str = Query(..., min_length=1),
    journeys: JourneyService = Depends(get_journey_service),
):
    journey = journeys.active_journey(card_number)
    if journey is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return journey


@router.get("/journeys/history", response_model=List[JourneyView], tags=["Journeys"])
def journey_history(
    user_id: int = Query(..., ge=1),
    journeys: JourneyService = Depends(get_journey_service),
):
    return journeys.journey_history(user_id)


@router.get("/journeys/{journey_id}", response_model=JourneyView, tags=["Journeys"])
def get_journey(journey_id: int, journeys: JourneyService = Depends(get_journey_service)):
    return journeys.journey(journey_id)


@router.post("/journeys/process-incomplete", response_model=SweepResponse, tags=["Admin"])
def process_incomplete_journeys(journeys: JourneyService = Depends(get_journey_service)):
    """Administrative trigger for the abandoned-journey sweep."""
    report = journeys.sweep_incomplete_journeys()
    return SweepResponse(
        processed=report.processed,
        skipped=report.skipped,
        failed=report.failed,
        message=f"Processed {report.processed} incomplete journeys",
    )


# --- Accounts ----------------------------------------------------------------


@router.post("/users/{user_id}/top-up", response_model=BalanceResponse, tags=["Accounts"])
def top_up(
    user_id: int,
    request: TopUpRequest,
    accounts: AccountService = Depends(get_account_service),
):
    return accounts.top_up(user_id, request.amount)


@router.get("/users/{user_id}/balance", response_model=BalanceResponse, tags=["Accounts"])
def balance(user_id: int, accounts: AccountService = Depends(get_account_service)):
    return accounts.balance(user_id)


@router.get(
    "/users/{user_id}/transactions", response_model=List[TransactionView], tags=["Accounts"]
)
def transactions(
    user_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    accounts: AccountService = Depends(get_account_service),
):
    return accounts.transactions(user_id, start, end)


@router.get(
    "/users/{user_id}/daily-spending", response_model=DailySpendingResponse, tags=["Accounts"]
)
def daily_spending(
    user_id: int,
    on: Optional[date] = None,
    accounts: AccountService = Depends(get_account_service),
):
    return accounts.daily_spending(user_id, on)


# --- Fares -------------------------------------------------------------------


@router.post("/calculate-fares", response_model=FareQuoteResponse, tags=["Fare Calculation"])
def calculate_fares(
    request: FareQuoteRequest,
    http_request: Request,
    calculator: FareCalculatorInterface = Depends(get_calculator),
) -> FareQuoteResponse:
    """
    Quote a day of journeys given as zone pairs, applying the daily cap in
    travel order on top of what was already spent today.
    """
    max_journeys = http_request.app.state.components.settings.MAX_JOURNEYS_PER_QUOTE
    if len(request.journeys) > max_journeys:
        raise HTTPException(
            status_code=400,
            detail=f"Maximum {max_journeys} journeys allowed per day"
        )

    quote = calculator.quote_journeys(
        [(j.from_zone, j.to_zone) for j in request.journeys],
        request.spent_so_far,
    )
    return FareQuoteResponse(
        journeys=[
            QuotedJourneyView(
                from_zone=q.from_zone,
                to_zone=q.to_zone,
                zones_transited=q.zones_transited,
                fare=q.fare,
                charged=q.charged,
                discount=q.discount,
            )
            for q in quote.journeys
        ],
        total_fare=quote.total_fare,
        total_charged=quote.total_charged,
        total_discount=quote.total_discount,
        daily_cap=calculator.daily_cap_amount(),
        daily_cap_reached=quote.daily_cap_reached,
        journey_count=len(quote.journeys),
    )


@router.get("/health", tags=["System"])
def health_check(request: Request):
    """Health check endpoint including database status."""
    components = request.app.state.components
    db_status = "healthy"
    try:
        with components.db_manager.engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        db_status = f"unhealthy: {e}"

    return {
        "status": "healthy",
        "service": components.settings.API_TITLE,
        "datastore_status": db_status,
        "station_cache": components.stations.cache.stats(),
    }
