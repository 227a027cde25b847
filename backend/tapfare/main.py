"""FastAPI application for the TapFare journey service."""

from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tapfare.api.endpoints import router
from tapfare.cache import StationCache, StationDirectory
from tapfare.clock import Clock, SystemClock
from tapfare.config import Settings
from tapfare.database import DatabaseManager
from tapfare.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidStateError,
    NotFoundError,
    TapFareError,
)
from tapfare.locking import KeyedLocks
from tapfare.logging_config import configure_logging
from tapfare.models import ErrorResponse
from tapfare.services import AccountService, JourneyService, ZoneBasedFareCalculator

logger = structlog.get_logger(__name__)


@dataclass
class Components:
    """Everything a request handler needs, built once at startup."""

    settings: Settings
    db_manager: DatabaseManager
    fare_calculator: ZoneBasedFareCalculator
    stations: StationDirectory
    journeys: JourneyService
    accounts: AccountService


def build_components(settings: Settings, clock: Optional[Clock] = None) -> Components:
    clock = clock or SystemClock()
    db_manager = DatabaseManager(settings.DATABASE_URL)
    fare_calculator = ZoneBasedFareCalculator(settings.fare_settings())
    stations = StationDirectory(
        db_manager, StationCache(redis_url=settings.REDIS_URL, ttl=settings.STATION_CACHE_TTL)
    )
    # Shared so tap-out and top-up serialize on the same user keys
    locks = KeyedLocks()
    return Components(
        settings=settings,
        db_manager=db_manager,
        fare_calculator=fare_calculator,
        stations=stations,
        journeys=JourneyService(
            db_manager,
            fare_calculator,
            stations,
            settings.MAX_JOURNEY_DURATION_HOURS,
            locks=locks,
            clock=clock,
        ),
        accounts=AccountService(db_manager, fare_calculator, locks=locks, clock=clock),
    )


def status_for(error: TapFareError) -> int:
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, InvalidStateError):
        return 409
    if isinstance(error, InsufficientBalanceError):
        return 402
    if isinstance(error, InvalidAmountError):
        return 400
    return 500


def create_app(
    settings: Optional[Settings] = None,
    components: Optional[Components] = None,
) -> FastAPI:
    """Build the application with its components wired in ``app.state``."""
    settings = settings or (components.settings if components else Settings())
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    app = FastAPI(
        title=settings.API_TITLE,
        version=settings.API_VERSION,
        description=settings.API_DESCRIPTION,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.components = components or build_components(settings)

    @app.exception_handler(TapFareError)
    async def handle_domain_error(request: Request, exc: TapFareError):
        status_code = status_for(exc)
        logger.info(
            "request_rejected",
            path=request.url.path,
            error=exc.code,
            status_code=status_code,
        )
        body = ErrorResponse(error=exc.code, message=exc.message)
        return JSONResponse(status_code=status_code, content=body.model_dump())

    @app.get("/")
    async def root():
        return {
            "message": settings.API_TITLE,
            "version": settings.API_VERSION,
            "docs": "/docs",
        }

    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
