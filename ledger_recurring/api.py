"""
FastAPI application for the recurring processor.

Routes:
    GET|POST /api/cron/process-recurring   run one pass (``?asOf=`` optional)
    GET      /api/cron/check-recurring     diagnostic report
    GET      /health                       liveness

Both cron routes require ``Authorization: Bearer <CRON_SECRET>``.  All work
is delegated to ``ledger_recurring.trigger``; this module only maps
``TriggerResponse`` onto HTTP.

The module builds no app at import time.  Serve it with
``ledger-recurring serve`` or ``uvicorn ledger_recurring.api:create_app --factory``.
"""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ledger_kernel.config import Settings
from ledger_kernel.domain.clock import Clock
from ledger_kernel.logging_config import configure_logging

from ledger_recurring import __version__
from ledger_recurring.trigger import (
    SessionFactory,
    TriggerResponse,
    check_recurring,
    process_recurring,
)


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str


router = APIRouter(tags=["Recurring"])


def _json(response: TriggerResponse) -> JSONResponse:
    return JSONResponse(status_code=response.status_code, content=response.body)


@router.api_route("/api/cron/process-recurring", methods=["GET", "POST"])
def process_recurring_route(
    request: Request,
    authorization: str | None = Header(default=None),
    as_of: str | None = Query(default=None, alias="asOf"),
) -> JSONResponse:
    state = request.app.state
    return _json(
        process_recurring(
            authorization,
            as_of,
            settings=state.settings,
            session_factory=state.session_factory,
            clock=state.clock,
            trigger="http",
        )
    )


@router.get("/api/cron/check-recurring")
def check_recurring_route(
    request: Request,
    authorization: str | None = Header(default=None),
    limit: int | None = Query(default=None, ge=1, le=1000),
) -> JSONResponse:
    state = request.app.state
    return _json(
        check_recurring(
            authorization,
            settings=state.settings,
            session_factory=state.session_factory,
            clock=state.clock,
            recent_limit=limit,
            trigger="http",
        )
    )


@router.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(UTC).isoformat(),
        version=__version__,
    )


def create_app(
    settings: Settings | None = None,
    session_factory: SessionFactory | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    With no arguments, settings are resolved from the environment on every
    request and the engine is initialized on first use.
    """
    configure_logging(level=settings.log_level if settings else "INFO")

    app = FastAPI(
        title="Ledger Recurring",
        description="Recurring-transaction processor",
        version=__version__,
    )
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.clock = clock
    app.include_router(router)
    return app

