"""
Trigger handlers -- the entry points a scheduler (or a person) calls.

Contract:
    ``process_recurring()`` and ``check_recurring()`` are transport-agnostic:
    they take the raw ``Authorization`` header value and return a
    ``TriggerResponse`` (HTTP-style status code + JSON-ready body).  The HTTP
    app and the CLI both delegate here.

    Checks run in this order, and each failure stops the invocation before
    the next step:

        1. configuration  (DATABASE_URL, CRON_SECRET)   -> 500 CONFIGURATION_ERROR
        2. authorization  (Bearer <CRON_SECRET>)         -> 401 UNAUTHORIZED
        3. request        (asOf parses as a timestamp)   -> 400 VALIDATION_ERROR
        4. store access   (selection, per-item work)     -> 500 TRANSIENT_STORE_ERROR

    Invocation-level failures produce ``{"success": false, "error", "code"}``.
    Per-template failures never surface here; they are items in the summary.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledger_kernel.config import Settings, load_settings
from ledger_kernel.db.engine import get_session_factory, init_engine_from_url
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.exceptions import (
    AuthorizationError,
    ConfigurationError,
    LedgerError,
    StoreError,
    TransientStoreError,
    ValidationError,
)
from ledger_kernel.logging_config import LogContext, get_logger

from ledger_recurring.domain.recurrence import as_utc
from ledger_recurring.selectors.recurring_selector import RecurringSelector
from ledger_recurring.services.runner import RecurringJobRunner

logger = get_logger("recurring.trigger")

SessionFactory = Callable[[], Session]


@dataclass(frozen=True)
class TriggerResponse:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def _status_for(exc: LedgerError) -> int:
    if isinstance(exc, AuthorizationError):
        return 401
    if isinstance(exc, ValidationError):
        return 400
    return 500


def _failure(exc: LedgerError) -> TriggerResponse:
    return TriggerResponse(
        status_code=_status_for(exc),
        body={"success": False, "error": str(exc), "code": exc.code},
    )


def authorize(authorization: str | None, secret: str) -> None:
    """Constant-time check of ``Authorization: Bearer <secret>``.

    Raises:
        AuthorizationError: Header missing, malformed, or wrong secret.
    """
    if not authorization:
        raise AuthorizationError("Unauthorized")
    expected = f"Bearer {secret}"
    if not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise AuthorizationError("Unauthorized")


def parse_as_of(value: datetime | str | None, clock: Clock) -> datetime:
    """Resolve the pass's reference time; naive values are taken as UTC.

    Raises:
        ValidationError: ``value`` is a string that is not an ISO timestamp.
    """
    if value is None or value == "":
        return clock.now_utc()
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"asOf is not an ISO-8601 timestamp: {value!r}") from None
    return as_utc(value)


def _resolve_session_factory(settings: Settings) -> SessionFactory:
    try:
        return get_session_factory()
    except RuntimeError:
        logger.info("recurring_engine_lazy_init")
    try:
        init_engine_from_url(settings.database_url, echo=settings.sql_echo)
    except SQLAlchemyError as exc:
        raise ConfigurationError(
            f"DATABASE_URL is not usable: {exc}", keys=("database_url",),
        ) from exc
    return get_session_factory()


def _prepare(
    authorization: str | None,
    settings: Settings | None,
) -> Settings:
    settings = settings or load_settings()
    settings.require("database_url", "cron_secret")
    authorize(authorization, settings.cron_secret)
    return settings


def process_recurring(
    authorization: str | None,
    as_of: datetime | str | None = None,
    *,
    settings: Settings | None = None,
    session_factory: SessionFactory | None = None,
    clock: Clock | None = None,
    trigger: str = "http",
) -> TriggerResponse:
    """Run one recurring pass on behalf of an external trigger."""
    clock = clock or SystemClock()
    with LogContext.bind(correlation_id=str(uuid4()), trigger=trigger):
        try:
            settings = _prepare(authorization, settings)
            now = parse_as_of(as_of, clock)
            factory = session_factory or _resolve_session_factory(settings)
            runner = RecurringJobRunner.from_settings(settings, factory, clock=clock)
            summary = runner.run_pass(
                now=now, deadline_seconds=settings.pass_timeout_seconds,
            )
        except AuthorizationError as exc:
            logger.warning("recurring_trigger_unauthorized")
            return _failure(exc)
        except (ConfigurationError, ValidationError) as exc:
            logger.error(
                "recurring_trigger_rejected",
                extra={"error_code": exc.code, "reason": str(exc)},
            )
            return _failure(exc)
        except StoreError as exc:
            logger.error("recurring_trigger_store_failure", exc_info=True)
            return _failure(exc)

    return TriggerResponse(status_code=200, body=summary.to_response())


def check_recurring(
    authorization: str | None,
    *,
    settings: Settings | None = None,
    session_factory: SessionFactory | None = None,
    clock: Clock | None = None,
    recent_limit: int | None = None,
    trigger: str = "http",
) -> TriggerResponse:
    """Read-only report: all templates, the due subset, recent entries."""
    clock = clock or SystemClock()
    with LogContext.bind(correlation_id=str(uuid4()), trigger=trigger):
        try:
            settings = _prepare(authorization, settings)
            factory = session_factory or _resolve_session_factory(settings)
        except AuthorizationError as exc:
            logger.warning("recurring_check_unauthorized")
            return _failure(exc)
        except ConfigurationError as exc:
            logger.error(
                "recurring_check_rejected",
                extra={"error_code": exc.code, "reason": str(exc)},
            )
            return _failure(exc)

        session = factory()
        try:
            report = RecurringSelector(session).report(
                clock.now_utc(),
                recent_limit=recent_limit or settings.recent_limit,
            )
        except SQLAlchemyError as exc:
            logger.error("recurring_check_store_failure", exc_info=True)
            return _failure(TransientStoreError("check_recurring", str(exc)))
        finally:
            session.close()

        logger.info(
            "recurring_check_completed",
            extra={
                "total": len(report.templates),
                "pending": len(report.pending),
            },
        )

    return TriggerResponse(status_code=200, body=report.to_response())
