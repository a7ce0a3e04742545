"""Shared helpers for the HTTP routers."""

import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Dict, Iterator, Optional, Type

from fastapi import HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError

from errors import InvalidTimeRange, LedgerError, NotFound, Overloaded, StorageUnavailable
from ledger import parse_day, parse_instant
from runtime_state import RuntimeState

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: Dict[Type[LedgerError], int] = {
    NotFound: status.HTTP_404_NOT_FOUND,
    InvalidTimeRange: status.HTTP_409_CONFLICT,
    StorageUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    Overloaded: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_runtime_state(request: Request) -> RuntimeState:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "runtime_not_ready", "reason": "service is starting"},
        )
    return runtime


def bad_request(reason: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"error": "bad_request", "reason": reason},
    )


@contextmanager
def ledger_errors(operation: str) -> Iterator[None]:
    """Translate ledger and storage failures into HTTP errors."""
    try:
        yield
    except LedgerError as exc:
        status_code = _STATUS_BY_ERROR.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
        if status_code >= 500:
            logger.warning("%s failed: %s", operation, exc)
        raise HTTPException(status_code=status_code, detail=exc.to_detail()) from exc
    except SQLAlchemyError as exc:
        logger.exception("%s failed", operation)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "storage_error", "reason": f"{operation} failed"},
        ) from exc


def require_day(value: Optional[str], name: str = "date") -> date:
    if not value or not value.strip():
        raise bad_request(f"{name} required")
    try:
        return parse_day(value)
    except ValueError as exc:
        raise bad_request(str(exc)) from exc


def optional_instant(value: Optional[str], name: str) -> Optional[datetime]:
    try:
        return parse_instant(value)
    except ValueError as exc:
        raise bad_request(f"{name}: {exc}") from exc


def require_instant(value: Optional[str], name: str) -> datetime:
    parsed = optional_instant(value, name)
    if parsed is None:
        raise bad_request(f"{name} required")
    return parsed
