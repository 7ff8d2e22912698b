"""Translate core failures into HTTP responses."""

from fastapi import HTTPException
from sqlalchemy.orm import Session

from assetflow.errors import (
    AssetFlowError,
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    TransientStorageError,
    ValidationError,
)

_STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (ValidationError, 400),
    (InvalidTransitionError, 400),
    (InvalidStateError, 409),
    (ForbiddenError, 403),
    (TransientStorageError, 503),
)


def status_for_error(exc: AssetFlowError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def raise_http_error(db: Session, exc: AssetFlowError) -> None:
    """Roll back the request transaction and re-raise ``exc`` as an HTTPException."""
    db.rollback()
    raise HTTPException(
        status_code=status_for_error(exc),
        detail=exc.message,
        headers={"X-Error-Reason": exc.reason},
    )
