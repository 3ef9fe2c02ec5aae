"""Order-core error taxonomy.

Every error carries a human-readable ``message`` for the caller and an optional
``detail`` for diagnostics. ``status_code`` is the HTTP status the API layer
answers with.
"""

from __future__ import annotations

from contextlib import contextmanager

from fastapi import status
from sqlalchemy.exc import SQLAlchemyError


class OrderError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = False

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(OrderError):
    """Malformed, empty or illegal input."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(OrderError):
    """Referenced order or menu item does not exist."""

    status_code = status.HTTP_404_NOT_FOUND


class UnavailableError(OrderError):
    """Menu item exists but cannot be ordered right now."""

    status_code = status.HTTP_409_CONFLICT


class StoreError(OrderError):
    """Transaction or connection failure. Raised only after rollback."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = True


@contextmanager
def store_errors(message: str):
    """Re-raise SQLAlchemy failures from read-only store calls as StoreError."""
    try:
        yield
    except SQLAlchemyError as exc:
        raise StoreError(message, detail=str(exc)) from exc


__all__ = ["NotFoundError", "OrderError", "StoreError", "UnavailableError", "ValidationError", "store_errors"]
