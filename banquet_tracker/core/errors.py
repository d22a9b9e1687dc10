"""Error taxonomy shared by the engine, storage adapters and the API layer.

Pure calculators never raise these. Engine operations raise them before the
first write whenever a precondition is unmet; the API maps each class to an
HTTP status via ``http_status``.
"""

from __future__ import annotations

import math
from typing import Any


class BanquetError(Exception):
    """Base class for all engine errors."""

    http_status: int = 400


class ValidationError(BanquetError):
    """Non-numeric, negative or out-of-range input, or an ownership mismatch."""

    http_status = 400


class NotFound(BanquetError):
    """A referenced player, site or boost does not exist."""

    http_status = 404


class InsufficientStock(BanquetError):
    """Requested amount exceeds the stock currently available at the source."""

    http_status = 409

    def __init__(self, requested: float, available: float) -> None:
        super().__init__(f"insufficient stock: requested {requested}, available {math.floor(available)}")
        self.requested = requested
        self.available = available


class ConcurrentUpdate(BanquetError):
    """A snapshot changed underneath an optimistic write."""

    http_status = 409


class StorageFailure(BanquetError):
    """The persistence layer failed or timed out."""

    http_status = 503


class StaleContext(BanquetError):
    """A multi-step read outlived the context it was started for. Never user-visible."""


def require_non_negative_number(value: Any, field: str) -> float:
    """Coerce a user-supplied quantity, rejecting non-numeric, NaN, infinite or negative values."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number") from None
    if math.isnan(number) or math.isinf(number):
        raise ValidationError(f"{field} must be a finite number")
    if number < 0:
        raise ValidationError(f"{field} must be >= 0")
    return number


def require_non_negative_int(value: Any, field: str) -> int:
    number = require_non_negative_number(value, field)
    if number != int(number):
        raise ValidationError(f"{field} must be an integer")
    return int(number)


__all__ = [
    "BanquetError",
    "ValidationError",
    "NotFound",
    "InsufficientStock",
    "ConcurrentUpdate",
    "StorageFailure",
    "StaleContext",
    "require_non_negative_number",
    "require_non_negative_int",
]
