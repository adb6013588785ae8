"""Domain errors.

Every error raised by the market core is a ``MarketError`` tagged with a
machine-readable ``ErrorKind``. The kind maps to a transport-agnostic
``ErrorStatus`` that an outer layer (HTTP, WebSocket, CLI) can translate
however it likes. The per-kind subclasses exist so callers can write
``except ConflictError:``; they carry no behaviour of their own.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorStatus(str, Enum):
    MISSING = "missing"
    INVALID = "invalid"
    CONFLICT = "conflict"
    REJECTED = "rejected"


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    AUCTION = "auction"

    @property
    def status(self) -> ErrorStatus:
        return _STATUS_BY_KIND[self]


_STATUS_BY_KIND: dict[ErrorKind, ErrorStatus] = {
    ErrorKind.NOT_FOUND: ErrorStatus.MISSING,
    ErrorKind.VALIDATION: ErrorStatus.INVALID,
    ErrorKind.CONFLICT: ErrorStatus.CONFLICT,
    ErrorKind.AUCTION: ErrorStatus.REJECTED,
}


class MarketError(Exception):
    kind: ErrorKind = ErrorKind.CONFLICT

    def __init__(self, message: str, *, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    @property
    def status(self) -> ErrorStatus:
        return self.kind.status

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "status": self.status.value, "message": self.message}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class NotFoundError(MarketError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class ValidationError(MarketError):
    kind = ErrorKind.VALIDATION


class ConflictError(MarketError):
    kind = ErrorKind.CONFLICT


class AuctionError(MarketError):
    kind = ErrorKind.AUCTION


def require_positive_int(name: str, value: Any) -> int:
    # bool is an int subclass; True is not a price.
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer, got {value!r}")
    return value
