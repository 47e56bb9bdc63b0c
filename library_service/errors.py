"""
Error kinds returned by the services and their HTTP status codes.

Business-rule violations (conflict, unavailable, limit exceeded) are
ordinary outcomes, not exceptions: services hand back an ``Outcome`` and the
HTTP layer decides what status to send.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    VALIDATION = "validation"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    LIMIT_EXCEEDED = "limit_exceeded"
    INTERNAL = "internal"


HTTP_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 400,
    ErrorKind.UNAVAILABLE: 400,
    ErrorKind.LIMIT_EXCEEDED: 400,
    ErrorKind.INTERNAL: 500,
}


@dataclass
class Outcome:
    value: Any = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.error] if self.error else 200


def success(value: Any = None) -> Outcome:
    return Outcome(value=value)


def failure(kind: ErrorKind, message: str) -> Outcome:
    return Outcome(error=kind, message=message)
