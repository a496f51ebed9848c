"""Typed outcomes for expected workflow rejections.

Engine operations never raise for business outcomes; they return either
``Accepted`` or ``Rejected``. The HTTP layer turns a rejection into an
``ApiError`` and the standard error envelope.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Generic, NoReturn, TypeVar, Union

from procureflow.errors import ApiError

T = TypeVar("T")


class RejectionKind(StrEnum):
    NOT_FOUND = "NOT_FOUND"
    TRANSITION_NOT_ALLOWED = "TRANSITION_NOT_ALLOWED"
    PREREQUISITE_NOT_MET = "PREREQUISITE_NOT_MET"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    DOWNSTREAM_BLOCKED = "DOWNSTREAM_BLOCKED"
    DUPLICATE_REQUEST = "DUPLICATE_REQUEST"
    VALIDATION_ERROR = "VALIDATION_ERROR"


# kind -> (http status, error class)
_HTTP_MAPPING: dict[RejectionKind, tuple[int, str]] = {
    RejectionKind.NOT_FOUND: (404, "validation"),
    RejectionKind.TRANSITION_NOT_ALLOWED: (409, "business_rule"),
    RejectionKind.PREREQUISITE_NOT_MET: (409, "business_rule"),
    RejectionKind.PERMISSION_DENIED: (403, "security_sensitive"),
    RejectionKind.DOWNSTREAM_BLOCKED: (403, "business_rule"),
    RejectionKind.DUPLICATE_REQUEST: (409, "validation"),
    RejectionKind.VALIDATION_ERROR: (400, "validation"),
}


@dataclass(frozen=True)
class Rejection:
    kind: RejectionKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        return _HTTP_MAPPING[self.kind][0]

    def to_api_error(self) -> ApiError:
        status, error_class = _HTTP_MAPPING[self.kind]
        return ApiError(
            code=self.kind.value,
            message=self.message,
            error_class=error_class,
            retryable=False,
            http_status=status,
            details=dict(self.details) or None,
        )


@dataclass(frozen=True)
class Accepted(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Rejected:
    rejection: Rejection

    @property
    def ok(self) -> bool:
        return False

    @property
    def kind(self) -> RejectionKind:
        return self.rejection.kind

    def unwrap(self) -> NoReturn:
        raise self.rejection.to_api_error()


Outcome = Union[Accepted[T], Rejected]


def reject(kind: RejectionKind, message: str, **details: Any) -> Rejected:
    return Rejected(Rejection(kind=kind, message=message, details=details))
