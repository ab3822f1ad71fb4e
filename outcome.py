"""
Uniform result values for REST calls.

Every dispatched call ends as either ``Success`` or ``Failure``; expected
per-call problems are never raised. Exceptions here are reserved for
programmer errors detected at construction time.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class FailureKind(str, Enum):
    NOT_INITIALIZED = "not_initialized"
    AUTH_EXPIRED = "auth_expired"
    AUTH_UNAVAILABLE = "auth_unavailable"
    REMOTE_VALIDATION = "remote_validation"
    RATE_LIMITED = "rate_limited"
    REMOTE_ERROR = "remote_error"
    TRANSPORT = "transport"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class Success:
    """Unwrapped ``result`` of a REST call plus its paging/timing metadata."""
    payload: Any = None
    total: int | None = None
    next: int | None = None
    time: dict | None = None

    @property
    def is_success(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    """A call that did not produce a result."""
    kind: FailureKind
    message: str = ""
    raw_response: dict | None = None
    status: int | None = None

    @property
    def is_success(self) -> bool:
        return False

    def __str__(self) -> str:
        if self.status is not None:
            return f"{self.kind.value} (HTTP {self.status}): {self.message}"
        return f"{self.kind.value}: {self.message}"


CallOutcome = Success | Failure


class B24Error(Exception):
    """Base class for errors raised (not returned) by this client."""

    kind: FailureKind = FailureKind.MALFORMED


class MalformedWebhookError(B24Error, ValueError):
    """Raised when a webhook URL does not match ``scheme://domain/rest/{id}/{secret}``."""

    kind = FailureKind.MALFORMED


class NotInitializedError(B24Error, RuntimeError):
    """Raised when the client facade is used before construction completed."""

    kind = FailureKind.NOT_INITIALIZED


class AuthRefreshError(B24Error):
    """Raised when a token exchange against the authorization server fails."""

    kind = FailureKind.AUTH_UNAVAILABLE
