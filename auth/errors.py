"""
auth/errors.py -- Error taxonomy for the auth core.

Expected failures (bad credential, expired token, throttled caller) are
represented by AuthError / RateLimitError instances. Validators, strategies
and the dispatcher RETURN them as values; only the FastAPI dependency layer
raises them so the exception handler can render the error envelope. Callers
check with isinstance():

    result = dispatcher.authenticate(creds)
    if isinstance(result, AuthError):
        ...

ValidationError is raised (never returned) for malformed inputs to issuance,
refresh or credential creation. StoreUnavailableError is the one fatal error:
it propagates to top-level request handling, which renders a generic 500.

Layer rule: no imports from api/, core/ or cache/.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Outward-facing error kinds with their HTTP status equivalents."""

    AUTH_MISSING = "auth_missing"
    AUTH_INVALID = "auth_invalid"
    AUTH_EXPIRED = "auth_expired"
    AUTH_REVOKED = "auth_revoked"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"

    @property
    def status(self) -> int:
        return _STATUS[self]


_STATUS = {
    ErrorKind.AUTH_MISSING: 401,
    ErrorKind.AUTH_INVALID: 401,
    ErrorKind.AUTH_EXPIRED: 401,
    ErrorKind.AUTH_REVOKED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.RATE_LIMITED: 429,
}

_DEFAULT_MESSAGES = {
    ErrorKind.AUTH_MISSING: "Authentication credentials were not provided.",
    ErrorKind.AUTH_INVALID: "Invalid authentication credentials.",
    ErrorKind.AUTH_EXPIRED: "Authentication credentials have expired.",
    ErrorKind.AUTH_REVOKED: "Authentication credentials have been revoked.",
    ErrorKind.FORBIDDEN: "You do not have permission to perform this action.",
    ErrorKind.RATE_LIMITED: "Rate limit exceeded.",
}


class AuthError(Exception):
    """An authentication or authorization failure.

    challenge is the WWW-Authenticate value for 401 responses, filled in by
    the strategy that rejected the credential (None when no strategy applied).
    """

    def __init__(self, kind: ErrorKind, message: str = "", challenge: Optional[str] = None) -> None:
        self.kind = kind
        self.message = message or _DEFAULT_MESSAGES[kind]
        self.challenge = challenge
        super().__init__(self.message)

    @property
    def status(self) -> int:
        return self.kind.status

    def __repr__(self) -> str:
        return f"AuthError({self.kind.name}, {self.message!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AuthError):
            return NotImplemented
        return self.kind == other.kind and self.message == other.message

    __hash__ = Exception.__hash__


class RateLimitError(AuthError):
    """Caller exceeded a rate limit. Always retryable after retry_after seconds."""

    def __init__(self, retry_after: int, subject: str = "", message: str = "") -> None:
        super().__init__(ErrorKind.RATE_LIMITED, message)
        self.retry_after = max(1, int(retry_after))
        self.subject = subject

    def __repr__(self) -> str:
        return f"RateLimitError(retry_after={self.retry_after}, subject={self.subject!r})"


class ValidationError(ValueError):
    """Malformed input to an issuance, refresh or creation operation.

    errors maps field name -> human-readable message, e.g.
    {"user_id": "must be a positive integer"}.
    """

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = dict(errors)
        summary = "; ".join(f"{field}: {msg}" for field, msg in self.errors.items())
        super().__init__(f"Validation failed: {summary}")


class StoreUnavailableError(RuntimeError):
    """The persistent store could not be reached within the configured timeout.

    Never caught inside the auth core: an authentication decision that cannot
    consult the store is a denial, surfaced as a 500 by the API layer.
    """


class CacheUnavailableError(RuntimeError):
    """The cache backend failed or timed out. The cache is non-authoritative,
    so callers fall back to the store or to their configured fail mode."""
