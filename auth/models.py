"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond trivial derived
properties). Stores and the lifecycle manager do the work.

Timestamps are integer epoch seconds throughout -- they come from the
injected Clock and are compared against JWT claims, which are also integers.

Layer rule: no imports from api/, core/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

TOKEN_ACCESS = "access"
TOKEN_REFRESH = "refresh"


class AuthMethod(str, Enum):
    JWT = "jwt"
    API_KEY = "api_key"
    APP_PASSWORD = "app_password"


@dataclass
class User:
    """The account a credential resolves to.

    Users are owned by the host application; the auth core only reads them
    (plus create_user for bootstrap and tests). roles is ordered but the
    policy engine treats it as a set.
    """

    username: str
    roles: list[str] = field(default_factory=lambda: ["subscriber"])
    id: Optional[int] = None
    hashed_password: Optional[str] = None
    created_at: Optional[int] = None
    is_active: bool = True


@dataclass
class Token:
    """Store record for an issued JWT (access or refresh).

    The signed JWT itself is never persisted -- token_id is its jti claim.
    replaced_by is set only on refresh tokens consumed by rotation and points
    at the successor refresh token. session_id is shared by every token
    derived from one login.
    """

    token_id: str
    user_id: int
    token_type: str  # "access" | "refresh"
    issued_at: int
    expires_at: Optional[int]  # None = non-expiring
    session_id: str = ""
    revoked: bool = False
    revoked_at: Optional[int] = None
    replaced_by: Optional[str] = None


@dataclass
class TokenPair:
    """Result of issue_tokens() / refresh(): two signed JWTs plus their records."""

    access_token: str
    refresh_token: str
    access: Token
    refresh: Token
    token_type: str = "Bearer"

    @property
    def expires_in(self) -> int:
        return (self.access.expires_at or 0) - self.access.issued_at


@dataclass
class ApiKey:
    """A long-lived credential for non-browser API clients.

    Security design:
    - key_hash is HMAC-SHA256(SECRET_KEY, raw_key). The deterministic hash
      gives an O(1) indexed lookup; 256-bit random keys make bcrypt's
      slowness unnecessary.
    - key_prefix (first 12 chars of the raw key) is stored for display only.
    - The raw key is never persisted. It is returned once at creation.
    - scopes empty means full account scope.
    - is_revoked only ever goes False -> True; revoked keys are kept for audit.
    """

    user_id: int
    name: str
    key_hash: str
    key_prefix: str
    scopes: list[str] = field(default_factory=list)
    id: Optional[int] = None
    created_at: Optional[int] = None
    expires_at: Optional[int] = None
    last_used: Optional[int] = None
    last_ip: Optional[str] = None
    rate_limit: Optional[int] = None
    rate_limit_window: Optional[int] = None
    is_revoked: bool = False


@dataclass
class AppPassword:
    """A per-application password used with HTTP Basic auth.

    password_hash is bcrypt -- app passwords are checked one by one against
    the user's active set, so there is no need for a lookup hash.
    """

    user_id: int
    name: str
    password_hash: str
    id: Optional[int] = None
    created_at: Optional[int] = None
    last_used: Optional[int] = None
    last_ip: Optional[str] = None
    is_revoked: bool = False


@dataclass(frozen=True)
class Identity:
    """The authenticated principal for one request. Never persisted.

    One type for every auth method, tagged by `method`, so the policy engine
    never needs to know which strategy authenticated the caller.

    credential_id is the token jti, API key id or app password id.
    issued_at is set for JWT identities only; the lease check reads it.
    """

    user_id: int
    username: str
    method: AuthMethod
    roles: tuple[str, ...] = ()
    scopes: frozenset[str] = frozenset()
    credential_id: Optional[str] = None
    session_id: Optional[str] = None
    issued_at: Optional[int] = None

    @property
    def full_scope(self) -> bool:
        return not self.scopes
