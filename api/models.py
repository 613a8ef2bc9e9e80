"""
API request and response models for the Restwarden REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.policy import ACTIONS
from auth.tokens import MAX_PASSWORD_LENGTH

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    Only the username is trimmed: passwords are compared byte for byte,
    leading and trailing spaces included.
    """

    username: str = Field(min_length=1, max_length=150)
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("username", mode="before")
    @classmethod
    def _strip_username(cls, value):
        return value.strip() if isinstance(value, str) else value


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class ApiKeyCreate(BaseModel):
    """Request body for POST /api/v1/auth/api-keys."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    scopes: list[str] = Field(default_factory=list, max_length=len(ACTIONS) + 1)
    expires_at: Optional[int] = Field(default=None, description="Epoch seconds. Omit for a non-expiring key.")
    rate_limit: Optional[int] = Field(default=None, gt=0)
    rate_limit_window: Optional[int] = Field(default=None, gt=0)


class AppPasswordCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)


class AuthorizeRequest(BaseModel):
    """Request body for POST /api/v1/auth/authorize.

    resource_owner_id is null for resources that do not exist yet.
    """

    action: str = Field(min_length=1, max_length=32)
    resource_owner_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Response body for login and refresh. Mirrors the OAuth 2.0 token response."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class MeResponse(BaseModel):
    user_id: int
    username: str
    roles: list[str]
    method: str
    scopes: list[str] = Field(default_factory=list)
    session_id: Optional[str] = None


class VerifyResponse(BaseModel):
    valid: bool = True
    user_id: int
    method: str


class ApiKeyResponse(BaseModel):
    """An API key as listed. The raw key is never returned after creation."""

    id: int
    name: str
    key_prefix: str
    scopes: list[str]
    created_at: Optional[int]
    expires_at: Optional[int]
    last_used: Optional[int]
    last_ip: Optional[str]
    rate_limit: Optional[int]
    rate_limit_window: Optional[int]
    is_revoked: bool


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned once from POST /api-keys. key is the only copy of the plaintext."""

    key: str


class AppPasswordCreatedResponse(BaseModel):
    id: int
    name: str
    password: str
    created_at: Optional[int]


class RevokedResponse(BaseModel):
    revoked: int


class SessionResponse(BaseModel):
    session_id: str
    issued_at: int
    expires_at: Optional[int]
    current: bool = False


class DecisionResponse(BaseModel):
    allowed: bool
    reason: str


class ErrorDetail(BaseModel):
    """Inner error object. Every non-2xx response uses this shape."""

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope: {"error": {"code", "message", "detail"}}."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response body for GET /api/v1/health."""

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
