"""
api/routes/v1/auth.py -- Authentication and credential management REST endpoints.

Routes:
  POST   /api/v1/auth/login                 -- password login; returns a token pair
  POST   /api/v1/auth/refresh               -- rotate a refresh token
  POST   /api/v1/auth/logout                -- revoke the caller's session
  GET    /api/v1/auth/sessions              -- list the caller's live login sessions
  DELETE /api/v1/auth/sessions              -- revoke every token of the caller (fresh lease)
  GET    /api/v1/auth/me                    -- current identity
  GET    /api/v1/auth/verify                -- 200 if the presented credential is valid
  POST   /api/v1/auth/api-keys              -- create API key (fresh lease)
  GET    /api/v1/auth/api-keys              -- list caller's API keys
  DELETE /api/v1/auth/api-keys/{id}         -- revoke key (ownership checked)
  POST   /api/v1/auth/app-passwords         -- create app password (fresh lease)
  DELETE /api/v1/auth/app-passwords/{id}    -- revoke app password (ownership checked)
  POST   /api/v1/auth/authorize             -- policy decision for (action, owner)

Security:
  [H2] POST /login is rate-limited per IP by slowapi (settings.login_rate_limit).
  [C1] AuthService.login() goes through authenticate_user() timing equalization.
  [M5] Cache-Control: no-store on every response that carries a secret.
  IDOR guard: DELETE routes pass the caller's user_id to the store; the store
  checks ownership.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.limiter import limiter
from api.models import (
    ApiKeyCreate,
    ApiKeyCreatedResponse,
    ApiKeyResponse,
    AppPasswordCreate,
    AppPasswordCreatedResponse,
    AuthorizeRequest,
    DecisionResponse,
    LoginRequest,
    MeResponse,
    RefreshRequest,
    RevokedResponse,
    SessionResponse,
    TokenResponse,
    VerifyResponse,
)
from auth.dependencies import get_auth_service, get_identity, require_fresh_identity
from auth.errors import AuthError, ErrorKind
from auth.models import ApiKey, Identity, TokenPair
from auth.service import AuthService
from core.config import get_settings

router = APIRouter()


def _login_limit() -> str:
    return get_settings().login_rate_limit


def _token_response(pair: TokenPair, response: Response) -> TokenResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
    )


def _api_key_fields(key: ApiKey) -> dict:
    return {
        "id": key.id,
        "name": key.name,
        "key_prefix": key.key_prefix,
        "scopes": list(key.scopes),
        "created_at": key.created_at,
        "expires_at": key.expires_at,
        "last_used": key.last_used,
        "last_ip": key.last_ip,
        "rate_limit": key.rate_limit,
        "rate_limit_window": key.rate_limit_window,
        "is_revoked": key.is_revoked,
    }


# ---------------------------------------------------------------------------
# Token endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, response: Response, body: LoginRequest) -> TokenResponse:
    """Exchange username + account password for an access/refresh pair.

    The same generic error is returned for unknown username and wrong
    password so the response does not reveal which accounts exist.
    """
    result = get_auth_service(request).login(body.username, body.password)
    if isinstance(result, AuthError):
        raise result
    return _token_response(result, response)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, response: Response, body: RefreshRequest) -> TokenResponse:
    """Single-use refresh token rotation. A replayed token is AUTH_REVOKED."""
    result = get_auth_service(request).refresh(body.refresh_token)
    if isinstance(result, AuthError):
        raise result
    return _token_response(result, response)


@router.post("/auth/logout", response_model=RevokedResponse)
def logout(request: Request, identity: Identity = Depends(get_identity)) -> RevokedResponse:
    """Revoke every token of the caller's login session."""
    return RevokedResponse(revoked=get_auth_service(request).logout(identity))


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, identity: Identity = Depends(get_identity)) -> list[SessionResponse]:
    """Live login sessions of the caller; `current` marks the one presenting this token."""
    sessions = get_auth_service(request).lifecycle.list_sessions(identity.user_id)
    return [
        SessionResponse(
            session_id=t.session_id,
            issued_at=t.issued_at,
            expires_at=t.expires_at,
            current=t.session_id == identity.session_id,
        )
        for t in sessions
    ]


@router.delete("/auth/sessions", response_model=RevokedResponse)
def revoke_all_sessions(request: Request, identity: Identity = Depends(require_fresh_identity)) -> RevokedResponse:
    """Sign out everywhere: revoke all of the caller's active tokens."""
    service = get_auth_service(request)
    return RevokedResponse(revoked=service.lifecycle.revoke_user_tokens(identity.user_id))


@router.get("/auth/me", response_model=MeResponse)
def me(identity: Identity = Depends(get_identity)) -> MeResponse:
    """Return identity information for the authenticated caller."""
    return MeResponse(
        user_id=identity.user_id,
        username=identity.username,
        roles=list(identity.roles),
        method=identity.method.value,
        scopes=sorted(identity.scopes),
        session_id=identity.session_id,
    )


@router.get("/auth/verify", response_model=VerifyResponse)
def verify(identity: Identity = Depends(get_identity)) -> VerifyResponse:
    return VerifyResponse(user_id=identity.user_id, method=identity.method.value)


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


@router.post("/auth/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
def create_api_key(
    request: Request,
    response: Response,
    body: ApiKeyCreate,
    identity: Identity = Depends(require_fresh_identity),
) -> ApiKeyCreatedResponse:
    """Generate a new API key. The raw key is shown ONCE and never stored.

    [H3] At most 10 active keys per user; the lifecycle manager enforces it.
    """
    service: AuthService = get_auth_service(request)
    raw_key, key = service.create_api_key(
        identity.user_id,
        body.name,
        body.scopes,
        expires_at=body.expires_at,
        rate_limit=body.rate_limit,
        rate_limit_window=body.rate_limit_window,
    )
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return ApiKeyCreatedResponse(key=raw_key, **_api_key_fields(key))


@router.get("/auth/api-keys", response_model=list[ApiKeyResponse])
def list_api_keys(request: Request, identity: Identity = Depends(get_identity)) -> list[ApiKeyResponse]:
    """List the caller's active API keys. Raw key values are never returned."""
    keys = get_auth_service(request).lifecycle.list_api_keys(identity.user_id)
    return [ApiKeyResponse(**_api_key_fields(k)) for k in keys]


@router.delete("/auth/api-keys/{key_id}", status_code=204)
def revoke_api_key(request: Request, key_id: int, identity: Identity = Depends(get_identity)) -> Response:
    """Revoke an API key. Idempotent for the owner; 404 for anyone else."""
    if not get_auth_service(request).lifecycle.revoke_api_key(key_id, identity.user_id):
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "API key not found."})
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# App passwords
# ---------------------------------------------------------------------------


@router.post("/auth/app-passwords", response_model=AppPasswordCreatedResponse, status_code=201)
def create_app_password(
    request: Request,
    response: Response,
    body: AppPasswordCreate,
    identity: Identity = Depends(require_fresh_identity),
) -> AppPasswordCreatedResponse:
    service: AuthService = get_auth_service(request)
    if not service.settings.method_enabled("app_password"):
        raise HTTPException(
            status_code=400,
            detail={"code": "method_disabled", "message": "Application passwords are disabled."},
        )
    plain, record = service.lifecycle.create_app_password(identity.user_id, body.name)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return AppPasswordCreatedResponse(id=record.id, name=record.name, password=plain, created_at=record.created_at)


@router.delete("/auth/app-passwords/{app_password_id}", status_code=204)
def revoke_app_password(request: Request, app_password_id: int, identity: Identity = Depends(get_identity)) -> Response:
    if not get_auth_service(request).lifecycle.revoke_app_password(app_password_id, identity.user_id):
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "App password not found."})
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


@router.post("/auth/authorize", response_model=DecisionResponse)
def authorize(request: Request, body: AuthorizeRequest, identity: Identity = Depends(get_identity)) -> DecisionResponse:
    """Ask the policy engine whether the caller may perform action on a resource.

    200 with the decision when allowed, 403 FORBIDDEN when denied.
    """
    decision = get_auth_service(request).authorize(identity, body.resource_owner_id, body.action)
    if not decision.allowed:
        raise AuthError(ErrorKind.FORBIDDEN, decision.reason)
    return DecisionResponse(allowed=True, reason=decision.reason)
