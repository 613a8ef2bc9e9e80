"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Turns a request into an Identity through AuthService (app.state.auth):

  Authorization header     Bearer / Key / Basic
  X-API-Key header         API key
  api_key query parameter  API key

get_identity() raises the AuthError the dispatcher returned, and the
exception handler in api/main.py renders it. require_fresh_identity() adds
the lease check for sensitive operations.

Layer rule: auth/dependencies.py may import from fastapi (for Depends/Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.dispatcher import RequestCredentials
from auth.errors import AuthError
from auth.models import Identity
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth


def request_credentials(request: Request) -> RequestCredentials:
    api_key = request.headers.get("X-API-Key") or request.query_params.get("api_key")
    return RequestCredentials(
        authorization=request.headers.get("Authorization"),
        api_key=api_key,
        client_ip=request.client.host if request.client else None,
    )


def get_identity(request: Request) -> Identity:
    """Require authentication. Raises AuthError (401/429) on failure.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_identity)): ...

    On success the caller's rate-limit position is stashed on request.state
    so the response middleware can emit X-RateLimit-* headers.
    """
    service = get_auth_service(request)
    result = service.authenticate(request_credentials(request))
    if isinstance(result, AuthError):
        raise result
    request.state.rate_limit = service.dispatcher.rate_limit_status(result)
    return result


def require_fresh_identity(request: Request, identity: Identity = Depends(get_identity)) -> Identity:
    """Require an identity whose JWT lease is still fresh (see JwtSettings.lease_ttl)."""
    error = get_auth_service(request).require_lease(identity)
    if error is not None:
        raise error
    return identity
