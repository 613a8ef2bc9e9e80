"""
api/main.py -- FastAPI application entry point for Restwarden.

Exposes the auth core over HTTP: login, refresh, logout, credential
management and policy checks. Resource routes of the host application call
the same Depends() helpers from auth/dependencies.py.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (settings, stores, cache, AuthService, sweep task)
and shutdown (cancel sweep task, close stores) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError, CacheUnavailableError, RateLimitError, StoreUnavailableError, ValidationError
from auth.service import AuthService
from core.config import get_settings

VERSION = "0.1.0"
SWEEP_INTERVAL_SECONDS = 60 * 60

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("restwarden.api")

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI) -> None:
    """Delete long-expired token records and purge the cache every hour.

    The sweep does blocking store I/O, so it runs in the default executor.
    A failed sweep is logged and retried at the next interval; the task only
    ends on cancellation.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    loop = asyncio.get_running_loop()
    while True:
        await asyncio.sleep(SWEEP_INTERVAL_SECONDS)
        try:
            await loop.run_in_executor(None, app.state.auth.sweep)
        except StoreUnavailableError:
            logger.warning("Retention sweep skipped: store unavailable")
        except CacheUnavailableError:
            logger.warning("Retention sweep incomplete: cache unavailable")
        except Exception:
            logger.exception("Retention sweep failed; retrying next interval")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the AuthService on startup and tear it down on shutdown.

    Settings are validated first: a production deployment without
    SECRET_KEY or a signing key fails here, before serving any request.
    """
    logger.info("Restwarden API starting up")
    settings = get_settings()
    app.state.auth = AuthService.from_settings(settings)
    if not app.state.auth.users.has_users():
        logger.warning("No users exist yet. Create one with `python main.py create-user`.")
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app))

    yield

    app.state.sweep_task.cancel()
    app.state.auth.close()
    logger.info("Restwarden API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Restwarden API",
    description="Authentication and authorization core: JWT, API keys, app passwords, rate limits, role policy.",
    version=VERSION,
    lifespan=lifespan,
)

# Settings are loaded here, at import: the middleware stack is fixed before
# lifespan runs, and a misconfigured deployment fails before serving.
app.add_middleware(TrustedHostMiddleware, allowed_hosts=get_settings().allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    expose_headers=["WWW-Authenticate", "Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging + rate-limit headers
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    status = getattr(request.state, "rate_limit", None)
    if status:
        response.headers["X-RateLimit-Limit"] = str(status["limit"])
        response.headers["X-RateLimit-Remaining"] = str(status["remaining"])
        response.headers["X-RateLimit-Reset"] = str(status["reset"])
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render an AuthError / RateLimitError raised by a dependency or route.

    401s carry WWW-Authenticate so clients know which scheme to retry with;
    429s carry Retry-After.
    """
    response = _error(exc.status, exc.kind.value, exc.message)
    if isinstance(exc, RateLimitError):
        response.headers["Retry-After"] = str(exc.retry_after)
    elif exc.status == 401:
        response.headers["WWW-Authenticate"] = exc.challenge or f'Bearer realm="{request.app.title}"'
    return response


@app.exception_handler(ValidationError)
async def auth_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Return 422 for malformed issuance / refresh / creation input."""
    detail = "; ".join(f"{field}: {msg}" for field, msg in exc.errors.items())
    return _error(422, "validation_error", "Request validation failed.", detail)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when a slowapi route limit (login) is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail; use it directly as the error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors, StoreUnavailableError included.

    The raw exception is logged, never written to the response body. An
    auth decision that could not be made is a denial, never an allow.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable. No rate limit --
# health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness plus the state of the backing store."""
    try:
        database = "ok" if request.app.state.auth.users.ping() else "error"
    except StoreUnavailableError:
        database = "error"
    status = "healthy" if database == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components={"app": "ok", "database": database})
