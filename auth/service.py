"""
auth/service.py -- AuthService: the one object the routing layer talks to.

Wires stores, cache, clock, codec, lifecycle manager, strategies, rate
limiter, dispatcher and policy engine together by constructor injection.
Nothing here reads the environment; build it with from_settings() or hand
in the collaborators directly (tests do the latter).

    service = AuthService.from_settings(get_settings())
    identity = service.authenticate(RequestCredentials(authorization=hdr, client_ip=ip))
    if isinstance(identity, AuthError): ...
    decision = service.authorize(identity, owner_id, "update")
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Union

from auth.dispatcher import AuthDispatcher, RequestCredentials
from auth.errors import AuthError, ErrorKind
from auth.lifecycle import TokenLifecycleManager
from auth.models import ApiKey, AuthMethod, Identity, TokenPair
from auth.policy import Decision, PolicyEngine
from auth.ratelimit import RateLimiter
from auth.store import TokenStore, UserStore
from auth.strategies import ApiKeyStrategy, AppPasswordStrategy, JWTStrategy
from auth.tokens import JwtCodec, authenticate_user
from cache.store import build_cache
from core.clock import Clock, SystemClock
from core.config import Settings

logger = logging.getLogger("restwarden.service")


class AuthService:
    def __init__(
        self,
        settings: Settings,
        users: UserStore,
        tokens: TokenStore,
        cache,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings
        self.users = users
        self.tokens = tokens
        self.cache = cache
        self.clock = clock or SystemClock()

        jwt_cfg = settings.jwt
        self.codec = JwtCodec(jwt_cfg.private_key, jwt_cfg.public_key, jwt_cfg.algorithm, jwt_cfg.issuer, jwt_cfg.audience)
        self.lifecycle = TokenLifecycleManager(settings, tokens, users, self.codec, self.clock, cache=cache)

        limits = settings.rate_limiting
        self.rate_limiter = RateLimiter(
            cache,
            self.clock,
            ban_duration=limits.ban_duration,
            ban_threshold=limits.ban_threshold,
            fail_open=limits.fail_open,
        )

        strategy_types = (
            ("jwt", JWTStrategy),
            ("api_key", ApiKeyStrategy),
            ("app_password", AppPasswordStrategy),
        )
        strategies = [cls(settings, self.lifecycle, users) for name, cls in strategy_types if settings.method_enabled(name)]
        self.dispatcher = AuthDispatcher(settings, strategies, self.rate_limiter)
        self.policy = PolicyEngine.from_settings(settings)
        logger.info("Auth service ready (methods=%s)", ", ".join(s.method.value for s in strategies))

    @classmethod
    def from_settings(cls, settings: Settings, clock: Optional[Clock] = None) -> "AuthService":
        users = UserStore(settings.database_url, timeout=settings.store_timeout)
        tokens = TokenStore(settings.database_url, timeout=settings.store_timeout)
        clock = clock or SystemClock()
        return cls(settings, users, tokens, build_cache(settings, clock), clock)

    # -- Authentication ---------------------------------------------------

    def authenticate(self, creds: RequestCredentials) -> Union[Identity, AuthError]:
        return self.dispatcher.authenticate(creds)

    def login(self, username: str, password: str) -> Union[TokenPair, AuthError]:
        """Primary password login. Issues a new session's token pair."""
        user = authenticate_user(self.users, username, password)
        if user is None:
            logger.info("Login failed for username=%r", username)
            return AuthError(ErrorKind.AUTH_INVALID, "Invalid username or password.")
        return self.lifecycle.issue_tokens(user.id)

    def require_lease(self, identity: Identity) -> Optional[AuthError]:
        """Freshness check for lease-sensitive operations. None means OK.

        Only JWT identities carry a lease. API keys and app passwords are
        deliberate long-lived credentials and pass.
        """
        if identity.method is not AuthMethod.JWT:
            return None
        return self.lifecycle.check_lease(identity.issued_at)

    # -- Authorization ----------------------------------------------------

    def authorize(self, identity: Identity, resource_owner_id: Optional[int], action: str) -> Decision:
        decision = self.policy.authorize(identity, resource_owner_id, action)
        logger.debug(
            "authorize user_id=%d action=%s owner=%s -> %s (%s)",
            identity.user_id,
            action,
            resource_owner_id,
            decision.allowed,
            decision.reason,
        )
        return decision

    # -- Lifecycle --------------------------------------------------------

    def issue_tokens(self, user_id: int) -> TokenPair:
        return self.lifecycle.issue_tokens(user_id)

    def refresh(self, refresh_token: str) -> Union[TokenPair, AuthError]:
        return self.lifecycle.refresh(refresh_token)

    def revoke(self, credential_id: Union[str, int]) -> bool:
        return self.lifecycle.revoke(credential_id)

    def logout(self, identity: Identity) -> int:
        """End the caller's session. Non-JWT identities have nothing to end."""
        if identity.method is AuthMethod.JWT and identity.session_id:
            return self.lifecycle.revoke_session(identity.session_id)
        return 0

    def deactivate_user(self, user_id: int) -> bool:
        """Disable an account and revoke its tokens and API keys.

        App passwords need no revocation: they stop working with the account.
        """
        if not self.users.set_active(user_id, False):
            return False
        self.lifecycle.revoke_user_tokens(user_id)
        self.lifecycle.revoke_user_api_keys(user_id)
        logger.info("User deactivated user_id=%d", user_id)
        return True

    def create_api_key(
        self,
        user_id: int,
        name: str,
        scopes: Iterable[str] = (),
        expires_at: Optional[int] = None,
        rate_limit: Optional[int] = None,
        rate_limit_window: Optional[int] = None,
    ) -> tuple[str, ApiKey]:
        return self.lifecycle.create_api_key(user_id, name, scopes, expires_at, rate_limit, rate_limit_window)

    def sweep(self) -> int:
        """Periodic housekeeping: expired token records and stale cache entries."""
        deleted = self.lifecycle.sweep_expired()
        self.cache.purge_expired()
        return deleted

    def close(self) -> None:
        self.users.close()
        self.tokens.close()
        self.cache.close()
