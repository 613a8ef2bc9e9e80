"""
auth/dispatcher.py -- Picks the strategy for a request and applies rate limits.

Selection order (first match wins):
  1. explicit API key (X-API-Key header or api_key query parameter)
  2. Authorization: Bearer <jwt>
  3. Authorization: Key <api key>
  4. Authorization: Basic <base64(user:app_password)>

Strategies for disabled methods are never registered, so their credentials
fall through as if absent and end in AUTH_MISSING.

Rate-limit layers, all of which must pass:
  ip:<addr>       before the credential is looked at
  <credential>    after success: the API key's own limit, or the per-user
                  app-password limit
  user:<id>       after success
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from auth.errors import AuthError, ErrorKind, RateLimitError
from auth.models import AuthMethod, Identity
from auth.ratelimit import RateLimited, RateLimiter
from core.config import Settings

logger = logging.getLogger("restwarden.dispatcher")


@dataclass(frozen=True)
class RequestCredentials:
    """What the routing layer extracted from the request. All fields optional."""

    authorization: Optional[str] = None
    api_key: Optional[str] = None
    client_ip: Optional[str] = None


_SCHEMES = {
    "bearer": AuthMethod.JWT,
    "key": AuthMethod.API_KEY,
    "basic": AuthMethod.APP_PASSWORD,
}


class AuthDispatcher:
    def __init__(self, settings: Settings, strategies, rate_limiter: RateLimiter) -> None:
        self.settings = settings
        self.strategies = {s.method: s for s in strategies}
        self.rate_limiter = rate_limiter

    def select(self, creds: RequestCredentials):
        """Return (strategy, raw_credential) or None if nothing recognisable was sent."""
        api_strategy = self.strategies.get(AuthMethod.API_KEY)
        if creds.api_key and creds.api_key.strip() and api_strategy is not None:
            return api_strategy, creds.api_key.strip()

        header = (creds.authorization or "").strip()
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        method = _SCHEMES.get(scheme.lower())
        strategy = self.strategies.get(method) if method is not None else None
        if strategy is None:
            return None
        return strategy, value.strip()

    def challenge(self) -> str:
        """WWW-Authenticate value listing every enabled scheme."""
        return ", ".join(s.challenge() for s in self.strategies.values())

    def authenticate(self, creds: RequestCredentials) -> Union[Identity, AuthError]:
        limits = self.settings.rate_limiting
        if limits.enabled and creds.client_ip:
            denied = self._check(f"ip:{creds.client_ip}", limits.per_ip, limits.per_ip_window)
            if denied is not None:
                return denied

        selected = self.select(creds)
        if selected is None:
            return AuthError(ErrorKind.AUTH_MISSING, challenge=self.challenge() or None)
        strategy, raw = selected
        if not raw:
            return AuthError(ErrorKind.AUTH_INVALID, "Empty credential.", challenge=strategy.challenge())

        result = strategy.authenticate(raw, creds.client_ip)
        if isinstance(result, AuthError):
            logger.debug("Auth rejected method=%s kind=%s ip=%s", strategy.method.value, result.kind.value, creds.client_ip)
            return result

        if limits.enabled:
            for subject, limit, window in self.layers(result):
                denied = self._check(subject, limit, window)
                if denied is not None:
                    return denied
        logger.debug("Auth ok method=%s user_id=%d", result.method.value, result.user_id)
        return result

    def layers(self, identity: Identity) -> list[tuple[str, int, int]]:
        """Post-auth rate-limit layers for an identity, tightest first."""
        limits = self.settings.rate_limiting
        result = []
        strategy = self.strategies.get(identity.method)
        own = strategy.credential_limit(identity) if strategy is not None else None
        if own is not None:
            result.append(own)
        limit, window = limits.user_limit(identity.roles)
        result.append((f"user:{identity.user_id}", limit, window))
        return result

    def rate_limit_status(self, identity: Identity) -> Optional[dict[str, int]]:
        """X-RateLimit-* values for the first layer that applies to this identity."""
        if not self.settings.rate_limiting.enabled:
            return None
        subject, limit, window = self.layers(identity)[0]
        return self.rate_limiter.status(subject, limit, window)

    def _check(self, subject: str, limit: int, window: int) -> Optional[RateLimitError]:
        verdict = self.rate_limiter.check_and_increment(subject, limit, window)
        if isinstance(verdict, RateLimited):
            return RateLimitError(verdict.retry_after, subject=subject)
        return None
