"""
auth/lifecycle.py -- Issues, verifies, rotates and revokes credentials.

TokenLifecycleManager is the only writer of the TokenStore (the strategies
stamp last_used through it too). It owns:

  JWT pairs    issue_tokens(), verify(), refresh(), revoke_token(),
               revoke_session(), revoke_user_tokens(), sweep_expired()
  API keys     create_api_key(), revoke_api_key(), list_api_keys(), ...
  App passwords create_app_password(), revoke_app_password(), ...

Expected failures are returned as AuthError values, never raised. Malformed
inputs raise ValidationError. StoreUnavailableError propagates untouched.

Refresh rotation:
  The presented refresh token is consumed with a compare-and-set in the same
  transaction that inserts its successor pair (TokenStore.rotate_refresh).
  A caller that loses the CAS looks at the consumed record:
    - rotated no more than jwt.idempotency_grace seconds ago and the
      successor is still unused -> benign client retry: hand back the same
      successor refresh token plus a fresh access token.
    - anything else -> AUTH_REVOKED. If the record was consumed by rotation
      (not by logout) this is a replay of a possibly stolen token, and with
      jwt.revoke_on_replay every active token of the user is revoked.

Lease:
  verify(..., lease=True) additionally requires now < iat + jwt.lease_ttl.
  It is a freshness requirement for sensitive operations and never extends
  a token's primary expiry.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import Any, Optional, Union

from jose import JWTError
from jose.exceptions import JWTClaimsError

from auth.errors import AuthError, CacheUnavailableError, ErrorKind, ValidationError
from auth.models import TOKEN_ACCESS, TOKEN_REFRESH, ApiKey, AppPassword, Token, TokenPair, User
from auth.store import TokenStore, UserStore
from auth.tokens import (
    JwtCodec,
    generate_api_key,
    generate_app_password,
    hash_api_key,
    hash_password,
    new_session_id,
    new_token_id,
)
from core.clock import Clock
from core.config import Settings

logger = logging.getLogger("restwarden.lifecycle")

MAX_API_KEYS_PER_USER = 10  # [H3]
MAX_APP_PASSWORDS_PER_USER = 10
_SCOPE_RE = re.compile(r"^[A-Za-z0-9_.:*-]{1,64}$")


def _revoked_key(token_id: str) -> str:
    return f"revoked:{token_id}"


class TokenLifecycleManager:
    def __init__(
        self,
        settings: Settings,
        tokens: TokenStore,
        users: UserStore,
        codec: JwtCodec,
        clock: Clock,
        cache=None,
    ) -> None:
        self.settings = settings
        self.tokens = tokens
        self.users = users
        self.codec = codec
        self.clock = clock
        self.cache = cache

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue_tokens(self, user_id: int, session_id: Optional[str] = None) -> TokenPair:
        """Issue a fresh access + refresh pair for a user (primary login).

        Raises ValidationError if user_id is malformed, unknown or inactive.
        """
        user = self._require_user(user_id)
        now = self.clock.now_int()
        access, refresh = self._new_records(user.id, session_id or new_session_id(), now)
        self.tokens.insert_tokens(access, refresh)
        logger.info("Issued token pair user_id=%d session=%s", user.id, access.session_id)
        return self._pair(access, refresh)

    def _new_records(self, user_id: int, session_id: str, now: int) -> tuple[Token, Token]:
        jwt_cfg = self.settings.jwt
        access = Token(
            token_id=new_token_id(),
            user_id=user_id,
            token_type=TOKEN_ACCESS,
            issued_at=now,
            expires_at=now + jwt_cfg.access_ttl,
            session_id=session_id,
        )
        refresh = Token(
            token_id=new_token_id(),
            user_id=user_id,
            token_type=TOKEN_REFRESH,
            issued_at=now,
            expires_at=now + jwt_cfg.refresh_ttl,
            session_id=session_id,
        )
        return access, refresh

    def _sign(self, token: Token) -> str:
        """Encode a store record as a JWT.

        Claims are a pure function of the record, and RSA PKCS#1 v1.5
        signatures are deterministic, so re-signing a record reproduces the
        exact token originally handed out.
        """
        claims: dict[str, Any] = {
            "iss": self.codec.issuer,
            "aud": self.codec.audience,
            "sub": str(token.user_id),
            "jti": token.token_id,
            "iat": token.issued_at,
            "exp": token.expires_at,
            "type": token.token_type,
            "sid": token.session_id,
        }
        return self.codec.encode(claims)

    def _pair(self, access: Token, refresh: Token) -> TokenPair:
        return TokenPair(
            access_token=self._sign(access),
            refresh_token=self._sign(refresh),
            access=access,
            refresh=refresh,
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _check_claims(self, raw: str, expected_type: str, lease: bool = False) -> Union[dict, AuthError]:
        """Signature, iss/aud, type and time checks. No revocation lookup."""
        try:
            claims = self.codec.decode(raw)
        except JWTClaimsError as exc:
            logger.debug("JWT claims rejected: %s", exc)
            return AuthError(ErrorKind.AUTH_INVALID, "Token issuer or audience mismatch.")
        except JWTError as exc:
            logger.debug("JWT rejected: %s", exc)
            return AuthError(ErrorKind.AUTH_INVALID, "Invalid token.")

        if claims.get("type") != expected_type:
            return AuthError(ErrorKind.AUTH_INVALID, "Invalid token type.")
        try:
            exp = int(claims["exp"])
            iat = int(claims["iat"])
            nbf = int(claims.get("nbf", iat))
            int(claims["sub"])
        except (KeyError, TypeError, ValueError):
            return AuthError(ErrorKind.AUTH_INVALID, "Invalid token payload.")

        now = self.clock.now_int()
        skew = self.settings.jwt.clock_skew
        # exp is an exclusive bound: a token whose exp equals now is expired.
        if now >= exp + skew:
            return AuthError(ErrorKind.AUTH_EXPIRED, "Token has expired.")
        if iat > now + skew or nbf > now + skew:
            return AuthError(ErrorKind.AUTH_INVALID, "Token not yet valid.")
        if lease and now >= iat + self.settings.jwt.lease_ttl:
            return AuthError(ErrorKind.AUTH_EXPIRED, "Token lease has expired; re-authenticate.")
        return claims

    def verify(self, raw: str, expected_type: str = TOKEN_ACCESS, lease: bool = False) -> Union[Token, AuthError]:
        """Fully verify a presented JWT and return its store record.

        Revocation: the cache is consulted first as an accelerator for known
        revocations; the store decides everything else. A token with no
        store record (swept or never issued here) is treated as revoked.
        """
        claims = self._check_claims(raw, expected_type, lease)
        if isinstance(claims, AuthError):
            return claims
        token_id = claims["jti"]

        if self._cached_revoked(token_id):
            return AuthError(ErrorKind.AUTH_REVOKED, "Token has been revoked.")
        record = self.tokens.get_token(token_id)
        if record is None or record.token_type != expected_type:
            return AuthError(ErrorKind.AUTH_REVOKED, "Token is not recognised.")
        if record.revoked:
            self._mirror_revoked([record])
            return AuthError(ErrorKind.AUTH_REVOKED, "Token has been revoked.")
        return record

    def check_lease(self, issued_at: Optional[int]) -> Optional[AuthError]:
        """Lease check for an already-resolved identity. None means OK."""
        if issued_at is None:
            return None
        if self.clock.now_int() >= issued_at + self.settings.jwt.lease_ttl:
            return AuthError(ErrorKind.AUTH_EXPIRED, "Token lease has expired; re-authenticate.")
        return None

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, raw: str) -> Union[TokenPair, AuthError]:
        """Exchange a refresh token for a new pair (single-use rotation)."""
        if not isinstance(raw, str) or not raw.strip():
            raise ValidationError({"refresh_token": "is required"})

        claims = self._check_claims(raw.strip(), TOKEN_REFRESH)
        if isinstance(claims, AuthError):
            return claims
        token_id = claims["jti"]
        now = self.clock.now_int()

        record = self.tokens.get_token(token_id)
        if record is None or record.token_type != TOKEN_REFRESH:
            return AuthError(ErrorKind.AUTH_REVOKED, "Refresh token is not recognised.")

        user = self.users.get_by_id(record.user_id)
        if user is None or not user.is_active:
            return AuthError(ErrorKind.AUTH_INVALID, "User not found or inactive.")

        if not record.revoked:
            access, successor = self._new_records(user.id, record.session_id, now)
            if self.tokens.rotate_refresh(token_id, [access, successor], now):
                record.revoked, record.revoked_at, record.replaced_by = True, now, successor.token_id
                self._mirror_revoked([record])
                logger.info("Rotated refresh token user_id=%d session=%s", user.id, record.session_id)
                return self._pair(access, successor)
            # Lost the compare-and-set to a concurrent refresh. Re-read.
            record = self.tokens.get_token(token_id)
            if record is None:
                return AuthError(ErrorKind.AUTH_REVOKED, "Refresh token is not recognised.")

        return self._spent_refresh(record, user, now)

    def _spent_refresh(self, record: Token, user: User, now: int) -> Union[TokenPair, AuthError]:
        grace = self.settings.jwt.idempotency_grace
        if record.replaced_by and record.revoked_at is not None and now - record.revoked_at <= grace:
            successor = self.tokens.get_token(record.replaced_by)
            if successor is not None and not successor.revoked:
                access, _ = self._new_records(user.id, record.session_id, now)
                self.tokens.insert_tokens(access)
                logger.info("Refresh retry inside grace window user_id=%d session=%s", user.id, record.session_id)
                return TokenPair(
                    access_token=self._sign(access),
                    refresh_token=self._sign(successor),
                    access=access,
                    refresh=successor,
                )

        if record.replaced_by:
            logger.warning(
                "Refresh token replay detected user_id=%d session=%s token=%s...",
                user.id,
                record.session_id,
                record.token_id[:8],
            )
            if self.settings.jwt.revoke_on_replay:
                revoked = self.tokens.revoke_user_tokens(user.id, now)
                self._mirror_revoked(revoked)
                logger.warning("Revoked %d active tokens for user_id=%d after replay", len(revoked), user.id)
        return AuthError(ErrorKind.AUTH_REVOKED, "Refresh token has already been used.")

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke_token(self, token_id: str) -> bool:
        """Revoke one token. Idempotent: returns False if it was already revoked
        or does not exist, which callers treat as success."""
        now = self.clock.now_int()
        changed = self.tokens.revoke_token(token_id, now)
        record = self.tokens.get_token(token_id)
        if record is not None:
            self._mirror_revoked([record])
        if changed:
            logger.info("Revoked token %s...", token_id[:8])
        return changed

    def revoke_session(self, session_id: str) -> int:
        revoked = self.tokens.revoke_session(session_id, self.clock.now_int())
        self._mirror_revoked(revoked)
        logger.info("Revoked session %s (%d tokens)", session_id, len(revoked))
        return len(revoked)

    def revoke_user_tokens(self, user_id: int) -> int:
        revoked = self.tokens.revoke_user_tokens(user_id, self.clock.now_int())
        self._mirror_revoked(revoked)
        logger.info("Revoked all tokens for user_id=%d (%d tokens)", user_id, len(revoked))
        return len(revoked)

    def list_sessions(self, user_id: int) -> list[Token]:
        """Live login sessions of a user, newest first.

        One record per session: its current (unrotated, unrevoked) refresh token.
        """
        active = self.tokens.list_active_tokens(user_id, self.clock.now_int())
        return [t for t in active if t.token_type == TOKEN_REFRESH and t.replaced_by is None]

    def revoke(self, credential_id: Union[str, int]) -> bool:
        """Revoke by id: an int is an API key id, a str is a token id."""
        if isinstance(credential_id, bool):
            raise ValidationError({"credential_id": "must be a token id or API key id"})
        if isinstance(credential_id, int):
            return self.revoke_api_key(credential_id)
        if isinstance(credential_id, str) and credential_id:
            return self.revoke_token(credential_id)
        raise ValidationError({"credential_id": "must be a token id or API key id"})

    def sweep_expired(self) -> int:
        """Retention sweep: delete token records expired for longer than retention_grace."""
        cutoff = self.clock.now_int() - self.settings.jwt.retention_grace
        deleted = self.tokens.delete_expired_tokens(cutoff)
        if deleted:
            logger.info("Retention sweep deleted %d expired tokens", deleted)
        return deleted

    # ------------------------------------------------------------------
    # Revocation cache (accelerator only)
    # ------------------------------------------------------------------

    def _cached_revoked(self, token_id: str) -> bool:
        if self.cache is None:
            return False
        try:
            return bool(self.cache.get(_revoked_key(token_id)))
        except CacheUnavailableError:
            logger.debug("Revocation cache unavailable; falling back to store")
            return False

    def _mirror_revoked(self, records: Iterable[Token]) -> None:
        if self.cache is None:
            return
        now = self.clock.now_int()
        skew = self.settings.jwt.clock_skew
        for record in records:
            if record.expires_at is not None:
                ttl = max(1, record.expires_at + skew - now)
            else:
                ttl = self.settings.jwt.refresh_ttl
            try:
                self.cache.set(_revoked_key(record.token_id), True, ttl)
            except CacheUnavailableError:
                logger.debug("Revocation cache unavailable; store already updated")
                return

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def create_api_key(
        self,
        user_id: int,
        name: str,
        scopes: Iterable[str] = (),
        expires_at: Optional[int] = None,
        rate_limit: Optional[int] = None,
        rate_limit_window: Optional[int] = None,
    ) -> tuple[str, ApiKey]:
        """Generate, hash and persist a new API key.

        Returns (plaintext, record). The plaintext exists only in this return
        value; the record carries the HMAC hash and a display prefix.
        """
        user = self._require_user(user_id)
        now = self.clock.now_int()
        scopes = list(scopes or ())
        errors = _validate_name(name)
        bad_scopes = [s for s in scopes if not isinstance(s, str) or not _SCOPE_RE.match(s)]
        if bad_scopes:
            errors["scopes"] = f"invalid scope(s): {', '.join(map(str, bad_scopes))}"
        if expires_at is not None and expires_at <= now:
            errors["expires_at"] = "must be in the future"
        if rate_limit is not None and rate_limit <= 0:
            errors["rate_limit"] = "must be positive"
        if rate_limit_window is not None and rate_limit_window <= 0:
            errors["rate_limit_window"] = "must be positive"
        if len(self.tokens.list_api_keys(user.id)) >= MAX_API_KEYS_PER_USER:
            errors["user_id"] = f"maximum of {MAX_API_KEYS_PER_USER} active API keys; revoke one first"
        if errors:
            raise ValidationError(errors)

        raw_key = generate_api_key(self.settings.api_key.prefix)
        record = ApiKey(
            user_id=user.id,
            name=name.strip(),
            key_hash=hash_api_key(raw_key, self.settings.secret_key),
            key_prefix=raw_key[:12],
            scopes=sorted(set(scopes)),
            created_at=now,
            expires_at=expires_at,
            rate_limit=rate_limit,
            rate_limit_window=rate_limit_window,
        )
        record.id = self.tokens.create_api_key(record)
        logger.info("API key created id=%d user_id=%d prefix=%s", record.id, user.id, record.key_prefix)
        return raw_key, record

    def list_api_keys(self, user_id: int, include_revoked: bool = False) -> list[ApiKey]:
        return self.tokens.list_api_keys(user_id, include_revoked=include_revoked)

    def get_api_key(self, key_id: int) -> Optional[ApiKey]:
        return self.tokens.get_api_key(key_id)

    def revoke_api_key(self, key_id: int, user_id: Optional[int] = None) -> bool:
        """Soft-delete a key. Idempotent; False only if no such key (for that owner)."""
        found = self.tokens.revoke_api_key(key_id, user_id)
        if found:
            logger.info("API key revoked id=%d", key_id)
        return found

    def revoke_user_api_keys(self, user_id: int) -> int:
        count = self.tokens.revoke_user_api_keys(user_id)
        logger.info("Revoked %d API keys for user_id=%d", count, user_id)
        return count

    def touch_api_key(self, key_id: int, ip: Optional[str]) -> None:
        self.tokens.touch_api_key(key_id, self.clock.now_int(), ip)

    # ------------------------------------------------------------------
    # App passwords
    # ------------------------------------------------------------------

    def create_app_password(self, user_id: int, name: str) -> tuple[str, AppPassword]:
        """Generate and persist an application password. Plaintext returned once."""
        user = self._require_user(user_id)
        errors = _validate_name(name)
        if len(self.tokens.list_app_passwords(user.id)) >= MAX_APP_PASSWORDS_PER_USER:
            errors["user_id"] = f"maximum of {MAX_APP_PASSWORDS_PER_USER} app passwords; revoke one first"
        if errors:
            raise ValidationError(errors)

        plain = generate_app_password()
        record = AppPassword(
            user_id=user.id,
            name=name.strip(),
            password_hash=hash_password(plain),
            created_at=self.clock.now_int(),
        )
        record.id = self.tokens.create_app_password(record)
        logger.info("App password created id=%d user_id=%d", record.id, user.id)
        return plain, record

    def list_app_passwords(self, user_id: int) -> list[AppPassword]:
        return self.tokens.list_app_passwords(user_id)

    def revoke_app_password(self, app_password_id: int, user_id: Optional[int] = None) -> bool:
        found = self.tokens.revoke_app_password(app_password_id, user_id)
        if found:
            logger.info("App password revoked id=%d", app_password_id)
        return found

    def touch_app_password(self, app_password_id: int, ip: Optional[str]) -> None:
        self.tokens.touch_app_password(app_password_id, self.clock.now_int(), ip)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_user(self, user_id: Any) -> User:
        if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
            raise ValidationError({"user_id": "must be a positive integer"})
        user = self.users.get_by_id(user_id)
        if user is None:
            raise ValidationError({"user_id": "unknown user"})
        if not user.is_active:
            raise ValidationError({"user_id": "user is inactive"})
        return user


def _validate_name(name: Any) -> dict[str, str]:
    if not isinstance(name, str) or not name.strip():
        return {"name": "is required"}
    if len(name.strip()) > 100:
        return {"name": "must be at most 100 characters"}
    return {}
