"""
auth/strategies.py -- Credential validators, one per auth method.

Every strategy has the same surface:

    scheme()                          Authorization scheme it answers to
    challenge()                       WWW-Authenticate value for its 401s
    validate(raw) -> bool             cheap syntactic check, no I/O
    authenticate(raw, client_ip)      -> Identity | AuthError

authenticate() never raises for a bad credential; it returns an AuthError
carrying this strategy's challenge. StoreUnavailableError from a lookup is
not caught: a decision that cannot consult the store is a denial.

The last_used / last_ip stamp after a successful API-key or app-password
auth is best-effort. A failed write is logged and the caller stays
authenticated.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import AuthError, ErrorKind, StoreUnavailableError
from auth.lifecycle import TokenLifecycleManager
from auth.models import TOKEN_ACCESS, AuthMethod, Identity, User
from auth.store import UserStore
from auth.tokens import burn_password_check, hash_api_key, hashes_match, looks_like_api_key, verify_password
from core.config import Settings

logger = logging.getLogger("restwarden.auth")

AuthResult = Union[Identity, AuthError]


class _Strategy:
    method: AuthMethod
    _scheme = ""

    def __init__(self, settings: Settings, lifecycle: TokenLifecycleManager, users: UserStore) -> None:
        self.settings = settings
        self.lifecycle = lifecycle
        self.users = users

    def scheme(self) -> str:
        return self._scheme

    def challenge(self) -> str:
        return f'{self._scheme} realm="{self.settings.jwt.issuer}"'

    def validate(self, raw: str) -> bool:
        raise NotImplementedError

    def authenticate(self, raw: str, client_ip: Optional[str] = None) -> AuthResult:
        raise NotImplementedError

    def credential_limit(self, identity: Identity) -> Optional[tuple[str, int, int]]:
        """(subject, limit, window) for the per-credential rate-limit layer, if any."""
        return None

    def _reject(self, kind: ErrorKind, message: str = "") -> AuthError:
        return AuthError(kind, message, challenge=self.challenge())

    def _with_challenge(self, error: AuthError) -> AuthError:
        return AuthError(error.kind, error.message, challenge=self.challenge())

    def _active_user(self, user_id: int) -> Optional[User]:
        user = self.users.get_by_id(user_id)
        if user is None or not user.is_active:
            return None
        return user


class JWTStrategy(_Strategy):
    """Bearer access tokens issued by the lifecycle manager."""

    method = AuthMethod.JWT
    _scheme = "Bearer"

    def challenge(self) -> str:
        return f'Bearer realm="{self.settings.jwt.issuer}", error="invalid_token"'

    def validate(self, raw: str) -> bool:
        parts = raw.split(".")
        return len(parts) == 3 and all(parts)

    def authenticate(self, raw: str, client_ip: Optional[str] = None) -> AuthResult:
        if not self.validate(raw):
            return self._reject(ErrorKind.AUTH_INVALID, "Malformed bearer token.")
        record = self.lifecycle.verify(raw, TOKEN_ACCESS)
        if isinstance(record, AuthError):
            return self._with_challenge(record)
        user = self._active_user(record.user_id)
        if user is None:
            return self._reject(ErrorKind.AUTH_INVALID, "User not found or inactive.")
        return Identity(
            user_id=user.id,
            username=user.username,
            method=self.method,
            roles=tuple(user.roles),
            credential_id=record.token_id,
            session_id=record.session_id,
            issued_at=record.issued_at,
        )


class ApiKeyStrategy(_Strategy):
    """Long-lived API keys, looked up by HMAC hash."""

    method = AuthMethod.API_KEY
    _scheme = "Key"

    def validate(self, raw: str) -> bool:
        return looks_like_api_key(raw, self.settings.api_key.prefix)

    def authenticate(self, raw: str, client_ip: Optional[str] = None) -> AuthResult:
        if not self.validate(raw):
            return self._reject(ErrorKind.AUTH_INVALID, "Malformed API key.")

        key_hash = hash_api_key(raw, self.settings.secret_key)
        record = self.lifecycle.tokens.get_api_key_by_hash(key_hash)
        if record is None or not hashes_match(record.key_hash, key_hash):
            return self._reject(ErrorKind.AUTH_INVALID, "Invalid API key.")
        if record.is_revoked:
            return self._reject(ErrorKind.AUTH_REVOKED, "API key has been revoked.")
        if record.expires_at is not None and self.lifecycle.clock.now_int() >= record.expires_at:
            return self._reject(ErrorKind.AUTH_EXPIRED, "API key has expired.")
        user = self._active_user(record.user_id)
        if user is None:
            return self._reject(ErrorKind.AUTH_INVALID, "User not found or inactive.")

        try:
            self.lifecycle.touch_api_key(record.id, client_ip)
        except (StoreUnavailableError, SQLAlchemyError):
            logger.warning("Could not record last_used for API key id=%d", record.id, exc_info=True)

        return Identity(
            user_id=user.id,
            username=user.username,
            method=self.method,
            roles=tuple(user.roles),
            scopes=frozenset(record.scopes),
            credential_id=str(record.id),
        )

    def credential_limit(self, identity: Identity) -> Optional[tuple[str, int, int]]:
        cfg = self.settings.api_key
        key = self.lifecycle.get_api_key(int(identity.credential_id))
        limit = key.rate_limit if key is not None and key.rate_limit else cfg.rate_limit
        window = key.rate_limit_window if key is not None and key.rate_limit_window else cfg.rate_limit_window
        return f"api_key:{identity.credential_id}", limit, window


class AppPasswordStrategy(_Strategy):
    """HTTP Basic with an application password (never the account password)."""

    method = AuthMethod.APP_PASSWORD
    _scheme = "Basic"

    @staticmethod
    def _split(raw: str) -> Optional[tuple[str, str]]:
        try:
            decoded = base64.b64decode(raw, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
        username, sep, password = decoded.partition(":")
        if not sep or not username or not password:
            return None
        return username, password

    def validate(self, raw: str) -> bool:
        return self._split(raw) is not None

    def authenticate(self, raw: str, client_ip: Optional[str] = None) -> AuthResult:
        parsed = self._split(raw)
        if parsed is None:
            return self._reject(ErrorKind.AUTH_INVALID, "Malformed Basic credentials.")
        username, password = parsed

        user = self.users.get_by_username(username)
        if user is None:
            burn_password_check(password)
            return self._reject(ErrorKind.AUTH_INVALID, "Invalid username or application password.")

        candidates = self.lifecycle.list_app_passwords(user.id)
        if not candidates:
            burn_password_check(password)
        match = next((ap for ap in candidates if verify_password(password, ap.password_hash)), None)
        if match is None or not user.is_active:
            return self._reject(ErrorKind.AUTH_INVALID, "Invalid username or application password.")

        try:
            self.lifecycle.touch_app_password(match.id, client_ip)
        except (StoreUnavailableError, SQLAlchemyError):
            logger.warning("Could not record last_used for app password id=%d", match.id, exc_info=True)

        return Identity(
            user_id=user.id,
            username=user.username,
            method=self.method,
            roles=tuple(user.roles),
            credential_id=str(match.id),
        )

    def credential_limit(self, identity: Identity) -> Optional[tuple[str, int, int]]:
        return (
            f"app_password:user:{identity.user_id}",
            self.settings.auth_methods.app_password.rate_limit,
            self.settings.rate_limiting.per_user_window,
        )
