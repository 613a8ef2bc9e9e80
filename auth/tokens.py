"""
auth/tokens.py -- JWT codec, password hashing, and credential generation.

Security design decisions:
  JWT: python-jose with an asymmetric algorithm (RS256 by default, RS384 and
       RS512 accepted). Tokens are signed with the private key and verified
       with the public key, so services that only verify never hold signing
       material. JwtCodec.decode() verifies signature, issuer and audience;
       time-based claims are checked by the lifecycle manager against the
       injected Clock (python-jose would read the system clock).

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in authenticate_user() and in the
       app-password strategy so response time does not reveal whether a
       username exists [C1].

  API keys: secrets.token_hex(32) gives 256 bits of entropy. We store
       HMAC-SHA256(SECRET_KEY, raw_key) so lookup is O(1); the final
       comparison uses hmac.compare_digest.

Layer rule: no imports from api/ or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from typing import TYPE_CHECKING, Any, Optional

import bcrypt
from jose import jwk, jwt

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("restwarden.auth")

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------

# Account-password length in characters, shared by the login model and the
# admin CLI. bcrypt reads at most 72 bytes of input.
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 64


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input at 72 bytes; the API layer caps password length
    well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or over-long input.
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("restwarden_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt verification on the dummy hash [C1]."""
    verify_password(plain, _DUMMY_HASH)


def authenticate_user(store: UserStore, username: str, password: str) -> Optional[User]:
    """Primary username/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown username: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.get_by_username(username)
    if user is None or user.hashed_password is None:
        burn_password_check(password)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


class JwtCodec:
    """Signs and verifies JWTs with a fixed algorithm, issuer and audience.

    Both keys are parsed at construction. A corrupt key raises
    jose.exceptions.JWKError here -- at startup -- rather than on the first
    request. JWKError is not a JWTError subclass, so a key that becomes
    unusable later propagates as a fatal error instead of masquerading as a
    bad client token.
    """

    def __init__(self, private_key: str, public_key: str, algorithm: str, issuer: str, audience: str) -> None:
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self._private_key = private_key
        self._public_key = public_key
        jwk.construct(private_key, algorithm)
        jwk.construct(public_key, algorithm)

    def encode(self, claims: dict[str, Any]) -> str:
        return jwt.encode(claims, self._private_key, algorithm=self.algorithm)

    def decode(self, token: str) -> dict[str, Any]:
        """Verify signature, iss and aud; return the claims.

        Raises jose.JWTError (or its subclass JWTClaimsError) on any failure.
        exp / iat / nbf are NOT checked here: python-jose compares them with the
        system clock, and a require_X option would switch verify_X back on.
        The lifecycle manager checks presence and time against its own clock.
        """
        return jwt.decode(
            token,
            self._public_key,
            algorithms=[self.algorithm],
            audience=self.audience,
            issuer=self.issuer,
            options={
                "verify_exp": False,
                "verify_iat": False,
                "verify_nbf": False,
                "require_jti": True,
                "require_sub": True,
            },
        )


def new_token_id() -> str:
    """Opaque unique token id (jti): 32 random bytes, URL-safe."""
    return secrets.token_urlsafe(32)


def new_session_id() -> str:
    return secrets.token_urlsafe(16)


# ---------------------------------------------------------------------------
# API key generation and hashing
# ---------------------------------------------------------------------------

API_KEY_MIN_LENGTH = 40


def generate_api_key(prefix: str) -> str:
    """Generate a new API key in the format <prefix>_<64 hex chars>."""
    return f"{prefix}_{secrets.token_hex(32)}"


def hash_api_key(raw_key: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, raw_key) as a hex string.

    Keying the hash means an attacker who obtains the DB cannot test
    candidate keys offline without also knowing SECRET_KEY.
    """
    return hmac.new(secret_key.encode(), raw_key.encode(), hashlib.sha256).hexdigest()


def hashes_match(a: str, b: str) -> bool:
    """Constant-time comparison of two hex digests."""
    return hmac.compare_digest(a.encode(), b.encode())


def looks_like_api_key(raw_key: str, prefix: str) -> bool:
    """Cheap syntactic check run before any store lookup."""
    return raw_key.startswith(f"{prefix}_") and len(raw_key) >= API_KEY_MIN_LENGTH


# ---------------------------------------------------------------------------
# Application passwords
# ---------------------------------------------------------------------------


def generate_app_password() -> str:
    """24-character random password for HTTP Basic clients."""
    return secrets.token_urlsafe(18)
