"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Restwarden happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or better, accept a Settings instance in the constructor.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  Nested sections: each option group (jwt, api_key, rate_limiting, ...) is a
      plain pydantic BaseModel. Environment variables address nested fields
      with a double underscore, e.g. JWT__ACCESS_TTL=600 or
      AUTH_METHODS__APP_PASSWORD__ENABLED=true. Complex values such as
      PERMISSIONS__ROLE_OVERRIDES are parsed as JSON.

  @model_validator(mode="after"): cross-field validation after all fields
      are resolved. Implements the DEBUG-conditional secret policy: dev mode
      generates a SECRET_KEY and an RSA key pair with a warning, production
      mode refuses to start without them.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. API key hashes
       are HMAC-SHA256 keyed with it.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY or
       JWT private key is a hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/ or cache/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("restwarden.config")

SUPPORTED_ALGORITHMS = ("RS256", "RS384", "RS512")

# Defaults mirror the stock role matrix shipped with the API plugin.
# "anonymous" is listed explicitly so an unauthenticated principal that
# somehow reaches the policy engine is denied everything.
_DEFAULT_ROLE_OVERRIDES: dict[str, dict[str, bool]] = {
    "administrator": {"read": True, "create": True, "update": True, "delete": True, "publish": True},
    "editor": {"read": True, "create": True, "update": True, "delete": False, "publish": True, "own_only": False},
    "author": {"read": True, "create": True, "update": True, "delete": False, "publish": True, "own_only": True},
    "contributor": {"read": True, "create": True, "update": False, "delete": False, "publish": False, "own_only": True},
    "subscriber": {"read": True, "create": False, "update": False, "delete": False, "publish": False},
    "anonymous": {"read": False, "create": False, "update": False, "delete": False, "publish": False},
}


def generate_rsa_keypair(bits: int = 2048) -> tuple[str, str]:
    """Return a fresh (private_pem, public_pem) RSA key pair as strings."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = (
        key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("ascii")
    )
    return private_pem, public_pem


def public_key_from_private(private_pem: str) -> str:
    """Derive the PEM public key from a PEM private key.

    Raises ValueError if the private key cannot be parsed -- a corrupt signing
    key is a startup failure, not something to discover on the first login.
    """
    key = serialization.load_pem_private_key(private_pem.encode("ascii"), password=None)
    return (
        key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("ascii")
    )


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class MethodToggle(BaseModel):
    enabled: bool = True


class AppPasswordMethod(BaseModel):
    # Application passwords are opt-in; the limit is per user per window.
    enabled: bool = False
    rate_limit: int = Field(default=500, gt=0)


class AuthMethodsSettings(BaseModel):
    jwt: MethodToggle = Field(default_factory=MethodToggle)
    api_key: MethodToggle = Field(default_factory=MethodToggle)
    app_password: AppPasswordMethod = Field(default_factory=AppPasswordMethod)


class JwtSettings(BaseModel):
    """Signing and lifetime options for bearer tokens.

    lease_ttl is a secondary freshness window checked only for operations that
    explicitly ask for it; it never extends access_ttl. idempotency_grace is
    how long after a refresh rotation a retry of the same refresh token is
    treated as a benign client retry rather than a replay.
    """

    algorithm: str = "RS256"
    access_ttl: int = Field(default=3600, gt=0)
    refresh_ttl: int = Field(default=2592000, gt=0)
    lease_ttl: int = Field(default=300, gt=0)
    issuer: str = "restwarden"
    audience: str = "restwarden-api-v1"
    clock_skew: int = Field(default=0, ge=0)
    idempotency_grace: int = Field(default=5, ge=0)
    revoke_on_replay: bool = True
    retention_grace: int = Field(default=86400, ge=0)
    # PEM strings. Empty string means "not configured"; see Settings validator.
    private_key: str = ""
    public_key: str = ""

    @field_validator("algorithm")
    @classmethod
    def check_algorithm(cls, value: str) -> str:
        value = value.upper()
        if value not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported JWT algorithm {value!r}; expected one of {SUPPORTED_ALGORITHMS}")
        return value


class ApiKeySettings(BaseModel):
    prefix: str = Field(default="wack", min_length=1, max_length=16, pattern=r"^[A-Za-z0-9]+$")
    rate_limit: int = Field(default=1000, gt=0)
    rate_limit_window: int = Field(default=3600, gt=0)


class RoleRateLimit(BaseModel):
    limit: int = Field(gt=0)
    window: int = Field(default=3600, gt=0)


class RateLimitSettings(BaseModel):
    enabled: bool = True
    per_ip: int = Field(default=1000, gt=0)
    per_ip_window: int = Field(default=3600, gt=0)
    per_user: int = Field(default=5000, gt=0)
    per_user_window: int = Field(default=3600, gt=0)
    ban_duration: int = Field(default=3600, ge=0)
    # Denials inside one window before the subject is banned. 0 disables bans.
    ban_threshold: int = Field(default=10, ge=0)
    # Rate-limit state unavailable (cache down): allow (True) or deny (False).
    fail_open: bool = True
    # Role-specific per-user limits, e.g. {"administrator": {"limit": 20000}}.
    per_role: dict[str, RoleRateLimit] = Field(default_factory=dict)

    def user_limit(self, roles) -> tuple[int, int]:
        """(limit, window) for the user layer: the first role with its own
        entry wins, otherwise per_user / per_user_window."""
        for role in roles:
            override = self.per_role.get(role)
            if override is not None:
                return override.limit, override.window
        return self.per_user, self.per_user_window


class PermissionSettings(BaseModel):
    default_deny: bool = False
    role_overrides: dict[str, dict[str, bool]] = Field(default_factory=lambda: dict(_DEFAULT_ROLE_OVERRIDES))


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Tests normally pass values
    explicitly: Settings(debug=True, secret_key=..., jwt={...}).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///restwarden_auth.db"
    cache_backend: Literal["memory", "sqlite"] = "memory"
    cache_path: str = "restwarden_cache.db"
    # Upper bound (seconds) on any single store or cache lookup.
    store_timeout: float = Field(default=5.0, gt=0)

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    auth_methods: AuthMethodsSettings = Field(default_factory=AuthMethodsSettings)
    jwt: JwtSettings = Field(default_factory=JwtSettings)
    api_key: ApiKeySettings = Field(default_factory=ApiKeySettings)
    rate_limiting: RateLimitSettings = Field(default_factory=RateLimitSettings)
    permissions: PermissionSettings = Field(default_factory=PermissionSettings)

    # Login brute-force guard applied by slowapi at the HTTP layer.
    login_rate_limit: str = "10/minute"

    # Host headers accepted by TrustedHostMiddleware.
    allowed_hosts: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1", "*.localhost"])

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce SECRET_KEY and signing-key policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate whatever is missing, with a
            warning. Tokens and API keys will not survive a restart.

        Production mode: refuse to start if SECRET_KEY or the JWT private key
            is missing.

        A configured private key without a public key gets its public half
        derived here, which also proves the PEM parses.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. API keys will not validate after restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")

        if not self.jwt.private_key:
            if self.debug:
                self.jwt.private_key, self.jwt.public_key = generate_rsa_keypair()
                logger.warning("Using auto-generated JWT signing keys. Issued tokens will not survive restart.")
            else:
                raise ValueError(
                    "JWT__PRIVATE_KEY is required in production mode. "
                    "Generate a key pair with `python main.py gen-keys`."
                )
        elif not self.jwt.public_key:
            self.jwt.public_key = public_key_from_private(self.jwt.private_key)
        return self

    def method_enabled(self, method: str) -> bool:
        """Return True if the named auth method (jwt, api_key, app_password) is enabled."""
        toggle: Optional[BaseModel] = getattr(self.auth_methods, method, None)
        return bool(toggle is not None and getattr(toggle, "enabled", False))


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
