"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore and TokenStore are the
repositories; the _row_to_* functions are the mappers. Nothing outside this
module touches SQL.

TokenStore is the source of truth for revocation. Only the lifecycle manager
(and the strategies, for last_used bookkeeping) call its mutating methods.

Atomicity:
  Every mutation is a single statement or a single engine.begin() block.
  Refresh rotation is a compare-and-set: UPDATE ... WHERE token_id = :id AND
  revoked = 0. Exactly one concurrent caller sees rowcount == 1; the
  successor tokens are inserted in the same transaction, so a losing caller
  never leaves a half-rotated state behind.

Timeouts:
  SQLite gets a busy timeout and other backends a pool timeout, both from
  Settings.store_timeout. OperationalError / pool TimeoutError are re-raised
  as StoreUnavailableError so the auth core can treat them uniformly as
  deny-on-uncertainty.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, core/ or cache/.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import StoreUnavailableError
from auth.models import ApiKey, AppPassword, Token, User

_DEFAULT_DB_URL = "sqlite:///restwarden_auth.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("roles", Text, nullable=False, server_default="subscriber"),  # comma-separated
    Column("created_at", BigInteger, nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_tokens = Table(
    "tokens",
    _metadata,
    Column("token_id", String(64), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_type", String(16), nullable=False),
    Column("session_id", String(64), nullable=False, index=True),
    Column("issued_at", BigInteger, nullable=False),
    Column("expires_at", BigInteger),  # NULL = non-expiring
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", BigInteger),
    Column("replaced_by", String(64)),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("key_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("key_prefix", String(12), nullable=False),  # display only
    Column("scopes", Text, nullable=False, server_default="[]"),  # JSON list
    Column("created_at", BigInteger, nullable=False),
    Column("expires_at", BigInteger),
    Column("last_used", BigInteger),
    Column("last_ip", String(45)),
    Column("rate_limit", Integer),
    Column("rate_limit_window", Integer),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
)

_app_passwords = Table(
    "app_passwords",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("created_at", BigInteger, nullable=False),
    Column("last_used", BigInteger),
    Column("last_ip", String(45)),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _make_engine(db_url: str, timeout: float) -> Engine:
    if db_url.startswith("sqlite"):
        # timeout is sqlite3's busy timeout: how long a writer waits for a lock.
        engine = create_engine(db_url, connect_args={"check_same_thread": False, "timeout": timeout})
        event.listen(engine, "connect", _set_wal_mode)
    else:
        engine = create_engine(db_url, pool_timeout=timeout, pool_pre_ping=True)
    _metadata.create_all(engine)
    return engine


class _Repository:
    """Shared engine ownership and error translation."""

    def __init__(self, db_url: str = _DEFAULT_DB_URL, timeout: float = 5.0) -> None:
        self.engine: Engine = _make_engine(db_url, timeout)

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        """Read-only connection; translates backend outages."""
        try:
            with self.engine.connect() as conn:
                yield conn
        except (OperationalError, PoolTimeoutError) as exc:
            raise StoreUnavailableError(f"auth store unavailable: {exc.__class__.__name__}") from exc

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        """Transaction that commits on success and rolls back on any error."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except (OperationalError, PoolTimeoutError) as exc:
            raise StoreUnavailableError(f"auth store unavailable: {exc.__class__.__name__}") from exc

    def ping(self) -> bool:
        """Return True if the store answers a trivial query."""
        try:
            with self._connect() as conn:
                conn.execute(select(1))
        except StoreUnavailableError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore(_Repository):
    """Read access to the host application's users, plus bootstrap writes.

    Usage:
        store = UserStore("sqlite:///auth.db")
        uid = store.create_user(User(username="admin", roles=["administrator"], hashed_password=...))
        user = store.get_by_id(uid)
        store.close()
    """

    def create_user(self, user: User, now: int = 0) -> int:
        """Insert a user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self._begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    hashed_password=user.hashed_password,
                    roles=",".join(user.roles),
                    created_at=now,
                    is_active=1 if user.is_active else 0,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> Optional[User]:
        """Exact, case-sensitive match. Returns None if not found."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_active(self, user_id: int, is_active: bool) -> bool:
        with self._begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(is_active=1 if is_active else 0)
            )
        return result.rowcount > 0

    def has_users(self) -> bool:
        with self._connect() as conn:
            count = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (count or 0) > 0


# ---------------------------------------------------------------------------
# Tokens, API keys, app passwords
# ---------------------------------------------------------------------------


class TokenStore(_Repository):
    """Persistent record of issued tokens, API keys and app passwords."""

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def insert_tokens(self, *tokens: Token) -> None:
        """Persist freshly issued tokens in one transaction."""
        with self._begin() as conn:
            for token in tokens:
                conn.execute(_tokens.insert().values(**_token_values(token)))

    def get_token(self, token_id: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.token_id == token_id)).fetchone()
        return _row_to_token(row) if row is not None else None

    def rotate_refresh(self, old_token_id: str, successors: list[Token], now: int) -> bool:
        """Atomically consume a refresh token and persist its successors.

        Returns True if this caller won the compare-and-set. On False nothing
        was written. The successor refresh token (the one with token_type ==
        "refresh") is recorded as replaced_by on the consumed token.
        """
        successor_refresh = next((t.token_id for t in successors if t.token_type == "refresh"), None)
        with self._begin() as conn:
            result = conn.execute(
                _tokens.update()
                .where(
                    (_tokens.c.token_id == old_token_id)
                    & (_tokens.c.token_type == "refresh")
                    & (_tokens.c.revoked == 0)
                )
                .values(revoked=1, revoked_at=now, replaced_by=successor_refresh)
            )
            if result.rowcount != 1:
                return False
            for token in successors:
                conn.execute(_tokens.insert().values(**_token_values(token)))
        return True

    def revoke_token(self, token_id: str, now: int) -> bool:
        """Mark one token revoked. Returns True only if it was active before."""
        with self._begin() as conn:
            result = conn.execute(
                _tokens.update()
                .where((_tokens.c.token_id == token_id) & (_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=now)
            )
        return result.rowcount > 0

    def revoke_session(self, session_id: str, now: int) -> list[Token]:
        """Revoke every active token of a session. Returns the tokens revoked."""
        return self._revoke_where((_tokens.c.session_id == session_id), now)

    def revoke_user_tokens(self, user_id: int, now: int) -> list[Token]:
        """Revoke every active token of a user. Returns the tokens revoked."""
        return self._revoke_where((_tokens.c.user_id == user_id), now)

    def _revoke_where(self, clause, now: int) -> list[Token]:
        active = clause & (_tokens.c.revoked == 0)
        with self._begin() as conn:
            rows = conn.execute(_tokens.select().where(active)).fetchall()
            if rows:
                conn.execute(_tokens.update().where(active).values(revoked=1, revoked_at=now))
        return [_row_to_token(r) for r in rows]

    def list_active_tokens(self, user_id: int, now: int) -> list[Token]:
        """Unrevoked, unexpired tokens of a user, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                _tokens.select()
                .where(
                    (_tokens.c.user_id == user_id)
                    & (_tokens.c.revoked == 0)
                    & ((_tokens.c.expires_at.is_(None)) | (_tokens.c.expires_at > now))
                )
                .order_by(_tokens.c.issued_at.desc())
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def delete_expired_tokens(self, cutoff: int) -> int:
        """Retention sweep: delete tokens that expired before cutoff.

        Non-expiring tokens (expires_at NULL) are never swept.
        """
        with self._begin() as conn:
            result = conn.execute(
                _tokens.delete().where(_tokens.c.expires_at.is_not(None) & (_tokens.c.expires_at < cutoff))
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def create_api_key(self, api_key: ApiKey) -> int:
        with self._begin() as conn:
            result = conn.execute(
                _api_keys.insert().values(
                    user_id=api_key.user_id,
                    name=api_key.name,
                    key_hash=api_key.key_hash,
                    key_prefix=api_key.key_prefix,
                    scopes=json.dumps(sorted(api_key.scopes)),
                    created_at=api_key.created_at or 0,
                    expires_at=api_key.expires_at,
                    rate_limit=api_key.rate_limit,
                    rate_limit_window=api_key.rate_limit_window,
                    is_revoked=0,
                )
            )
            return result.inserted_primary_key[0]

    def get_api_key(self, key_id: int) -> Optional[ApiKey]:
        with self._connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.id == key_id)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def get_api_key_by_hash(self, key_hash: str) -> Optional[ApiKey]:
        """Look up a key by its HMAC hash, revoked or not. O(1) via UNIQUE index.

        Revoked keys are returned so the caller can report AUTH_REVOKED rather
        than AUTH_INVALID.
        """
        with self._connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.key_hash == key_hash)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def list_api_keys(self, user_id: int, include_revoked: bool = False) -> list[ApiKey]:
        """Keys of a user, newest first."""
        clause = _api_keys.c.user_id == user_id
        if not include_revoked:
            clause = clause & (_api_keys.c.is_revoked == 0)
        with self._connect() as conn:
            rows = conn.execute(
                _api_keys.select().where(clause).order_by(_api_keys.c.created_at.desc(), _api_keys.c.id.desc())
            ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def touch_api_key(self, key_id: int, now: int, ip: Optional[str]) -> None:
        """Stamp last_used / last_ip after a successful authentication."""
        with self._begin() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(last_used=now, last_ip=ip))

    def revoke_api_key(self, key_id: int, user_id: Optional[int] = None) -> bool:
        """Set is_revoked on a key. Never clears it, never deletes the row.

        If user_id is given the key must belong to that user (IDOR guard).
        Returns True if the key exists (and matches the owner), whether or not
        it was already revoked -- revocation is idempotent.
        """
        clause = _api_keys.c.id == key_id
        if user_id is not None:
            clause = clause & (_api_keys.c.user_id == user_id)
        with self._begin() as conn:
            exists = conn.execute(select(_api_keys.c.id).where(clause)).fetchone()
            if exists is None:
                return False
            conn.execute(_api_keys.update().where(clause & (_api_keys.c.is_revoked == 0)).values(is_revoked=1))
        return True

    def revoke_user_api_keys(self, user_id: int) -> int:
        with self._begin() as conn:
            result = conn.execute(
                _api_keys.update()
                .where((_api_keys.c.user_id == user_id) & (_api_keys.c.is_revoked == 0))
                .values(is_revoked=1)
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # App passwords
    # ------------------------------------------------------------------

    def create_app_password(self, app_password: AppPassword) -> int:
        with self._begin() as conn:
            result = conn.execute(
                _app_passwords.insert().values(
                    user_id=app_password.user_id,
                    name=app_password.name,
                    password_hash=app_password.password_hash,
                    created_at=app_password.created_at or 0,
                    is_revoked=0,
                )
            )
            return result.inserted_primary_key[0]

    def list_app_passwords(self, user_id: int, include_revoked: bool = False) -> list[AppPassword]:
        clause = _app_passwords.c.user_id == user_id
        if not include_revoked:
            clause = clause & (_app_passwords.c.is_revoked == 0)
        with self._connect() as conn:
            rows = conn.execute(
                _app_passwords.select().where(clause).order_by(_app_passwords.c.id.desc())
            ).fetchall()
        return [_row_to_app_password(r) for r in rows]

    def touch_app_password(self, app_password_id: int, now: int, ip: Optional[str]) -> None:
        with self._begin() as conn:
            conn.execute(
                _app_passwords.update()
                .where(_app_passwords.c.id == app_password_id)
                .values(last_used=now, last_ip=ip)
            )

    def revoke_app_password(self, app_password_id: int, user_id: Optional[int] = None) -> bool:
        clause = _app_passwords.c.id == app_password_id
        if user_id is not None:
            clause = clause & (_app_passwords.c.user_id == user_id)
        with self._begin() as conn:
            exists = conn.execute(select(_app_passwords.c.id).where(clause)).fetchone()
            if exists is None:
                return False
            conn.execute(_app_passwords.update().where(clause).values(is_revoked=1))
        return True


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _token_values(token: Token) -> dict:
    return {
        "token_id": token.token_id,
        "user_id": token.user_id,
        "token_type": token.token_type,
        "session_id": token.session_id,
        "issued_at": token.issued_at,
        "expires_at": token.expires_at,
        "revoked": 1 if token.revoked else 0,
        "revoked_at": token.revoked_at,
        "replaced_by": token.replaced_by,
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        roles=[r for r in (row.roles or "").split(",") if r],
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )


def _row_to_token(row) -> Token:
    return Token(
        token_id=row.token_id,
        user_id=row.user_id,
        token_type=row.token_type,
        session_id=row.session_id,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        revoked=bool(row.revoked),
        revoked_at=row.revoked_at,
        replaced_by=row.replaced_by,
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        scopes=json.loads(row.scopes or "[]"),
        created_at=row.created_at,
        expires_at=row.expires_at,
        last_used=row.last_used,
        last_ip=row.last_ip,
        rate_limit=row.rate_limit,
        rate_limit_window=row.rate_limit_window,
        is_revoked=bool(row.is_revoked),
    )


def _row_to_app_password(row) -> AppPassword:
    return AppPassword(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        password_hash=row.password_hash,
        created_at=row.created_at,
        last_used=row.last_used,
        last_ip=row.last_ip,
        is_revoked=bool(row.is_revoked),
    )
