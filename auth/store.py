"""
auth/store.py -- SQLAlchemy Core persistence layer for OAuth credentials.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_* functions are the mappers. Session and token code never touches
SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Atomicity:
  Every public method is its own transaction. Methods that touch more than
  one table (token deletion + nonce cleanup, request-token exchange) run
  inside a single engine.begin() block so a concurrent reader never observes
  a token without its nonces or a half-finished exchange.

  Nonce uniqueness is enforced by the UNIQUE(consumer_id, scope, token_id,
  nonce) constraint, not by a SELECT before the INSERT. A duplicate raises
  IntegrityError, which insert_nonce_if_absent() reports as False. The scope
  is stored as two NOT NULL columns (scope, token_id) rather than two nullable
  foreign keys because SQLite treats NULLs as distinct in UNIQUE constraints.

  Expiry uses compare-and-delete on the exact created_at value the caller
  observed. If a concurrent call renewed the token in between, the delete
  matches nothing and the token survives.

Timestamps are UTC ISO-8601 strings with fixed microsecond precision, so
string order equals time order (purge_expired relies on this).

Absence is never an error: lookups return None. SQLAlchemy errors propagate
to the caller unchanged; they are faults, not protocol outcomes.

DB path: auth/handshake.db unless DATABASE_URL says otherwise.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import AccessToken, Consumer, NonceRecord, RequestToken, TokenScope, User, VerificationMode
from core.config import get_settings

logger = logging.getLogger("handshake.store")


class CredentialStoreError(RuntimeError):
    """A write did not complete the way the store guarantees. Never a protocol outcome."""


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_consumers = Table(
    "consumers",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("consumer_key", String(64), nullable=False, unique=True),
    Column("consumer_secret", String(128), nullable=False),
    Column("verification_mode", String(20), nullable=False, server_default="auto"),
    Column("rsa_public_key", Text),  # PEM, RSA-SHA1 consumers only
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", String(40), nullable=False),  # sha1 hex
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_request_tokens = Table(
    "request_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("consumer_key", String(64), nullable=False),
    Column("token", String(64), nullable=False),
    Column("secret", String(128), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("authorized_user_id", Integer),  # NULL until a user authenticates
    Column("verification_code", String(64)),  # NULL until issued
    UniqueConstraint("consumer_key", "token", name="uq_request_token"),
)

_access_tokens = Table(
    "access_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("consumer_key", String(64), nullable=False),
    Column("token", String(64), nullable=False),
    Column("secret", String(128), nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),  # last use
    UniqueConstraint("consumer_key", "token", name="uq_access_token"),
)

_nonces = Table(
    "nonce_list",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("nonce", String(255), nullable=False),
    Column("consumer_id", Integer, nullable=False),
    Column("scope", String(10), nullable=False),  # "request" | "access"
    Column("token_id", Integer, nullable=False),
    UniqueConstraint("consumer_id", "scope", "token_id", "nonce", name="uq_nonce_scope"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Render a datetime in the store's fixed-width UTC format."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp. Naive values are treated as UTC."""
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _scope_filter(scope: TokenScope, token_id: int):
    return (_nonces.c.scope == scope.value) & (_nonces.c.token_id == token_id)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for consumers, users, tokens and nonce records.

    Usage:
        store = CredentialStore()
        consumer_id = store.create_consumer(Consumer(consumer_key="c1", consumer_secret="s1"))
        consumer = store.find_consumer_by_key("c1")
        store.close()
    """

    def __init__(self, db_url: str | None = None, clock: Callable[[], datetime] = _utc_now) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # Bounded wait on a locked database instead of blocking forever.
            connect_args["timeout"] = 10
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        self._clock = clock
        _metadata.create_all(self.engine)

    def _now(self) -> str:
        return format_timestamp(self._clock())

    @staticmethod
    def _inserted_id(result, table: str) -> int:
        """Return the new primary key or fail hard. A row without an id cannot be scoped."""
        key = result.inserted_primary_key
        if not key or key[0] is None:
            raise CredentialStoreError(f"insert into {table} did not return a primary key")
        return int(key[0])

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def create_consumer(self, consumer: Consumer) -> int:
        """Insert a consumer and return its id.

        Raises sqlalchemy.exc.IntegrityError if the consumer key already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _consumers.insert().values(
                    consumer_key=consumer.consumer_key,
                    consumer_secret=consumer.consumer_secret,
                    verification_mode=VerificationMode(consumer.verification_mode).value,
                    rsa_public_key=consumer.rsa_public_key,
                    is_active=1 if consumer.is_active else 0,
                    created_at=self._now(),
                )
            )
            conn.commit()
            return self._inserted_id(result, "consumers")

    def find_consumer_by_key(self, consumer_key: str) -> Consumer | None:
        with self.engine.connect() as conn:
            row = conn.execute(_consumers.select().where(_consumers.c.consumer_key == consumer_key)).fetchone()
        return _row_to_consumer(row) if row is not None else None

    def set_consumer_active(self, consumer_key: str, active: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _consumers.update()
                .where(_consumers.c.consumer_key == consumer_key)
                .values(is_active=1 if active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a user and return its id. IntegrityError on duplicate email."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    password_hash=user.password_hash,
                    is_active=1 if user.is_active else 0,
                    created_at=self._now(),
                )
            )
            conn.commit()
            return self._inserted_id(result, "users")

    def find_user_by_email(self, email: str) -> User | None:
        """Exact, case-sensitive match. The email feeds the password hash, so no normalisation."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Request tokens
    # ------------------------------------------------------------------

    def insert_request_token(self, consumer_key: str, token: str, secret: str, created_at: str | None = None) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _request_tokens.insert().values(
                    consumer_key=consumer_key,
                    token=token,
                    secret=secret,
                    created_at=created_at or self._now(),
                )
            )
            conn.commit()
            return self._inserted_id(result, "request_tokens")

    def find_request_token(self, consumer_key: str, token: str) -> RequestToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _request_tokens.select().where(
                    (_request_tokens.c.consumer_key == consumer_key) & (_request_tokens.c.token == token)
                )
            ).fetchone()
        return _row_to_request_token(row) if row is not None else None

    def find_request_token_by_verifier(self, consumer_key: str, token: str, verifier: str) -> RequestToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _request_tokens.select().where(
                    (_request_tokens.c.consumer_key == consumer_key)
                    & (_request_tokens.c.token == token)
                    & (_request_tokens.c.verification_code == verifier)
                )
            ).fetchone()
        return _row_to_request_token(row) if row is not None else None

    def bind_user(self, request_token_id: int, user_id: int) -> bool:
        """Record which user authenticated against the request token."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _request_tokens.update()
                .where(_request_tokens.c.id == request_token_id)
                .values(authorized_user_id=user_id)
            )
            conn.commit()
        return result.rowcount > 0

    def set_verification_code(self, request_token_id: int, user_id: int, code: str) -> bool:
        """Store the verification code, replacing any earlier one."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _request_tokens.update()
                .where(_request_tokens.c.id == request_token_id)
                .values(authorized_user_id=user_id, verification_code=code)
            )
            conn.commit()
        return result.rowcount > 0

    def delete_request_token(self, request_token_id: int) -> bool:
        """Delete a request token and its nonces. False if it was already gone."""
        with self.engine.begin() as conn:
            result = conn.execute(_request_tokens.delete().where(_request_tokens.c.id == request_token_id))
            conn.execute(_nonces.delete().where(_scope_filter(TokenScope.REQUEST, request_token_id)))
        return result.rowcount > 0

    def expire_request_token(self, request_token_id: int, observed_created_at: str) -> bool:
        """Delete the request token only if created_at is still the value the caller saw."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _request_tokens.delete().where(
                    (_request_tokens.c.id == request_token_id)
                    & (_request_tokens.c.created_at == observed_created_at)
                )
            )
            if result.rowcount:
                conn.execute(_nonces.delete().where(_scope_filter(TokenScope.REQUEST, request_token_id)))
        return result.rowcount > 0

    def exchange_request_token(
        self,
        request_token_id: int,
        verifier: str,
        consumer_key: str,
        token: str,
        secret: str,
        user_id: int,
    ) -> int | None:
        """Consume a verified request token and create the access token in one transaction.

        The request token is deleted only if its verification code still
        equals verifier. When two calls race on the same request token exactly
        one of them sees rowcount == 1; the other gets None and no access
        token is created.
        """
        with self.engine.begin() as conn:
            consumed = conn.execute(
                _request_tokens.delete().where(
                    (_request_tokens.c.id == request_token_id) & (_request_tokens.c.verification_code == verifier)
                )
            )
            if consumed.rowcount != 1:
                return None
            conn.execute(_nonces.delete().where(_scope_filter(TokenScope.REQUEST, request_token_id)))
            result = conn.execute(
                _access_tokens.insert().values(
                    consumer_key=consumer_key,
                    token=token,
                    secret=secret,
                    user_id=user_id,
                    created_at=self._now(),
                )
            )
            return self._inserted_id(result, "access_tokens")

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def insert_access_token(
        self, consumer_key: str, token: str, secret: str, user_id: int, created_at: str | None = None
    ) -> int:
        if user_id is None or user_id <= 0:
            raise ValueError("access tokens must be bound to a positive user id")
        with self.engine.connect() as conn:
            result = conn.execute(
                _access_tokens.insert().values(
                    consumer_key=consumer_key,
                    token=token,
                    secret=secret,
                    user_id=user_id,
                    created_at=created_at or self._now(),
                )
            )
            conn.commit()
            return self._inserted_id(result, "access_tokens")

    def find_access_token(self, consumer_key: str, token: str) -> AccessToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _access_tokens.select().where(
                    (_access_tokens.c.consumer_key == consumer_key) & (_access_tokens.c.token == token)
                )
            ).fetchone()
        return _row_to_access_token(row) if row is not None else None

    def touch_access_token(self, access_token_id: int) -> str | None:
        """Refresh the sliding-expiry timestamp. Returns the new value, None if the token is gone."""
        now = self._now()
        with self.engine.connect() as conn:
            result = conn.execute(
                _access_tokens.update().where(_access_tokens.c.id == access_token_id).values(created_at=now)
            )
            conn.commit()
        return now if result.rowcount > 0 else None

    def delete_access_token(self, consumer_key: str, token: str) -> bool:
        """Delete an access token and its nonces. False if no such token existed."""
        with self.engine.begin() as conn:
            token_id = conn.execute(
                select(_access_tokens.c.id).where(
                    (_access_tokens.c.consumer_key == consumer_key) & (_access_tokens.c.token == token)
                )
            ).scalar()
            if token_id is None:
                return False
            conn.execute(_access_tokens.delete().where(_access_tokens.c.id == token_id))
            conn.execute(_nonces.delete().where(_scope_filter(TokenScope.ACCESS, token_id)))
        return True

    def expire_access_token(self, access_token_id: int, observed_created_at: str) -> bool:
        """Compare-and-delete counterpart of expire_request_token()."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _access_tokens.delete().where(
                    (_access_tokens.c.id == access_token_id) & (_access_tokens.c.created_at == observed_created_at)
                )
            )
            if result.rowcount:
                conn.execute(_nonces.delete().where(_scope_filter(TokenScope.ACCESS, access_token_id)))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Nonces
    # ------------------------------------------------------------------

    def insert_nonce_if_absent(self, nonce: str, consumer_id: int, scope: TokenScope, token_id: int) -> bool:
        """Record a nonce. False means the (consumer, scope, token, nonce) tuple was already used."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _nonces.insert().values(
                        nonce=nonce,
                        consumer_id=consumer_id,
                        scope=TokenScope(scope).value,
                        token_id=token_id,
                    )
                )
        except IntegrityError:
            return False
        return True

    def nonce_exists(self, nonce: str, consumer_id: int, scope: TokenScope, token_id: int) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_nonces.c.id).where(
                    (_nonces.c.consumer_id == consumer_id)
                    & _scope_filter(TokenScope(scope), token_id)
                    & (_nonces.c.nonce == nonce)
                )
            ).fetchone()
        return row is not None

    def find_nonces(self, scope: TokenScope, token_id: int) -> list[NonceRecord]:
        with self.engine.connect() as conn:
            rows = conn.execute(_nonces.select().where(_scope_filter(TokenScope(scope), token_id))).fetchall()
        return [_row_to_nonce(r) for r in rows]

    def count_nonces(self, scope: TokenScope, token_id: int) -> int:
        return len(self.find_nonces(scope, token_id))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self, cutoff: datetime) -> tuple[int, int]:
        """Delete every token last touched before cutoff, with its nonces.

        Returns (request_tokens_removed, access_tokens_removed).
        """
        cutoff_iso = format_timestamp(cutoff)
        counts = []
        for table, scope in ((_request_tokens, TokenScope.REQUEST), (_access_tokens, TokenScope.ACCESS)):
            with self.engine.begin() as conn:
                ids = [r[0] for r in conn.execute(select(table.c.id).where(table.c.created_at < cutoff_iso))]
                if ids:
                    conn.execute(
                        _nonces.delete().where((_nonces.c.scope == scope.value) & (_nonces.c.token_id.in_(ids)))
                    )
                    conn.execute(table.delete().where(table.c.id.in_(ids)))
            counts.append(len(ids))
        if any(counts):
            logger.info("Purged %d request tokens and %d access tokens", counts[0], counts[1])
        return counts[0], counts[1]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_consumer(row) -> Consumer:
    return Consumer(
        id=row.id,
        consumer_key=row.consumer_key,
        consumer_secret=row.consumer_secret,
        verification_mode=VerificationMode(row.verification_mode),
        rsa_public_key=row.rsa_public_key,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_request_token(row) -> RequestToken:
    return RequestToken(
        id=row.id,
        consumer_key=row.consumer_key,
        token=row.token,
        secret=row.secret,
        created_at=row.created_at,
        authorized_user_id=row.authorized_user_id,
        verification_code=row.verification_code,
    )


def _row_to_access_token(row) -> AccessToken:
    return AccessToken(
        id=row.id,
        consumer_key=row.consumer_key,
        token=row.token,
        secret=row.secret,
        user_id=row.user_id,
        created_at=row.created_at,
    )


def _row_to_nonce(row) -> NonceRecord:
    return NonceRecord(
        nonce=row.nonce,
        consumer_id=row.consumer_id,
        scope=TokenScope(row.scope),
        token_id=row.token_id,
    )
