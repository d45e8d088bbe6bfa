"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_token are the mappers.
Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  users.email carries a UNIQUE constraint. The service pre-checks for a
  taken email to give a friendly error, but two concurrent registrations can
  both pass that check -- the constraint is what actually serializes them, and
  the loser sees sqlalchemy.exc.IntegrityError.

  tokens.user_id is a foreign key with ON DELETE CASCADE. SQLite only honours
  it when PRAGMA foreign_keys=ON is set on the connection, which
  _configure_sqlite() does for every pooled connection.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision, so lexicographic order in SQL equals chronological order.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, create_engine, event, func, select, text
from sqlalchemy.engine import Engine

from auth.models import Token, TokenType, User, UserStatus

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("status", String(16), nullable=False, server_default=UserStatus.PENDING.value),
    Column("two_factor_secret", String(64)),
    Column("is_2fa_enabled", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

_tokens = Table(
    "tokens",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token", String(1024), nullable=False, unique=True),
    Column("type", String(16), nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Both PRAGMAs are per-connection in SQLite and are not inherited by new
    connections from the pool, so this runs on every connect.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _new_id() -> str:
    return uuid.uuid4().hex


def _engine_options(db_url: str, timeout_seconds: int) -> tuple[dict, dict]:
    """Return (connect_args, engine_kwargs) bounding every DB call by timeout_seconds.

    pool_timeout only bounds the wait for a pooled connection, so the driver
    is also told to give up on connecting and on long-running statements:
      sqlite     -- busy timeout (how long a writer waits on a locked DB)
      postgresql -- connect_timeout plus a server-side statement_timeout
      mysql      -- connect/read/write timeouts on the socket
    """
    connect_args: dict = {}
    engine_kwargs: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout_seconds
        return connect_args, engine_kwargs

    engine_kwargs["pool_timeout"] = timeout_seconds
    engine_kwargs["pool_pre_ping"] = True
    if db_url.startswith("postgresql"):
        connect_args["connect_timeout"] = timeout_seconds
        connect_args["options"] = f"-c statement_timeout={timeout_seconds * 1000}"
    elif db_url.startswith("mysql"):
        connect_args["connect_timeout"] = timeout_seconds
        connect_args["read_timeout"] = timeout_seconds
        connect_args["write_timeout"] = timeout_seconds
    return connect_args, engine_kwargs


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and Token entities.

    Usage:
        store = UserStore("sqlite:///authstarter.db")
        user_id = store.create_user(User(name="Alice", email="alice@example.com", hashed_password=h))
        user = store.get_by_email("alice@example.com")
        store.close()
    """

    def __init__(self, db_url: str, timeout_seconds: int = 10) -> None:
        connect_args, engine_kwargs = _engine_options(db_url, timeout_seconds)
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its generated opaque ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        user_id = _new_id()
        with self.engine.connect() as conn:
            conn.execute(_users.insert().values(**_user_values(user, user_id)))
            conn.commit()
        return user_id

    def create_pending_user(self, user: User, token: str, expires_at: str) -> str:
        """Insert a user and its confirmation token in one transaction.

        Either both rows exist afterwards or neither does, so a failed
        registration never leaves an email taken by a user without a link.
        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        user_id = _new_id()
        with self.engine.begin() as conn:
            conn.execute(_users.insert().values(**_user_values(user, user_id)))
            conn.execute(
                _tokens.insert().values(
                    **_token_values(Token(user_id, token, TokenType.CONFIRMATION, expires_at))
                )
            )
        return user_id

    def reissue_confirmation(self, user_id: str, token: str, expires_at: str, **fields) -> None:
        """Replace a PENDING user's confirmation tokens with a new one, updating fields alongside.

        Runs in one transaction: old links stop working exactly when the new
        one (and e.g. the new password hash) is stored.
        """
        fields["updated_at"] = to_iso(utcnow())
        with self.engine.begin() as conn:
            conn.execute(
                _tokens.delete().where(
                    (_tokens.c.user_id == user_id) & (_tokens.c.type == TokenType.CONFIRMATION.value)
                )
            )
            conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.execute(
                _tokens.insert().values(
                    **_token_values(Token(user_id, token, TokenType.CONFIRMATION, expires_at))
                )
            )

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email. Emails are stored lower-cased; so is the lookup key."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def count_users(self, status: UserStatus | None = None) -> int:
        query = select(func.count()).select_from(_users)
        if status is not None:
            query = query.where(_users.c.status == UserStatus(status).value)
        with self.engine.connect() as conn:
            result = conn.execute(query).scalar()
        return result or 0

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable fields on an existing user and stamp updated_at.

        Accepted fields: name, hashed_password, status, two_factor_secret,
        is_2fa_enabled. status may be a UserStatus or its string value;
        is_2fa_enabled must be a bool and is converted to int here.

        Returns True if a row was updated, False if user_id was not found.
        """
        if "status" in fields:
            fields["status"] = UserStatus(fields["status"]).value
        if "is_2fa_enabled" in fields:
            fields["is_2fa_enabled"] = 1 if fields["is_2fa_enabled"] else 0
        fields["updated_at"] = to_iso(utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        """Permanently delete a user. Owned tokens go with it (ON DELETE CASCADE)."""
        with self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Token queries
    # ------------------------------------------------------------------

    def create_token(self, token: Token) -> str:
        """Insert a token row and return its ID.

        Raises sqlalchemy.exc.IntegrityError if user_id does not exist or the
        token string is already stored.
        """
        values = _token_values(token)
        with self.engine.connect() as conn:
            conn.execute(_tokens.insert().values(**values))
            conn.commit()
        return values["id"]

    def get_token(self, token: str, token_type: TokenType) -> Token | None:
        """Look up a token by value AND type. A refresh string never matches as a confirmation token."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _tokens.select().where((_tokens.c.token == token) & (_tokens.c.type == TokenType(token_type).value))
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def list_tokens(self, user_id: str, token_type: TokenType | None = None) -> list[Token]:
        query = _tokens.select().where(_tokens.c.user_id == user_id)
        if token_type is not None:
            query = query.where(_tokens.c.type == TokenType(token_type).value)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_tokens.c.created_at)).fetchall()
        return [_row_to_token(r) for r in rows]

    def delete_token(self, token: str) -> bool:
        """Consume or revoke a token. Returns True if a row was removed.

        Callers that must be single-use check the return value: when two
        requests race on the same token only one of them deletes the row.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.token == token))
            conn.commit()
        return result.rowcount > 0

    def delete_user_tokens(self, user_id: str, token_type: TokenType | None = None) -> int:
        """Revoke every token of a user (optionally of one type). Returns rows removed."""
        query = _tokens.delete().where(_tokens.c.user_id == user_id)
        if token_type is not None:
            query = query.where(_tokens.c.type == TokenType(token_type).value)
        with self.engine.connect() as conn:
            result = conn.execute(query)
            conn.commit()
        return result.rowcount

    def purge_expired_tokens(self, now: datetime | None = None) -> int:
        """Delete all tokens at or past their expiry. Returns rows removed."""
        cutoff = to_iso(now or utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.expires_at <= cutoff))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _user_values(user: User, user_id: str) -> dict:
    now = to_iso(utcnow())
    return {
        "id": user_id,
        "name": user.name,
        "email": user.email.strip().lower(),
        "hashed_password": user.hashed_password,
        "status": UserStatus(user.status).value,
        "two_factor_secret": user.two_factor_secret,
        "is_2fa_enabled": 1 if user.is_2fa_enabled else 0,
        "created_at": now,
        "updated_at": now,
    }


def _token_values(token: Token) -> dict:
    return {
        "id": _new_id(),
        "user_id": token.user_id,
        "token": token.token,
        "type": TokenType(token.type).value,
        "created_at": to_iso(utcnow()),
        "expires_at": token.expires_at,
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        hashed_password=row.hashed_password,
        status=UserStatus(row.status),
        two_factor_secret=row.two_factor_secret,
        is_2fa_enabled=bool(row.is_2fa_enabled),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_token(row) -> Token:
    return Token(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        type=TokenType(row.type),
        created_at=row.created_at,
        expires_at=row.expires_at,
    )
