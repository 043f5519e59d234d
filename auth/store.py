"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_refresh_token /
_row_to_reset are the mappers. The session manager and routes never touch
SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Ledger rows (refresh_tokens, password_reset_tokens) are never updated in
  place -- they are inserted, then deleted. Deletes that gate a security
  decision (consume_refresh_token, apply_password_reset) report whether a
  row was actually removed, so two concurrent requests presenting the same
  token cannot both succeed.

DB path: auth/survista_auth.db unless DATABASE_URL says otherwise.

Layer rule: no imports from api/, mail/, or core/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine

from auth.models import PasswordResetChallenge, RefreshTokenRecord, Role, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # always lowercased
    Column("name", String(255), nullable=False),
    Column("first_name", String(255)),
    Column("last_name", String(255)),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("role", String(30), nullable=False, server_default=Role.SURVEY_MANAGER.value),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("jti", String(64), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_password_resets = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("selector", String(64), nullable=False, unique=True),
    Column("token_hash", Text, nullable=False),  # argon2 hash of the verifier
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement per connection.

    SQLite PRAGMAs are not inherited by new connections from the pool, and
    foreign_keys is off by default -- without it ON DELETE CASCADE is inert.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime) -> str:
    # Fixed-width UTC strings so lexical order matches time order.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _to_iso(_now())


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users and their session / reset ledgers.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="a@x.com", name="A", hashed_password=hash_password("secret")))
        user = store.get_by_email("A@X.com")
        store.close()
    """

    # Fields update_user() accepts. Column names are validated against this
    # whitelist before being passed to SQLAlchemy.
    _MUTABLE_USER_FIELDS: set = {"name", "first_name", "last_name", "role", "is_active", "hashed_password"}

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
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
        """Insert a new user and return its generated ID.

        Raises sqlalchemy.exc.IntegrityError if the (lowercased) email already
        exists. The unique index is the final arbiter when two registrations
        race past the caller's existence check.
        """
        user_id = str(uuid.uuid4())
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=_normalize_email(user.email),
                    name=user.name,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    hashed_password=user.hashed_password,
                    role=Role(user.role).value,
                    is_active=1 if user.is_active else 0,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return user_id

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, case-insensitively. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == _normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by email. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: name, first_name, last_name, role, is_active,
        hashed_password. Unknown keys raise ValueError rather than being
        silently dropped.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - self._MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    def count_active_admins(self) -> int:
        """Return the number of active PLATFORM_ADMIN users."""
        with self.engine.connect() as conn:
            result = conn.execute(
                text("SELECT COUNT(*) FROM users WHERE role = :role AND is_active = 1"),
                {"role": Role.PLATFORM_ADMIN.value},
            ).scalar()
        return result or 0

    def delete_user(self, user_id: str) -> bool:
        """Permanently delete a user and every ledger row they own.

        The ledger deletes run explicitly in the same transaction, so cleanup
        does not depend on the database honouring ON DELETE CASCADE.
        Returns True if the user existed.
        """
        with self.engine.begin() as conn:
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            conn.execute(_password_resets.delete().where(_password_resets.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh token ledger
    # ------------------------------------------------------------------

    def create_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _refresh_tokens.insert().values(
                    jti=record.jti,
                    user_id=record.user_id,
                    expires_at=_to_iso(record.expires_at),
                    created_at=_now_iso(),
                )
            )
            conn.commit()

    def get_refresh_token(self, jti: str) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.jti == jti)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def list_refresh_tokens(self, user_id: str) -> list[RefreshTokenRecord]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.user_id == user_id)
                .order_by(_refresh_tokens.c.created_at)
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def consume_refresh_token(self, jti: str, user_id: str) -> bool:
        """Compare-and-delete a ledger row. Returns True only if this call removed it.

        Two requests racing on the same refresh token both reach this point;
        the database serializes the DELETE and exactly one sees rowcount == 1.
        The loser must fail closed.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.jti == jti) & (_refresh_tokens.c.user_id == user_id)
                )
            )
            conn.commit()
        return result.rowcount == 1

    def delete_refresh_token(self, jti: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.jti == jti))
            conn.commit()
        return result.rowcount > 0

    def delete_refresh_tokens_for_user(self, user_id: str) -> int:
        """Remove every ledger row for a user (multi-device logout). Returns the count."""
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Password reset ledger
    # ------------------------------------------------------------------

    def replace_password_reset(self, challenge: PasswordResetChallenge) -> int:
        """Delete any prior challenge for the user and insert this one atomically.

        Keeps the at-most-one-active-challenge invariant even when two
        forgot-password requests for the same account overlap.
        """
        with self.engine.begin() as conn:
            conn.execute(_password_resets.delete().where(_password_resets.c.user_id == challenge.user_id))
            result = conn.execute(
                _password_resets.insert().values(
                    user_id=challenge.user_id,
                    selector=challenge.selector,
                    token_hash=challenge.token_hash,
                    expires_at=_to_iso(challenge.expires_at),
                    created_at=_now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def get_password_reset_by_selector(self, selector: str) -> PasswordResetChallenge | None:
        with self.engine.connect() as conn:
            row = conn.execute(_password_resets.select().where(_password_resets.c.selector == selector)).fetchone()
        return _row_to_reset(row) if row is not None else None

    def get_password_reset_for_user(self, user_id: str) -> PasswordResetChallenge | None:
        with self.engine.connect() as conn:
            row = conn.execute(_password_resets.select().where(_password_resets.c.user_id == user_id)).fetchone()
        return _row_to_reset(row) if row is not None else None

    def apply_password_reset(self, challenge_id: int, user_id: str, hashed_password: str) -> bool:
        """Consume a challenge and set the new password hash in one transaction.

        The challenge delete runs first and gates the update: if another
        request already consumed the challenge, nothing is written and False
        is returned. Any database error rolls back both statements.
        """
        with self.engine.begin() as conn:
            deleted = conn.execute(
                _password_resets.delete().where(
                    (_password_resets.c.id == challenge_id) & (_password_resets.c.user_id == user_id)
                )
            )
            if deleted.rowcount != 1:
                return False
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(hashed_password=hashed_password, updated_at=_now_iso())
            )
        return True

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Delete expired refresh records and reset challenges. Returns rows removed.

        ISO-8601 UTC strings sort lexically in time order, so a string
        comparison against the current timestamp is a correct expiry test.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            refresh = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= now))
            resets = conn.execute(_password_resets.delete().where(_password_resets.c.expires_at <= now))
        return refresh.rowcount + resets.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        first_name=row.first_name,
        last_name=row.last_name,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        is_active=bool(row.is_active),
        last_login=row.last_login,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        jti=row.jti,
        user_id=row.user_id,
        expires_at=_parse_ts(row.expires_at),
        created_at=row.created_at,
    )


def _row_to_reset(row) -> PasswordResetChallenge:
    return PasswordResetChallenge(
        id=row.id,
        user_id=row.user_id,
        selector=row.selector,
        token_hash=row.token_hash,
        expires_at=_parse_ts(row.expires_at),
        created_at=row.created_at,
    )
