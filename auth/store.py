"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository; the _row_to_*
functions are the mappers. Services and routes never touch SQL directly.

The store is the single source of truth for users, sessions, credentials,
roles, and overrides. Caches elsewhere are derived from it and time-bounded.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Credential rows hold cipher envelopes only (auth/crypto.py); this module
  never sees plaintext secrets.

Timestamps are stored as UTC ISO 8601 strings with microsecond precision, so
lexicographic comparison in SQL matches chronological order.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

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
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Credential, CredentialKind, PermissionOverride, Role, Session, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("ha_user_id", String(64), unique=True),  # NULL for local-only users
    Column("username", String(255), unique=True),  # NULL for OAuth-only users
    Column("password_hash", Text),
    Column("display_name", String(255), nullable=False),
    Column("role_id", Integer),
    Column("person_entity_id", String(255)),
    Column("ha_instance_url", Text),
    Column("status", String(16), nullable=False, server_default="active"),
    Column("created_at", String(40), nullable=False),
    Column("last_login_at", String(40)),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(64), nullable=False, unique=True),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", Integer, nullable=False),
    Column("permission_key", String(128), nullable=False),
    Column("position", Integer, nullable=False),
    UniqueConstraint("role_id", "permission_key"),
)

_overrides = Table(
    "permission_overrides",
    _metadata,
    Column("user_id", Integer, nullable=False),
    Column("permission_key", String(128), nullable=False),
    Column("granted", Integer, nullable=False),
    UniqueConstraint("user_id", "permission_key"),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("token", String(128), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("last_seen_at", String(40)),
)

_credentials = Table(
    "credentials",
    _metadata,
    Column("user_id", Integer, primary_key=True),
    Column("kind", String(32), primary_key=True),
    Column("secret", Text, nullable=False),  # cipher envelope
    Column("refresh_secret", Text),  # cipher envelope, HA only
    Column("client_id", Text),
    Column("expires_at", String(40)),
    Column("updated_at", String(40), nullable=False),
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


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, sessions, credentials, roles, and overrides.

    Usage:
        store = UserStore("sqlite:///homeboard.db")
        user = store.upsert_user("ha-user-id", "Alice", "https://ha.example.com")
        store.create_session(Session(...))
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///homeboard.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def find_user(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_ha_user_id(self, ha_user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.ha_user_id == ha_user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError on a duplicate username or
        ha_user_id.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    ha_user_id=user.ha_user_id,
                    username=user.username,
                    password_hash=user.password_hash,
                    display_name=user.display_name,
                    role_id=user.role_id,
                    person_entity_id=user.person_entity_id,
                    ha_instance_url=user.ha_instance_url,
                    status=user.status,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def upsert_user(self, ha_user_id: str, display_name: str, ha_instance_url: str | None = None) -> User:
        """Resolve or create the user for a set of Home Assistant identity claims.

        Existing users get their display name and instance URL refreshed; role
        and status are left alone (role is an admin decision, not a claim).

        Two first logins for the same Home Assistant user can race past the
        lookup; the loser's insert hits the ha_user_id unique constraint and
        falls back to updating the winner's row.
        """
        existing = self.get_by_ha_user_id(ha_user_id)
        if existing is None:
            try:
                user_id = self.create_user(
                    User(display_name=display_name, ha_user_id=ha_user_id, ha_instance_url=ha_instance_url)
                )
                return self.find_user(user_id)
            except IntegrityError:
                existing = self.get_by_ha_user_id(ha_user_id)
                if existing is None:
                    raise
        self.update_user(existing.id, display_name=display_name, ha_instance_url=ha_instance_url)
        return self.find_user(existing.id)

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.id)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: display_name, role_id, person_entity_id,
        ha_instance_url, status, password_hash, username.
        Returns True if a row was updated.
        """
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=_now_iso()))

    def count_active_with_role(self, role_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.role_id == role_id) & (_users.c.status == "active"))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Roles and overrides
    # ------------------------------------------------------------------

    def create_role(self, name: str, permissions: list[str] | None = None) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_roles.insert().values(name=name))
            role_id = result.inserted_primary_key[0]
        if permissions:
            self.set_role_permissions(role_id, permissions)
        return role_id

    def set_role_permissions(self, role_id: int, permissions: list[str]) -> None:
        """Replace a role's permission list, preserving the given order."""
        ordered = list(dict.fromkeys(permissions))
        with self.engine.begin() as conn:
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            for position, key in enumerate(ordered):
                conn.execute(_role_permissions.insert().values(role_id=role_id, permission_key=key, position=position))

    def get_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return self._load_role(row.id, row.name) if row is not None else None

    def get_role_by_id(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return self._load_role(row.id, row.name) if row is not None else None

    def get_role(self, user_id: int) -> Role | None:
        """Return the role assigned to user_id, or None if unassigned or unknown."""
        user = self.find_user(user_id)
        if user is None or user.role_id is None:
            return None
        return self.get_role_by_id(user.role_id)

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
        return [self._load_role(r.id, r.name) for r in rows]

    def _load_role(self, role_id: int, name: str) -> Role:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _role_permissions.select()
                .where(_role_permissions.c.role_id == role_id)
                .order_by(_role_permissions.c.position)
            ).fetchall()
        return Role(id=role_id, name=name, permissions=[r.permission_key for r in rows])

    def list_overrides(self, user_id: int) -> list[PermissionOverride]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _overrides.select().where(_overrides.c.user_id == user_id).order_by(_overrides.c.permission_key)
            ).fetchall()
        return [
            PermissionOverride(user_id=r.user_id, permission_key=r.permission_key, granted=bool(r.granted))
            for r in rows
        ]

    def set_override(self, user_id: int, permission_key: str, granted: bool) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _overrides.delete().where(
                    (_overrides.c.user_id == user_id) & (_overrides.c.permission_key == permission_key)
                )
            )
            conn.execute(
                _overrides.insert().values(user_id=user_id, permission_key=permission_key, granted=1 if granted else 0)
            )

    def delete_override(self, user_id: int, permission_key: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _overrides.delete().where(
                    (_overrides.c.user_id == user_id) & (_overrides.c.permission_key == permission_key)
                )
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    token=session.token,
                    user_id=session.user_id,
                    created_at=_iso(session.created_at),
                    expires_at=_iso(session.expires_at),
                    last_seen_at=_iso(session.last_seen_at) if session.last_seen_at else None,
                )
            )

    def find_session(self, token: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token == token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def touch_session(self, token: str, seen_at: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(_sessions.update().where(_sessions.c.token == token).values(last_seen_at=_iso(seen_at)))

    def delete_session(self, token: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.token == token))
        return result.rowcount > 0

    def delete_sessions_for_user(self, user_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
        return result.rowcount

    def purge_expired_sessions(self, now: datetime) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at < _iso(now)))
        return result.rowcount

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def upsert_credential(self, credential: Credential) -> None:
        """Replace the (user, kind) credential row as a whole.

        Delete + insert in one transaction: a refreshed credential is a new
        record, never a partial in-place mutation.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _credentials.delete().where(
                    (_credentials.c.user_id == credential.user_id) & (_credentials.c.kind == credential.kind.value)
                )
            )
            conn.execute(
                _credentials.insert().values(
                    user_id=credential.user_id,
                    kind=credential.kind.value,
                    secret=credential.secret,
                    refresh_secret=credential.refresh_secret,
                    client_id=credential.client_id,
                    expires_at=_iso(credential.expires_at) if credential.expires_at else None,
                    updated_at=_now_iso(),
                )
            )

    def find_credential(self, user_id: int, kind: CredentialKind) -> Credential | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _credentials.select().where((_credentials.c.user_id == user_id) & (_credentials.c.kind == kind.value))
            ).fetchone()
        return _row_to_credential(row) if row is not None else None

    def delete_credential(self, user_id: int, kind: CredentialKind) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _credentials.delete().where((_credentials.c.user_id == user_id) & (_credentials.c.kind == kind.value))
            )
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        ha_user_id=row.ha_user_id,
        username=row.username,
        password_hash=row.password_hash,
        display_name=row.display_name,
        role_id=row.role_id,
        person_entity_id=row.person_entity_id,
        ha_instance_url=row.ha_instance_url,
        status=row.status,
        created_at=row.created_at,
        last_login_at=row.last_login_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        token=row.token,
        user_id=row.user_id,
        created_at=_parse(row.created_at),
        expires_at=_parse(row.expires_at),
        last_seen_at=_parse(row.last_seen_at),
    )


def _row_to_credential(row) -> Credential:
    return Credential(
        user_id=row.user_id,
        kind=CredentialKind(row.kind),
        secret=row.secret,
        refresh_secret=row.refresh_secret,
        client_id=row.client_id,
        expires_at=_parse(row.expires_at),
        updated_at=row.updated_at,
    )
