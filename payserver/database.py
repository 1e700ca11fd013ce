"""SQLite-backed identity store for user accounts and roles."""
from __future__ import annotations

import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from passlib.context import CryptContext

from .models import IdentityResult, User, utcnow
from .roles import ALL_ROLES


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "payserver.sqlite3").resolve(strict=False)


def _serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _new_stamp() -> str:
    return uuid.uuid4().hex


def _normalise_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def _verify_password(password: str, hashed: str) -> bool:
    try:
        return _pwd_context.verify(password, hashed)
    except ValueError:
        return False


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        email_confirmed=bool(row["email_confirmed"]),
        requires_email_confirmation=bool(row["requires_email_confirmation"]),
        approved=bool(row["approved"]),
        requires_approval=bool(row["requires_approval"]),
        created=_parse_datetime(row["created"]),
        lockout_enabled=bool(row["lockout_enabled"]),
        lockout_end=_parse_datetime(row["lockout_end"]),
        concurrency_stamp=row["concurrency_stamp"],
    )


class UserManager:
    """User and role operations bound to a single database connection.

    Instances are handed out by :meth:`Database.identity_scope` and must not
    outlive the scope that created them. Mutators return an
    :class:`~payserver.models.IdentityResult`; database faults propagate.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def find_by_id(self, user_id: str) -> Optional[User]:
        row = self._conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return _row_to_user(row)

    def update(self, user: User) -> IdentityResult:
        """Persist ``user`` if nobody else changed it since it was loaded."""

        stamp = _new_stamp()
        with self._conn:
            cursor = self._conn.execute(
                """
                UPDATE users
                   SET email = ?,
                       email_confirmed = ?,
                       requires_email_confirmation = ?,
                       approved = ?,
                       requires_approval = ?,
                       lockout_enabled = ?,
                       lockout_end = ?,
                       concurrency_stamp = ?
                 WHERE id = ? AND concurrency_stamp IS ?
                """,
                (
                    _normalise_email(user.email),
                    int(user.email_confirmed),
                    int(user.requires_email_confirmation),
                    int(user.approved),
                    int(user.requires_approval),
                    int(user.lockout_enabled),
                    _serialize_datetime(user.lockout_end),
                    stamp,
                    user.id,
                    user.concurrency_stamp,
                ),
            )
        if cursor.rowcount == 0:
            return IdentityResult.failed("ConcurrencyFailure")
        user.concurrency_stamp = stamp
        return IdentityResult.success()

    def delete(self, user: User) -> IdentityResult:
        with self._conn:
            cursor = self._conn.execute(
                "DELETE FROM users WHERE id = ? AND concurrency_stamp IS ?",
                (user.id, user.concurrency_stamp),
            )
        if cursor.rowcount == 0:
            return IdentityResult.failed("ConcurrencyFailure")
        return IdentityResult.success()

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------
    def set_lockout_enabled(self, user: User, enabled: bool) -> IdentityResult:
        user.lockout_enabled = enabled
        return self.update(user)

    def set_lockout_end_date(self, user: User, lockout_end: Optional[datetime]) -> IdentityResult:
        if not user.lockout_enabled:
            return IdentityResult.failed("UserLockoutNotEnabled")
        user.lockout_end = lockout_end
        return self.update(user)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------
    def get_roles(self, user: User) -> List[str]:
        rows = self._conn.execute(
            """
            SELECT roles.name
              FROM user_roles
              JOIN roles ON roles.id = user_roles.role_id
             WHERE user_roles.user_id = ?
            """,
            (user.id,),
        ).fetchall()
        return [str(row["name"]) for row in rows]

    def get_users_in_role(self, role_name: str) -> List[User]:
        rows = self._conn.execute(
            """
            SELECT users.*
              FROM users
              JOIN user_roles ON user_roles.user_id = users.id
              JOIN roles ON roles.id = user_roles.role_id
             WHERE roles.name = ?
            """,
            (role_name,),
        ).fetchall()
        return [_row_to_user(row) for row in rows]

    def add_to_role(self, user: User, role_name: str) -> IdentityResult:
        role_id = self._role_id(role_name)
        if role_id is None:
            return IdentityResult.failed(f"Role {role_name} does not exist")
        try:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO user_roles (user_id, role_id) VALUES (?, ?)",
                    (user.id, role_id),
                )
        except sqlite3.IntegrityError:
            return IdentityResult.failed("UserAlreadyInRole")
        return IdentityResult.success()

    def remove_from_role(self, user: User, role_name: str) -> IdentityResult:
        role_id = self._role_id(role_name)
        if role_id is None:
            return IdentityResult.failed(f"Role {role_name} does not exist")
        with self._conn:
            cursor = self._conn.execute(
                "DELETE FROM user_roles WHERE user_id = ? AND role_id = ?",
                (user.id, role_id),
            )
        if cursor.rowcount == 0:
            return IdentityResult.failed("UserNotInRole")
        return IdentityResult.success()

    def _role_id(self, role_name: str) -> Optional[str]:
        row = self._conn.execute("SELECT id FROM roles WHERE name = ?", (role_name,)).fetchone()
        if row is None:
            return None
        return str(row["id"])


class Database:
    """Simple wrapper around SQLite for persisting accounts, roles and files."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def identity_scope(self) -> Iterator[UserManager]:
        """Yield a :class:`UserManager` whose connection is closed on exit."""

        with self.connection() as conn:
            yield UserManager(conn)

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self.connection() as conn, conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT UNIQUE,
                    password_hash TEXT,
                    email_confirmed INTEGER NOT NULL DEFAULT 0,
                    requires_email_confirmation INTEGER NOT NULL DEFAULT 0,
                    approved INTEGER NOT NULL DEFAULT 0,
                    requires_approval INTEGER NOT NULL DEFAULT 0,
                    created TEXT NOT NULL,
                    lockout_enabled INTEGER NOT NULL DEFAULT 1,
                    lockout_end TEXT,
                    concurrency_stamp TEXT
                );

                CREATE TABLE IF NOT EXISTS roles (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE
                );

                CREATE TABLE IF NOT EXISTS user_roles (
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    role_id TEXT NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
                    PRIMARY KEY (user_id, role_id)
                );

                CREATE TABLE IF NOT EXISTS stored_files (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    file_name TEXT NOT NULL,
                    storage_file_name TEXT NOT NULL,
                    created TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_stored_files_user_id ON stored_files(user_id);
                """
            )
            for role_name in ALL_ROLES:
                conn.execute(
                    "INSERT OR IGNORE INTO roles (id, name) VALUES (?, ?)",
                    (uuid.uuid4().hex, role_name),
                )

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def create_user(
        self,
        email: str,
        password: str,
        *,
        requires_email_confirmation: bool = False,
        requires_approval: bool = False,
        email_confirmed: bool = False,
        approved: bool = False,
        lockout_enabled: bool = True,
    ) -> User:
        """Create a new user account and return it."""

        if not password:
            raise ValueError("Password must not be empty")
        normalized_email = _normalise_email(email)
        if not normalized_email:
            raise ValueError("Email must not be empty")

        user = User(
            id=str(uuid.uuid4()),
            email=normalized_email,
            email_confirmed=email_confirmed,
            requires_email_confirmation=requires_email_confirmation,
            approved=approved,
            requires_approval=requires_approval,
            created=utcnow(),
            lockout_enabled=lockout_enabled,
            lockout_end=None,
            concurrency_stamp=_new_stamp(),
        )

        with self.connection() as conn:
            try:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO users (
                            id, email, password_hash, email_confirmed, requires_email_confirmation,
                            approved, requires_approval, created, lockout_enabled, lockout_end,
                            concurrency_stamp
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            user.id,
                            user.email,
                            _hash_password(password),
                            int(user.email_confirmed),
                            int(user.requires_email_confirmation),
                            int(user.approved),
                            int(user.requires_approval),
                            _serialize_datetime(user.created),
                            int(user.lockout_enabled),
                            None,
                            user.concurrency_stamp,
                        ),
                    )
            except sqlite3.IntegrityError as exc:
                raise ValueError("A user with that email already exists") from exc

        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self.identity_scope() as manager:
            return manager.find_by_id(user_id)

    def count_users(self) -> int:
        with self.connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM users").fetchone()
        return int(row["total"])

    def authenticate_user(self, email: str, password: str) -> Optional[User]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?",
                (_normalise_email(email),),
            ).fetchone()
        if row is None:
            return None
        stored_hash = row["password_hash"]
        if not stored_hash or not _verify_password(password, stored_hash):
            return None
        return _row_to_user(row)

    def list_users_with_roles(self) -> List[Tuple[User, List[str]]]:
        """Return every user with the names of the roles it holds."""

        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT users.*, roles.name AS role_name
                  FROM users
                  LEFT JOIN user_roles ON user_roles.user_id = users.id
                  LEFT JOIN roles ON roles.id = user_roles.role_id
                 ORDER BY users.created, users.id
                """
            ).fetchall()

        users: Dict[str, Tuple[User, List[str]]] = {}
        for row in rows:
            user_id = str(row["id"])
            if user_id not in users:
                users[user_id] = (_row_to_user(row), [])
            if row["role_name"] is not None:
                users[user_id][1].append(str(row["role_name"]))
        return list(users.values())


__all__ = ["Database", "UserManager", "resolve_database_path"]
