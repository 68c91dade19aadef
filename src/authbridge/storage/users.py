"""Local user records.

The bridge only needs :meth:`UserStore.upsert_user`; the other calls back
the protected user operations. Records are keyed on the upstream provider's
numeric id, and the uniqueness constraint on it (not application locking)
keeps concurrent logins of the same account from creating duplicates.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import anyio.to_thread

from authbridge.exceptions import UpsertFailure, UserConflict
from authbridge.server.auth.models import Identity, UserRecord
from authbridge.utilities.logging import get_logger

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY DEFAULT (lower(hex(randomblob(16)))) NOT NULL,
    github_id INTEGER NOT NULL,
    github_login TEXT NOT NULL,
    name TEXT,
    email TEXT,
    avatar_url TEXT,
    bio TEXT,
    username TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE UNIQUE INDEX IF NOT EXISTS users_github_id_unique ON users (github_id);
CREATE UNIQUE INDEX IF NOT EXISTS users_username_unique ON users (username);
"""

UPSERT_SQL = """
INSERT INTO users (github_id, github_login, name, email, avatar_url, bio)
VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT(github_id) DO UPDATE SET
    github_login = excluded.github_login,
    name = excluded.name,
    email = excluded.email,
    avatar_url = excluded.avatar_url,
    bio = excluded.bio,
    updated_at = CURRENT_TIMESTAMP
"""

UPDATABLE_FIELDS = ("name", "username", "email")


@runtime_checkable
class UserStore(Protocol):
    """Persistence collaborator for user records."""

    async def upsert_user(self, identity: Identity) -> UserRecord: ...

    async def get_user(self, user_id: str) -> UserRecord | None: ...

    async def get_user_by_provider_id(self, provider_id: int) -> UserRecord | None: ...

    async def update_user_info(
        self,
        user_id: str,
        *,
        name: str | None = None,
        username: str | None = None,
        email: str | None = None,
    ) -> UserRecord: ...


def _to_record(row: sqlite3.Row) -> UserRecord:
    return UserRecord(
        internal_id=row["id"],
        provider_id=row["github_id"],
        login_name=row["github_login"],
        display_name=row["name"],
        email=row["email"],
        avatar_url=row["avatar_url"],
        bio=row["bio"],
        username=row["username"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SQLiteUserStore:
    """:class:`UserStore` backed by a SQLite file.

    Each call opens its own connection in a worker thread, so the store is
    safe to share across requests.

    Args:
        db_path: Path of the database file; parent directories are created.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _fetch_one(self, query: str, params: tuple[Any, ...]) -> UserRecord | None:
        conn = self._connect()
        try:
            row = conn.execute(query, params).fetchone()
        finally:
            conn.close()
        return _to_record(row) if row is not None else None

    # -------------------------------------------------------------------------
    # Upsert
    # -------------------------------------------------------------------------

    def _upsert_sync(self, identity: Identity) -> UserRecord:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    UPSERT_SQL,
                    (
                        identity.provider_id,
                        identity.login_name,
                        identity.display_name,
                        identity.email,
                        identity.avatar_url,
                        identity.bio,
                    ),
                )
            row = conn.execute(
                "SELECT * FROM users WHERE github_id = ?", (identity.provider_id,)
            ).fetchone()
        except sqlite3.Error as e:
            raise UpsertFailure(f"Failed to upsert user {identity.login_name}") from e
        finally:
            conn.close()

        if row is None:
            raise UpsertFailure(f"Failed to upsert user {identity.login_name}")
        return _to_record(row)

    async def upsert_user(self, identity: Identity) -> UserRecord:
        """Create or update the user for ``identity.provider_id``.

        Mutable profile fields are overwritten; the internal id and any
        chosen username are kept.

        Raises:
            UpsertFailure: the database rejected the write.
        """
        user = await anyio.to_thread.run_sync(self._upsert_sync, identity)
        logger.debug("Upserted user %s (%s)", user.login_name, user.internal_id)
        return user

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def get_user(self, user_id: str) -> UserRecord | None:
        return await anyio.to_thread.run_sync(
            self._fetch_one, "SELECT * FROM users WHERE id = ?", (user_id,)
        )

    async def get_user_by_provider_id(self, provider_id: int) -> UserRecord | None:
        return await anyio.to_thread.run_sync(
            self._fetch_one, "SELECT * FROM users WHERE github_id = ?", (provider_id,)
        )

    # -------------------------------------------------------------------------
    # Updates
    # -------------------------------------------------------------------------

    def _update_sync(self, user_id: str, changes: dict[str, str]) -> UserRecord:
        assignments = ", ".join(f"{column} = ?" for column in changes)
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    f"UPDATE users SET {assignments}, updated_at = CURRENT_TIMESTAMP "
                    "WHERE id = ?",
                    (*changes.values(), user_id),
                )
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        except sqlite3.IntegrityError as e:
            raise UserConflict("That username is already taken") from e
        finally:
            conn.close()

        if row is None:
            raise LookupError(f"User {user_id} not found")
        return _to_record(row)

    async def update_user_info(
        self,
        user_id: str,
        *,
        name: str | None = None,
        username: str | None = None,
        email: str | None = None,
    ) -> UserRecord:
        """Update the given profile fields; ``None`` leaves a field unchanged.

        Raises:
            ValueError: no field was given.
            UserConflict: ``username`` belongs to another user.
            LookupError: no user has ``user_id``.
        """
        changes = {
            column: value
            for column, value in zip(UPDATABLE_FIELDS, (name, username, email))
            if value is not None
        }
        if not changes:
            raise ValueError("At least one of name, username or email is required")
        user = await anyio.to_thread.run_sync(self._update_sync, user_id, changes)
        logger.info("Updated user %s (%s)", user.internal_id, ", ".join(changes))
        return user
