from __future__ import annotations

import contextlib
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authkernel.logging import get_logger, hash_email, sanitize_error_message
from authkernel.storage.errors import DuplicateEmail, StoreUnavailable, UserNotFound
from authkernel.storage.models import User


class PostgresStore:
    """Credential store backed by a single Postgres table.

    Row schema is ``{id, email UNIQUE, password_credential}``. Email
    uniqueness is enforced by the table constraint, so two concurrent
    registrations of one address resolve to one insert and one
    ``DuplicateEmail``.
    """

    def __init__(
        self,
        dsn: str,
        table_name: str = "auth_user",
        *,
        timeout_seconds: float = 5.0,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.table = sql.Identifier(table_name)
        self.table_name = table_name
        self.logger = get_logger(__name__)
        statement_timeout_ms = max(1, int(timeout_seconds * 1000))
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=timeout_seconds,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        if ensure_schema:
            self._ensure_users_table()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, psycopg.OperationalError, psycopg.InterfaceError) as exc:
            # QueryCanceled (statement_timeout) is an OperationalError as well
            self.logger.warning(
                "postgres_unavailable",
                table=self.table_name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(
                sanitize_error_message(str(exc)), {"table": self.table_name}
            ) from exc

    def _ensure_users_table(self) -> None:
        """Create the users table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                sql.SQL(
                    """
                    CREATE TABLE IF NOT EXISTS {} (
                        id UUID PRIMARY KEY,
                        email TEXT NOT NULL UNIQUE,
                        password_credential TEXT NOT NULL,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        updated_at TIMESTAMPTZ
                    )
                    """
                ).format(self.table)
            )

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_credential=row["password_credential"],
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            updated_at=row.get("updated_at"),
        )

    def create_user(self, email: str, credential: str) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    sql.SQL(
                        """
                        INSERT INTO {} (id, email, password_credential)
                        VALUES (%s, %s, %s)
                        RETURNING id, email, password_credential, created_at, updated_at
                        """
                    ).format(self.table),
                    (user_id, email, credential),
                ).fetchone()
        except errors.UniqueViolation:
            raise DuplicateEmail("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> User:
        with self._connect() as conn:
            row = conn.execute(
                sql.SQL(
                    "SELECT id, email, password_credential, created_at, updated_at "
                    "FROM {} WHERE email = %s"
                ).format(self.table),
                (email,),
            ).fetchone()
        if not row:
            raise UserNotFound("user not found", {"email_hash": hash_email(email)})
        return self._row_to_user(row)

    def set_user_password(self, email: str, credential: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                sql.SQL(
                    "UPDATE {} SET password_credential = %s, updated_at = now() "
                    "WHERE email = %s"
                ).format(self.table),
                (credential, email),
            )
            updated = cur.rowcount
        if not updated:
            raise UserNotFound("user not found", {"email_hash": hash_email(email)})

    def close(self) -> None:
        self.pool.close()
