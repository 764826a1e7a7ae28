from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from forkauth.logging import get_logger
from forkauth.storage.common import normalize_email, normalize_permissions
from forkauth.storage.errors import ConstraintViolation, StoreUnavailable
from forkauth.storage.models import Account, RefreshSession, ServiceAccount

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        permission_overrides TEXT[] NOT NULL DEFAULT '{}',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        password_change_required BOOLEAN NOT NULL DEFAULT FALSE,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_credential (
        account_id TEXT PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_session (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        user_agent TEXT,
        ip_addr TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_session_account_idx ON refresh_session (account_id) WHERE NOT revoked",
    """
    CREATE TABLE IF NOT EXISTS service_account (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        client_id TEXT NOT NULL UNIQUE,
        client_secret_hash TEXT NOT NULL,
        service_name TEXT NOT NULL,
        scopes TEXT[] NOT NULL DEFAULT '{}',
        active BOOLEAN NOT NULL DEFAULT TRUE,
        description TEXT,
        created_by TEXT,
        last_used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_SERVICE_ACCOUNT_COLUMNS = (
    "id, name, client_id, service_name, scopes, active, description, "
    "created_by, last_used_at, created_at, updated_at"
)


def _row_to_account(row: Dict[str, Any]) -> Account:
    return Account(
        id=row["id"],
        email=row["email"],
        role=row["role"],
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        permission_overrides=list(row.get("permission_overrides") or []),
        is_active=bool(row["is_active"]),
        password_change_required=bool(row["password_change_required"]),
        last_login_at=row.get("last_login_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_session(row: Dict[str, Any]) -> RefreshSession:
    return RefreshSession(
        id=row["id"],
        account_id=row["account_id"],
        token_hash=row["token_hash"],
        expires_at=row["expires_at"],
        revoked=bool(row["revoked"]),
        user_agent=row.get("user_agent"),
        ip_addr=row.get("ip_addr"),
        created_at=row["created_at"],
    )


def _row_to_service_account(row: Dict[str, Any]) -> ServiceAccount:
    return ServiceAccount(
        id=row["id"],
        name=row["name"],
        client_id=row["client_id"],
        service_name=row["service_name"],
        scopes=list(row.get("scopes") or []),
        active=bool(row["active"]),
        description=row.get("description"),
        created_by=row.get("created_by"),
        last_used_at=row.get("last_used_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresStore:
    """Postgres-backed credential store.

    Pool checkout and every statement are bounded by ``timeout`` seconds;
    exceeding either surfaces as ``StoreUnavailable``. Refresh session
    redemption uses single conditional statements so the revoked check and
    the read (or consume) see one row version.
    """

    def __init__(self, dsn: str, *, timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        statement_ms = max(1, int(timeout * 1000))
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_ms}",
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", error=str(exc))
            raise StoreUnavailable("credential store unavailable") from exc
        except errors.QueryCanceled as exc:
            self.logger.error("postgres_statement_timeout", error=str(exc))
            raise StoreUnavailable("credential store unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- accounts -------------------------------------------------------

    def create_account(
        self,
        email: str,
        *,
        role: str = "customer",
        first_name: str | None = None,
        last_name: str | None = None,
        permission_overrides: Iterable[str] | None = None,
        is_active: bool = True,
        password_change_required: bool = False,
    ) -> Account:
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, email, role, first_name, last_name,
                                         permission_overrides, is_active, password_change_required)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        normalize_email(email),
                        role,
                        first_name,
                        last_name,
                        normalize_permissions(permission_overrides),
                        is_active,
                        password_change_required,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return _row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return _row_to_account(row) if row else None

    def list_accounts(self, role: str | None = None, limit: int = 100) -> List[Account]:
        with self._connect() as conn:
            if role:
                rows = conn.execute(
                    "SELECT * FROM account WHERE role = %s ORDER BY created_at DESC LIMIT %s",
                    (role, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM account ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [_row_to_account(row) for row in rows]

    def _update_account(self, account_id: str, column: str, value: Any) -> Optional[Account]:
        # column names come from this module only, never from callers
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE account SET {column} = %s, updated_at = now() WHERE id = %s RETURNING *",
                (value, account_id),
            ).fetchone()
        return _row_to_account(row) if row else None

    def set_account_active(self, account_id: str, is_active: bool) -> Optional[Account]:
        return self._update_account(account_id, "is_active", is_active)

    def set_permission_overrides(
        self, account_id: str, permissions: Iterable[str]
    ) -> Optional[Account]:
        return self._update_account(
            account_id, "permission_overrides", normalize_permissions(permissions)
        )

    def set_password_change_required(
        self, account_id: str, required: bool
    ) -> Optional[Account]:
        return self._update_account(account_id, "password_change_required", required)

    def record_login(self, account_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET last_login_at = %s WHERE id = %s", (when, account_id)
            )

    def delete_account(self, account_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
            return cur.rowcount > 0

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for credentials", {"account_id": account_id}
            )

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account_credential WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # -- refresh sessions ----------------------------------------------

    def create_refresh_session(self, session: RefreshSession) -> RefreshSession:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_session (id, account_id, token_hash, expires_at,
                                                 revoked, user_agent, ip_addr, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.token_hash,
                        session.expires_at,
                        session.revoked,
                        session.user_agent,
                        session.ip_addr,
                        session.created_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account does not exist", {"account_id": session.account_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token"})
        return _row_to_session(row)

    def get_active_refresh_session(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM refresh_session
                WHERE token_hash = %s AND NOT revoked AND expires_at > %s
                """,
                (token_hash, now),
            ).fetchone()
        return _row_to_session(row) if row else None

    def consume_refresh_session(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_session SET revoked = TRUE
                WHERE token_hash = %s AND NOT revoked AND expires_at > %s
                RETURNING *
                """,
                (token_hash, now),
            ).fetchone()
        return _row_to_session(row) if row else None

    def revoke_refresh_session(self, token_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_session SET revoked = TRUE WHERE token_hash = %s",
                (token_hash,),
            )
            return cur.rowcount > 0

    def revoke_account_refresh_sessions(self, account_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_session SET revoked = TRUE WHERE account_id = %s AND NOT revoked",
                (account_id,),
            )
            return cur.rowcount

    # -- service accounts ----------------------------------------------

    def create_service_account(
        self,
        *,
        name: str,
        client_id: str,
        service_name: str,
        scopes: Iterable[str],
        secret_hash: str,
        description: str | None = None,
        created_by: str | None = None,
        active: bool = True,
    ) -> ServiceAccount:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO service_account (id, name, client_id, client_secret_hash,
                                                 service_name, scopes, active, description, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_SERVICE_ACCOUNT_COLUMNS}
                    """,
                    (
                        str(uuid.uuid4()),
                        name,
                        client_id,
                        secret_hash,
                        service_name,
                        list(scopes),
                        active,
                        description,
                        created_by,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "client_id" if "client_id" in str(exc) else "name"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return _row_to_service_account(row)

    def get_service_account(self, service_account_id: str) -> Optional[ServiceAccount]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SERVICE_ACCOUNT_COLUMNS} FROM service_account WHERE id = %s",
                (service_account_id,),
            ).fetchone()
        return _row_to_service_account(row) if row else None

    def get_service_account_by_client_id(self, client_id: str) -> Optional[ServiceAccount]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SERVICE_ACCOUNT_COLUMNS} FROM service_account WHERE client_id = %s",
                (client_id,),
            ).fetchone()
        return _row_to_service_account(row) if row else None

    def list_service_accounts(self) -> List[ServiceAccount]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SERVICE_ACCOUNT_COLUMNS} FROM service_account ORDER BY created_at"
            ).fetchall()
        return [_row_to_service_account(row) for row in rows]

    def update_service_account(
        self,
        service_account_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        scopes: Iterable[str] | None = None,
        active: bool | None = None,
    ) -> Optional[ServiceAccount]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE service_account SET
                        name = COALESCE(%s, name),
                        description = COALESCE(%s, description),
                        scopes = COALESCE(%s, scopes),
                        active = COALESCE(%s, active),
                        updated_at = now()
                    WHERE id = %s
                    RETURNING {_SERVICE_ACCOUNT_COLUMNS}
                    """,
                    (
                        name,
                        description,
                        list(scopes) if scopes is not None else None,
                        active,
                        service_account_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("name already exists", {"field": "name"})
        return _row_to_service_account(row) if row else None

    def delete_service_account(self, service_account_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM service_account WHERE id = %s", (service_account_id,)
            )
            return cur.rowcount > 0

    def save_client_secret(self, service_account_id: str, secret_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE service_account SET client_secret_hash = %s, updated_at = now()
                WHERE id = %s
                """,
                (secret_hash, service_account_id),
            )
            return cur.rowcount > 0

    def get_client_secret_hash(self, service_account_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT client_secret_hash FROM service_account WHERE id = %s",
                (service_account_id,),
            ).fetchone()
        return str(row["client_secret_hash"]) if row else None

    def touch_service_account(self, service_account_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE service_account SET last_used_at = %s WHERE id = %s",
                (when, service_account_id),
            )
