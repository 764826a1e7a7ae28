from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Iterable, List, Optional, Protocol

from forkauth.storage.models import Account, RefreshSession, ServiceAccount


def token_digest(token: str) -> str:
    """SHA-256 hex digest used to key opaque tokens at rest."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_permissions(values: Iterable[str] | None) -> List[str]:
    return sorted({v.strip() for v in values or [] if v and v.strip()})


class CredentialStore(Protocol):
    """Persistence contract shared by ``MemoryStore`` and ``PostgresStore``."""

    # Accounts
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
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def list_accounts(self, role: str | None = None, limit: int = 100) -> List[Account]: ...

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]: ...

    def set_account_active(self, account_id: str, is_active: bool) -> Optional[Account]: ...

    def set_permission_overrides(
        self, account_id: str, permissions: Iterable[str]
    ) -> Optional[Account]: ...

    def set_password_change_required(
        self, account_id: str, required: bool
    ) -> Optional[Account]: ...

    def record_login(self, account_id: str, when: datetime) -> None: ...

    def delete_account(self, account_id: str) -> bool: ...

    # Refresh sessions
    def create_refresh_session(self, session: RefreshSession) -> RefreshSession: ...

    def get_active_refresh_session(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshSession]: ...

    def consume_refresh_session(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshSession]: ...

    def revoke_refresh_session(self, token_hash: str) -> bool: ...

    def revoke_account_refresh_sessions(self, account_id: str) -> int: ...

    # Service accounts
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
    ) -> ServiceAccount: ...

    def get_service_account(self, service_account_id: str) -> Optional[ServiceAccount]: ...

    def get_service_account_by_client_id(self, client_id: str) -> Optional[ServiceAccount]: ...

    def list_service_accounts(self) -> List[ServiceAccount]: ...

    def update_service_account(
        self,
        service_account_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        scopes: Iterable[str] | None = None,
        active: bool | None = None,
    ) -> Optional[ServiceAccount]: ...

    def delete_service_account(self, service_account_id: str) -> bool: ...

    def save_client_secret(self, service_account_id: str, secret_hash: str) -> bool: ...

    def get_client_secret_hash(self, service_account_id: str) -> Optional[str]: ...

    def touch_service_account(self, service_account_id: str, when: datetime) -> None: ...


__all__ = [
    "CredentialStore",
    "normalize_email",
    "normalize_permissions",
    "token_digest",
]
