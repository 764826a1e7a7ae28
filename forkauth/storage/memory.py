from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from forkauth.logging import get_logger
from forkauth.storage.common import normalize_email, normalize_permissions
from forkauth.storage.errors import ConstraintViolation
from forkauth.storage.models import Account, RefreshSession, ServiceAccount, utcnow


def _copy_account(account: Account) -> Account:
    return replace(account, permission_overrides=list(account.permission_overrides))


def _copy_service_account(account: ServiceAccount) -> ServiceAccount:
    return replace(account, scopes=list(account.scopes))


class MemoryStore:
    """In-process credential store for tests and single-node development.

    Every method runs under one re-entrant lock, so a refresh session
    consume is a single critical section and cannot interleave with a
    revoke of the same row. Records are copied on the way out so callers
    never mutate stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_sessions: Dict[str, RefreshSession] = {}
        self.service_accounts: Dict[str, ServiceAccount] = {}
        self.client_secrets: Dict[str, str] = {}
        self._data_lock = threading.RLock()

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
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized,
                role=role,
                first_name=first_name,
                last_name=last_name,
                permission_overrides=normalize_permissions(permission_overrides),
                is_active=is_active,
                password_change_required=password_change_required,
            )
            self.accounts[account.id] = account
            return _copy_account(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return _copy_account(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return _copy_account(account) if account else None

    def list_accounts(self, role: str | None = None, limit: int = 100) -> List[Account]:
        with self._data_lock:
            results = [
                _copy_account(a)
                for a in self.accounts.values()
                if not role or a.role == role
            ]
        return sorted(results, key=lambda a: a.created_at, reverse=True)[:limit]

    def _update_account(self, account_id: str, **changes) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            for name, value in changes.items():
                setattr(account, name, value)
            account.updated_at = utcnow()
            return _copy_account(account)

    def set_account_active(self, account_id: str, is_active: bool) -> Optional[Account]:
        return self._update_account(account_id, is_active=is_active)

    def set_permission_overrides(
        self, account_id: str, permissions: Iterable[str]
    ) -> Optional[Account]:
        return self._update_account(
            account_id, permission_overrides=normalize_permissions(permissions)
        )

    def set_password_change_required(
        self, account_id: str, required: bool
    ) -> Optional[Account]:
        return self._update_account(account_id, password_change_required=required)

    def record_login(self, account_id: str, when: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.last_login_at = when

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if self.accounts.pop(account_id, None) is None:
                return False
            self.credentials.pop(account_id, None)
            for digest, sess in list(self.refresh_sessions.items()):
                if sess.account_id == account_id:
                    self.refresh_sessions.pop(digest, None)
            return True

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            self.credentials[account_id] = (password_hash, password_algo)

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(account_id)

    # -- refresh sessions ----------------------------------------------

    def create_refresh_session(self, session: RefreshSession) -> RefreshSession:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": session.account_id}
                )
            if session.token_hash in self.refresh_sessions:
                raise ConstraintViolation("refresh token collision", {"field": "token"})
            self.refresh_sessions[session.token_hash] = replace(session)
            return replace(session)

    def get_active_refresh_session(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshSession]:
        with self._data_lock:
            sess = self.refresh_sessions.get(token_hash)
            if not sess or not sess.is_valid(now):
                return None
            return replace(sess)

    def consume_refresh_session(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshSession]:
        with self._data_lock:
            sess = self.refresh_sessions.get(token_hash)
            if not sess or not sess.is_valid(now):
                return None
            sess.revoked = True
            return replace(sess)

    def revoke_refresh_session(self, token_hash: str) -> bool:
        with self._data_lock:
            sess = self.refresh_sessions.get(token_hash)
            if not sess:
                return False
            sess.revoked = True
            return True

    def revoke_account_refresh_sessions(self, account_id: str) -> int:
        count = 0
        with self._data_lock:
            for sess in self.refresh_sessions.values():
                if sess.account_id == account_id and not sess.revoked:
                    sess.revoked = True
                    count += 1
        return count

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
        with self._data_lock:
            for existing in self.service_accounts.values():
                if existing.name == name:
                    raise ConstraintViolation("name already exists", {"field": "name"})
                if existing.client_id == client_id:
                    raise ConstraintViolation(
                        "client id already exists", {"field": "client_id"}
                    )
            account = ServiceAccount(
                id=str(uuid.uuid4()),
                name=name,
                client_id=client_id,
                service_name=service_name,
                scopes=list(scopes),
                active=active,
                description=description,
                created_by=created_by,
            )
            self.service_accounts[account.id] = account
            self.client_secrets[account.id] = secret_hash
            return _copy_service_account(account)

    def get_service_account(self, service_account_id: str) -> Optional[ServiceAccount]:
        with self._data_lock:
            account = self.service_accounts.get(service_account_id)
            return _copy_service_account(account) if account else None

    def get_service_account_by_client_id(self, client_id: str) -> Optional[ServiceAccount]:
        with self._data_lock:
            account = next(
                (a for a in self.service_accounts.values() if a.client_id == client_id),
                None,
            )
            return _copy_service_account(account) if account else None

    def list_service_accounts(self) -> List[ServiceAccount]:
        with self._data_lock:
            results = [_copy_service_account(a) for a in self.service_accounts.values()]
        return sorted(results, key=lambda a: a.created_at)

    def update_service_account(
        self,
        service_account_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        scopes: Iterable[str] | None = None,
        active: bool | None = None,
    ) -> Optional[ServiceAccount]:
        with self._data_lock:
            account = self.service_accounts.get(service_account_id)
            if not account:
                return None
            if name is not None and name != account.name:
                if any(a.name == name for a in self.service_accounts.values()):
                    raise ConstraintViolation("name already exists", {"field": "name"})
                account.name = name
            if description is not None:
                account.description = description
            if scopes is not None:
                account.scopes = list(scopes)
            if active is not None:
                account.active = active
            account.updated_at = utcnow()
            return _copy_service_account(account)

    def delete_service_account(self, service_account_id: str) -> bool:
        with self._data_lock:
            self.client_secrets.pop(service_account_id, None)
            return self.service_accounts.pop(service_account_id, None) is not None

    def save_client_secret(self, service_account_id: str, secret_hash: str) -> bool:
        with self._data_lock:
            account = self.service_accounts.get(service_account_id)
            if not account:
                return False
            self.client_secrets[service_account_id] = secret_hash
            account.updated_at = utcnow()
            return True

    def get_client_secret_hash(self, service_account_id: str) -> Optional[str]:
        with self._data_lock:
            return self.client_secrets.get(service_account_id)

    def touch_service_account(self, service_account_id: str, when: datetime) -> None:
        with self._data_lock:
            account = self.service_accounts.get(service_account_id)
            if account:
                account.last_used_at = when
