from __future__ import annotations

import secrets
from typing import Iterable, List, Optional, Tuple

from forkauth.logging import get_logger
from forkauth.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidScopesError,
    NotFoundError,
    ValidationError,
)
from forkauth.service.passwords import PasswordManager
from forkauth.service.scopes import default_scopes, invalid_scopes, is_known_service
from forkauth.service.tokens import IssuedToken, TokenIssuer
from forkauth.storage.common import CredentialStore
from forkauth.storage.errors import ConstraintViolation
from forkauth.storage.models import ServiceAccount, utcnow

CLIENT_ID_PREFIX = "svc_"

# Verified against when a client id is unknown so both failure paths hash once
_DUMMY_SECRET = secrets.token_hex(32)


def generate_client_id() -> str:
    return f"{CLIENT_ID_PREFIX}{secrets.token_hex(16)}"


def generate_client_secret() -> str:
    return secrets.token_hex(32)


class ServiceCredentialManager:
    """Issues, verifies and rotates client credentials for service accounts.

    Plaintext secrets leave this class only as the return value of
    :meth:`create` and :meth:`rotate_secret`.
    """

    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        passwords: PasswordManager,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.passwords = passwords
        self.logger = get_logger(__name__)
        self._dummy_hash, _ = passwords.hash(_DUMMY_SECRET)

    def _resolve_scopes(self, service_name: str, scopes: Optional[Iterable[str]]) -> List[str]:
        if not is_known_service(service_name):
            raise ValidationError(
                "unknown service name", detail={"field": "service_name"}
            )
        requested = [s for s in (scopes or []) if s]
        if not requested:
            return default_scopes(service_name)
        rejected = invalid_scopes(service_name, requested)
        if rejected:
            raise InvalidScopesError(detail={"invalid_scopes": rejected})
        return sorted(set(requested))

    def create(
        self,
        name: str,
        service_name: str,
        scopes: Optional[Iterable[str]] = None,
        *,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Tuple[ServiceAccount, str]:
        if not name or not name.strip():
            raise ValidationError("name is required", detail={"field": "name"})
        granted = self._resolve_scopes(service_name, scopes)
        secret = generate_client_secret()
        secret_hash, _ = self.passwords.hash(secret)
        try:
            account = self.store.create_service_account(
                name=name.strip(),
                client_id=generate_client_id(),
                service_name=service_name,
                scopes=granted,
                secret_hash=secret_hash,
                description=description,
                created_by=created_by,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.logger.info(
            "service_account_created",
            service_account_id=account.id,
            service_name=service_name,
            scopes=granted,
        )
        return account, secret

    def authenticate(
        self, client_id: str, client_secret: str
    ) -> Tuple[IssuedToken, ServiceAccount]:
        account = self.store.get_service_account_by_client_id(client_id) if client_id else None
        stored_hash = self.store.get_client_secret_hash(account.id) if account else None
        verified = self.passwords.verify_hash(stored_hash or self._dummy_hash, client_secret or "")
        if account is None or stored_hash is None or not verified or not account.active:
            self.logger.warning("service_auth_failed", client_id=client_id)
            raise InvalidCredentialsError()
        now = utcnow()
        self.store.touch_service_account(account.id, now)
        account.last_used_at = now
        issued = self.issuer.issue_service_token(account)
        self.logger.info(
            "service_authenticated",
            service_account_id=account.id,
            service_name=account.service_name,
        )
        return issued, account

    def rotate_secret(self, service_account_id: str) -> str:
        """Replace the client secret; tokens already issued stay valid until expiry."""
        secret = generate_client_secret()
        secret_hash, _ = self.passwords.hash(secret)
        if not self.store.save_client_secret(service_account_id, secret_hash):
            raise NotFoundError("service account not found")
        self.logger.info("service_secret_rotated", service_account_id=service_account_id)
        return secret

    def get(self, service_account_id: str) -> ServiceAccount:
        account = self.store.get_service_account(service_account_id)
        if not account:
            raise NotFoundError("service account not found")
        return account

    def list(self) -> List[ServiceAccount]:
        return self.store.list_service_accounts()

    def update(
        self,
        service_account_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        scopes: Optional[Iterable[str]] = None,
        active: Optional[bool] = None,
    ) -> ServiceAccount:
        current = self.get(service_account_id)
        granted = None
        if scopes is not None:
            requested = [s for s in scopes if s]
            rejected = invalid_scopes(current.service_name, requested)
            if rejected:
                raise InvalidScopesError(detail={"invalid_scopes": rejected})
            granted = sorted(set(requested)) or default_scopes(current.service_name)
        if name is not None and not name.strip():
            raise ValidationError("name is required", detail={"field": "name"})
        try:
            updated = self.store.update_service_account(
                service_account_id,
                name=name.strip() if name is not None else None,
                description=description,
                scopes=granted,
                active=active,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if not updated:
            raise NotFoundError("service account not found")
        self.logger.info("service_account_updated", service_account_id=service_account_id)
        return updated

    def delete(self, service_account_id: str) -> None:
        if not self.store.delete_service_account(service_account_id):
            raise NotFoundError("service account not found")
        self.logger.info("service_account_deleted", service_account_id=service_account_id)
