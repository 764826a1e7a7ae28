from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from forkauth.logging import get_logger
from forkauth.service.errors import ValidationError
from forkauth.storage.common import CredentialStore

PASSWORD_ALGO = "argon2id"
LEGACY_PLAINTEXT_ALGO = "plaintext"
MIN_PASSWORD_LENGTH = 8


def validate_password_strength(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters",
            detail={"field": "password"},
        )


class PasswordManager:
    """argon2id hashing for account passwords and service client secrets.

    Stored records are ``(hash, algo)`` pairs. Only ``argon2id`` verifies in
    steady state. A ``plaintext`` record is accepted once, compared in
    constant time and rehashed, and only while
    ``legacy_migration_deadline`` is in the future.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        legacy_migration_deadline: Optional[datetime] = None,
    ) -> None:
        self.store = store
        self.legacy_migration_deadline = legacy_migration_deadline
        self._hasher = PasswordHasher(type=Type.ID)
        self.logger = get_logger(__name__)

    def hash(self, secret: str) -> Tuple[str, str]:
        return self._hasher.hash(secret), PASSWORD_ALGO

    def verify_hash(self, stored_hash: str, secret: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, secret)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def set_password(self, account_id: str, password: str) -> None:
        pwd_hash, algo = self.hash(password)
        self.store.save_password(account_id, pwd_hash, algo)

    def _legacy_window_open(self) -> bool:
        deadline = self.legacy_migration_deadline
        return deadline is not None and datetime.now(timezone.utc) < deadline

    def verify_account_password(self, account_id: str, password: str) -> bool:
        record = self.store.get_password_record(account_id)
        if not record:
            self.logger.warning("password_record_missing", account_id=account_id)
            return False
        stored_hash, algo = record
        if algo == PASSWORD_ALGO:
            if not self.verify_hash(stored_hash, password):
                return False
            if self._hasher.check_needs_rehash(stored_hash):
                self.set_password(account_id, password)
                self.logger.info("password_rehashed", account_id=account_id)
            return True
        if algo == LEGACY_PLAINTEXT_ALGO:
            return self._migrate_legacy(account_id, stored_hash, password)
        self.logger.warning("password_algo_mismatch", account_id=account_id, algo=algo)
        return False

    def _migrate_legacy(self, account_id: str, stored: str, password: str) -> bool:
        if not self._legacy_window_open():
            self.logger.warning("legacy_password_rejected", account_id=account_id)
            return False
        if not hmac.compare_digest(stored.encode("utf-8"), password.encode("utf-8")):
            return False
        self.set_password(account_id, password)
        self.logger.warning("legacy_password_migrated", account_id=account_id)
        return True
