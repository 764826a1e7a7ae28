from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from forkauth.logging import get_logger
from forkauth.service.errors import InvalidRefreshTokenError
from forkauth.storage.common import CredentialStore, token_digest
from forkauth.storage.models import RefreshSession, utcnow

REFRESH_TOKEN_BYTES = 40


@dataclass(frozen=True)
class ClientMetadata:
    """Advisory client details recorded with a refresh session."""

    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None


@dataclass(frozen=True)
class IssuedRefreshToken:
    token: str
    expires_at: datetime
    session_id: str


def _looks_like_refresh_token(token: object) -> bool:
    if not isinstance(token, str) or len(token) != REFRESH_TOKEN_BYTES * 2:
        return False
    try:
        bytes.fromhex(token)
    except ValueError:
        return False
    return True


class SessionManager:
    """Opaque refresh tokens bound to an account.

    Only the SHA-256 digest of a token is stored. Every failure on a
    missing, garbage, expired or revoked token raises the same
    ``InvalidRefreshTokenError``.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        default_ttl: timedelta = timedelta(days=30),
        rotate: bool = True,
    ) -> None:
        self.store = store
        self.default_ttl = default_ttl
        self.rotate_on_redeem = rotate
        self.logger = get_logger(__name__)

    def issue(
        self,
        account_id: str,
        metadata: Optional[ClientMetadata] = None,
        ttl: Optional[timedelta] = None,
    ) -> IssuedRefreshToken:
        meta = metadata or ClientMetadata()
        token = secrets.token_hex(REFRESH_TOKEN_BYTES)
        session = self.store.create_refresh_session(
            RefreshSession.new(
                account_id,
                token_digest(token),
                ttl or self.default_ttl,
                user_agent=meta.user_agent,
                ip_addr=meta.ip_addr,
            )
        )
        self.logger.info(
            "refresh_session_issued",
            account_id=account_id,
            session_id=session.id,
            expires_at=session.expires_at.isoformat(),
        )
        return IssuedRefreshToken(token=token, expires_at=session.expires_at, session_id=session.id)

    def redeem(self, token: str, *, consume: Optional[bool] = None) -> str:
        """Return the account bound to a valid session.

        With ``consume`` (defaulting to the rotation setting) the session is
        revoked in the same store operation that validates it, so two
        concurrent redemptions cannot both succeed.
        """
        if not _looks_like_refresh_token(token):
            raise InvalidRefreshTokenError()
        digest = token_digest(token)
        now = utcnow()
        use_consume = self.rotate_on_redeem if consume is None else consume
        if use_consume:
            session = self.store.consume_refresh_session(digest, now)
        else:
            session = self.store.get_active_refresh_session(digest, now)
        if session is None:
            self.logger.info("refresh_redeem_rejected")
            raise InvalidRefreshTokenError()
        return session.account_id

    def rotate(
        self, token: str, metadata: Optional[ClientMetadata] = None
    ) -> tuple[str, IssuedRefreshToken]:
        account_id = self.redeem(token, consume=True)
        return account_id, self.issue(account_id, metadata)

    def revoke(self, token: str) -> None:
        """Mark a session revoked; revoking an already revoked session is a no-op."""
        if not _looks_like_refresh_token(token):
            raise InvalidRefreshTokenError()
        if not self.store.revoke_refresh_session(token_digest(token)):
            raise InvalidRefreshTokenError()

    def revoke_all(self, account_id: str) -> int:
        count = self.store.revoke_account_refresh_sessions(account_id)
        self.logger.info("refresh_sessions_revoked", account_id=account_id, count=count)
        return count
