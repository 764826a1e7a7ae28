from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    """A human account. The password hash lives in a separate credential record."""

    id: str
    email: str
    role: str = "customer"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    permission_overrides: List[str] = field(default_factory=list)
    is_active: bool = True
    password_change_required: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshSession:
    """Opaque refresh token session; only the token digest is persisted."""

    id: str
    account_id: str
    token_hash: str
    expires_at: datetime
    revoked: bool = False
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and (now or utcnow()) < self.expires_at

    @classmethod
    def new(
        cls,
        account_id: str,
        token_hash: str,
        ttl: timedelta,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> "RefreshSession":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            token_hash=token_hash,
            expires_at=now + ttl,
            user_agent=user_agent,
            ip_addr=ip_addr,
            created_at=now,
        )


@dataclass
class ServiceAccount:
    """A machine principal. The client secret hash is never part of this record."""

    id: str
    name: str
    client_id: str
    service_name: str
    scopes: List[str] = field(default_factory=list)
    active: bool = True
    description: Optional[str] = None
    created_by: Optional[str] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
