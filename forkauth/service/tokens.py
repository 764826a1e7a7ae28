from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional

import jwt

from forkauth.config import Settings
from forkauth.logging import get_logger
from forkauth.service.errors import ExpiredTokenError, InvalidTokenError
from forkauth.service.permissions import resolve_permissions
from forkauth.storage.models import Account, ServiceAccount

JWT_ALGORITHM = "HS256"

_REQUIRED_CLAIMS = ["exp", "iat", "sub", "jti", "type"]


class TokenKind(str, Enum):
    USER = "user"
    SERVICE = "service"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    kind: TokenKind
    expires_at: datetime
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def expires_in(self) -> int:
        return max(0, int((self.expires_at - datetime.now(timezone.utc)).total_seconds()))


def _unverified_claims(token: str) -> Dict[str, Any]:
    try:
        claims = jwt.decode(
            token,
            options={"verify_signature": False},
            algorithms=[JWT_ALGORITHM],
        )
    except jwt.InvalidTokenError as exc:
        raise InvalidTokenError() from exc
    if not isinstance(claims, dict):
        raise InvalidTokenError()
    return claims


def _list_claim(claims: Dict[str, Any], name: str) -> bool:
    value = claims.get(name)
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


class TokenIssuer:
    """Signs and verifies HS256 access tokens for users and services.

    Verification is purely cryptographic and temporal; checking the
    revocation store is the caller's job.
    """

    def __init__(self, settings: Settings) -> None:
        if not settings.jwt_secret:
            raise ValueError("jwt_secret must be configured")
        self._secret = settings.jwt_secret
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.leeway = settings.token_leeway_seconds
        self.user_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.service_ttl = timedelta(minutes=settings.service_token_ttl_minutes)
        # upper bound on any exp this issuer writes
        self.max_ttl = max(self.user_ttl, self.service_ttl)
        self.logger = get_logger(__name__)

    def _encode(self, kind: TokenKind, subject: str, ttl: timedelta, extra: Dict[str, Any]) -> IssuedToken:
        now = datetime.now(timezone.utc).replace(microsecond=0)
        expires_at = now + ttl
        claims: Dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
            "type": kind.value,
            **extra,
        }
        token = jwt.encode(claims, self._secret, algorithm=JWT_ALGORITHM)
        return IssuedToken(token=token, kind=kind, expires_at=expires_at, claims=claims)

    def issue_user_token(
        self, account: Account, *, permissions: Optional[Iterable[str]] = None
    ) -> IssuedToken:
        resolved = (
            frozenset(permissions)
            if permissions is not None
            else resolve_permissions(account.role, account.permission_overrides)
        )
        return self._encode(
            TokenKind.USER,
            account.id,
            self.user_ttl,
            {
                "email": account.email,
                "role": account.role,
                "permissions": sorted(resolved),
            },
        )

    def issue_service_token(
        self, service_account: ServiceAccount, *, expires_minutes: Optional[int] = None
    ) -> IssuedToken:
        ttl = self.service_ttl
        if expires_minutes:
            ttl = min(timedelta(minutes=expires_minutes), self.max_ttl)
        return self._encode(
            TokenKind.SERVICE,
            service_account.id,
            ttl,
            {
                "client_id": service_account.client_id,
                "service_name": service_account.service_name,
                "scopes": sorted(set(service_account.scopes)),
            },
        )

    def verify(self, token: str) -> Dict[str, Any]:
        """Return the claims of a correctly signed, unexpired token.

        Raises ``ExpiredTokenError`` once ``exp`` has passed and
        ``InvalidTokenError`` for anything else, including a ``type`` claim
        that is neither ``user`` nor ``service`` or a claim set that does not
        match its type.
        """
        if not token:
            raise InvalidTokenError()
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError as exc:
            raise ExpiredTokenError() from exc
        except jwt.InvalidTokenError as exc:
            self.logger.info("token_verify_failed", reason=type(exc).__name__)
            raise InvalidTokenError() from exc

        kind = claims.get("type")
        if kind == TokenKind.USER.value:
            well_formed = _list_claim(claims, "permissions") and isinstance(claims.get("role"), str)
        elif kind == TokenKind.SERVICE.value:
            well_formed = _list_claim(claims, "scopes") and isinstance(
                claims.get("service_name"), str
            )
        else:
            well_formed = False
        if not well_formed:
            self.logger.warning("token_claim_shape_invalid", token_type=str(kind))
            raise InvalidTokenError()
        return claims

    def classify(self, token: str) -> TokenKind:
        """Route on the unverified ``type`` claim; callers must still ``verify``."""
        kind = _unverified_claims(token).get("type")
        try:
            return TokenKind(kind)
        except ValueError as exc:
            raise InvalidTokenError() from exc

    def peek_expiry(self, token: str) -> Optional[datetime]:
        """Unverified ``exp`` claim, for blacklist TTL bookkeeping only."""
        try:
            exp = _unverified_claims(token).get("exp")
        except InvalidTokenError:
            return None
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        try:
            return datetime.fromtimestamp(exp, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    def introspect(self, token: str) -> Dict[str, Any]:
        """Decode without any verification; diagnostic output only."""
        claims = dict(_unverified_claims(token))
        for name in ("exp", "iat"):
            value = claims.get(name)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                try:
                    claims[name] = datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
                except (OverflowError, OSError, ValueError):
                    pass
        return claims
