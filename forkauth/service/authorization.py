from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Union

from forkauth.config import Settings
from forkauth.logging import get_logger
from forkauth.service.blacklist import RevocationStore
from forkauth.service.errors import (
    AccountInvalidError,
    InsufficientPermissionError,
    InsufficientScopeError,
    InvalidTokenError,
    NoTokenError,
    RevokedTokenError,
    ServiceInvalidError,
)
from forkauth.service.permissions import (
    ADMIN,
    INTERNAL_SERVICE,
    READ,
    WRITE,
    Role,
    resolve_permissions,
)
from forkauth.service.scopes import scope_for
from forkauth.service.tokens import TokenIssuer, TokenKind
from forkauth.storage.common import CredentialStore
from forkauth.storage.models import Account, ServiceAccount

ACCESS_TOKEN_COOKIE = "accessToken"
REFRESH_TOKEN_COOKIE = "refreshToken"

_SCOPE_LEVELS = {READ, WRITE, ADMIN}


@dataclass(frozen=True)
class UserPrincipal:
    account: Account
    permissions: FrozenSet[str]
    token: str = field(repr=False)
    claims: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def subject(self) -> str:
        return self.account.id


@dataclass(frozen=True)
class ServicePrincipal:
    service_account: ServiceAccount
    scopes: FrozenSet[str]
    token: str = field(repr=False)
    claims: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def subject(self) -> str:
        return self.service_account.id

    @property
    def permissions(self) -> FrozenSet[str]:
        return frozenset({INTERNAL_SERVICE})


Principal = Union[UserPrincipal, ServicePrincipal]


def extract_token(
    authorization: Optional[str], cookie_token: Optional[str] = None
) -> Optional[str]:
    """Bearer header first, then the access token cookie."""
    if authorization:
        scheme, _, credentials = authorization.strip().partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    if cookie_token and cookie_token.strip():
        return cookie_token.strip()
    return None


class Authorizer:
    """Turns a presented access token into a :data:`Principal`.

    Order per request: presence, blacklist, signature and expiry, then a
    lookup of the live account or service account. Whether user
    permissions come from the token or are recomputed here is governed by
    ``resolve_permissions_at_request``.
    """

    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        revocations: RevocationStore,
        settings: Settings,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.revocations = revocations
        self.live_permissions = settings.resolve_permissions_at_request
        self.logger = get_logger(__name__)

    async def authenticate(self, token: Optional[str]) -> Principal:
        if not token:
            raise NoTokenError()
        if await self.revocations.is_blacklisted(token):
            self.logger.info("revoked_token_presented")
            raise RevokedTokenError()
        claims = self.issuer.verify(token)
        kind = TokenKind(claims["type"])
        if kind is TokenKind.USER:
            return self._user_principal(token, claims)
        if kind is TokenKind.SERVICE:
            return self._service_principal(token, claims)
        raise InvalidTokenError()

    def _user_principal(self, token: str, claims: Dict[str, Any]) -> UserPrincipal:
        account = self.store.get_account(str(claims["sub"]))
        if account is None or not account.is_active:
            self.logger.warning("token_account_invalid", account_id=claims.get("sub"))
            raise AccountInvalidError()
        if self.live_permissions:
            permissions = resolve_permissions(account.role, account.permission_overrides)
        else:
            permissions = frozenset(claims.get("permissions") or ())
        return UserPrincipal(account=account, permissions=permissions, token=token, claims=claims)

    def _service_principal(self, token: str, claims: Dict[str, Any]) -> ServicePrincipal:
        service_account = self.store.get_service_account(str(claims["sub"]))
        if service_account is None or not service_account.active:
            self.logger.warning(
                "token_service_account_invalid", service_account_id=claims.get("sub")
            )
            raise ServiceInvalidError()
        if self.live_permissions:
            scopes = frozenset(service_account.scopes)
        else:
            scopes = frozenset(claims.get("scopes") or ())
        return ServicePrincipal(
            service_account=service_account, scopes=scopes, token=token, claims=claims
        )


def principal_allows(principal: Principal, *allowed: str) -> bool:
    """True when ``principal`` satisfies any entry of ``allowed``.

    Users match catalogue permissions; the ``ADMIN`` level also matches the
    admin role. Services always match ``INTERNAL_SERVICE``; ``READ``,
    ``WRITE`` and ``ADMIN`` map onto the service's own scopes and anything
    else is compared as a lower-cased scope.
    """
    if isinstance(principal, UserPrincipal):
        if ADMIN in allowed and principal.account.role == Role.ADMIN.value:
            return True
        return any(p in principal.permissions for p in allowed)
    if isinstance(principal, ServicePrincipal):
        if INTERNAL_SERVICE in allowed:
            return True
        service_name = principal.service_account.service_name
        wanted = {
            scope_for(service_name, p) if p in _SCOPE_LEVELS else p.lower()
            for p in allowed
        }
        return bool(wanted & principal.scopes)
    raise TypeError(f"unsupported principal: {type(principal).__name__}")


def require_permission(principal: Principal, *allowed: str) -> Principal:
    if not principal_allows(principal, *allowed):
        raise InsufficientPermissionError()
    return principal


def require_scope(principal: Principal, scope: str) -> ServicePrincipal:
    """Service-only check; user principals never hold scopes."""
    if isinstance(principal, ServicePrincipal):
        if scope in principal.scopes:
            return principal
        raise InsufficientScopeError(detail={"required_scope": scope})
    if isinstance(principal, UserPrincipal):
        raise InsufficientScopeError("service token required")
    raise TypeError(f"unsupported principal: {type(principal).__name__}")
