from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from forkauth.config import Settings
from forkauth.logging import get_logger
from forkauth.service.authorization import Authorizer, ServicePrincipal, UserPrincipal
from forkauth.service.blacklist import RevocationStore
from forkauth.service.errors import (
    AccountInactiveError,
    ConflictError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    NotFoundError,
    ServiceInvalidError,
    ValidationError,
)
from forkauth.service.passwords import PasswordManager, validate_password_strength
from forkauth.service.permissions import (
    Role,
    is_known_role,
    resolve_permissions,
    unknown_permissions,
)
from forkauth.service.sessions import ClientMetadata, IssuedRefreshToken, SessionManager
from forkauth.service.tokens import IssuedToken, TokenIssuer, TokenKind
from forkauth.storage.common import CredentialStore
from forkauth.storage.errors import ConstraintViolation
from forkauth.storage.models import Account, utcnow

SELF_SERVICE_ROLES = frozenset(
    {Role.CUSTOMER.value, Role.RESTAURANT_ADMIN.value, Role.DELIVERY_PERSONNEL.value}
)

# Hashed once so unknown-email logins cost the same as wrong-password logins
_DUMMY_PASSWORD = secrets.token_urlsafe(24)


@dataclass
class LoginResult:
    """Outcome of a password login.

    ``access`` and ``refresh`` are ``None`` when the account must change
    its password before any token is issued.
    """

    account: Account
    permissions: FrozenSet[str]
    access: Optional[IssuedToken] = None
    refresh: Optional[IssuedRefreshToken] = None
    password_change_required: bool = False


@dataclass
class RefreshResult:
    account: Account
    permissions: FrozenSet[str]
    access: IssuedToken
    refresh: Optional[IssuedRefreshToken] = None


@dataclass
class ServiceTokenValidation:
    valid: bool
    client_id: str
    service_name: str
    scopes: List[str] = field(default_factory=list)


class AuthService:
    """Account and token lifecycle flows built on the core components."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        issuer: TokenIssuer,
        revocations: RevocationStore,
        sessions: SessionManager,
        passwords: PasswordManager,
        authorizer: Authorizer,
    ) -> None:
        self.store = store
        self.settings = settings
        self.issuer = issuer
        self.revocations = revocations
        self.sessions = sessions
        self.passwords = passwords
        self.authorizer = authorizer
        self.logger = get_logger(__name__)
        self._dummy_hash, _ = passwords.hash(_DUMMY_PASSWORD)

    # -- helpers --------------------------------------------------------

    @staticmethod
    def permissions_for(account: Account) -> FrozenSet[str]:
        return resolve_permissions(account.role, account.permission_overrides)

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        return account

    def _issue_pair(
        self, account: Account, metadata: Optional[ClientMetadata]
    ) -> LoginResult:
        permissions = self.permissions_for(account)
        access = self.issuer.issue_user_token(account, permissions=permissions)
        refresh = self.sessions.issue(account.id, metadata)
        return LoginResult(
            account=account, permissions=permissions, access=access, refresh=refresh
        )

    async def _blacklist(self, token: Optional[str]) -> None:
        if token:
            await self.revocations.add(token)

    def _create_account(
        self,
        email: str,
        password: str,
        *,
        role: str,
        first_name: Optional[str],
        last_name: Optional[str],
        password_change_required: bool = False,
        permission_overrides: Iterable[str] | None = None,
    ) -> Account:
        if not email or "@" not in email:
            raise ValidationError("a valid email is required", detail={"field": "email"})
        if not is_known_role(role):
            raise ValidationError("unknown role", detail={"field": "role"})
        validate_password_strength(password)
        try:
            account = self.store.create_account(
                email,
                role=role,
                first_name=first_name,
                last_name=last_name,
                permission_overrides=permission_overrides,
                password_change_required=password_change_required,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.passwords.set_password(account.id, password)
        return account

    # -- self service ---------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: str = Role.CUSTOMER.value,
        metadata: Optional[ClientMetadata] = None,
    ) -> LoginResult:
        if role not in SELF_SERVICE_ROLES:
            raise ValidationError("role not allowed for registration", detail={"field": "role"})
        account = self._create_account(
            email, password, role=role, first_name=first_name, last_name=last_name
        )
        self.logger.info("account_registered", account_id=account.id, role=role)
        return self._issue_pair(account, metadata)

    async def login(
        self, email: str, password: str, metadata: Optional[ClientMetadata] = None
    ) -> LoginResult:
        account = self.store.get_account_by_email(email) if email else None
        if account is None:
            self.passwords.verify_hash(self._dummy_hash, password or "")
            self.logger.warning("login_failed", reason="unknown_account")
            raise InvalidCredentialsError()
        if not self.passwords.verify_account_password(account.id, password or ""):
            self.logger.warning("login_failed", reason="bad_password", account_id=account.id)
            raise InvalidCredentialsError()
        if not account.is_active:
            self.logger.warning("login_failed", reason="inactive", account_id=account.id)
            raise AccountInactiveError()

        now = utcnow()
        self.store.record_login(account.id, now)
        account.last_login_at = now
        if account.password_change_required:
            self.logger.info("login_password_change_required", account_id=account.id)
            return LoginResult(
                account=account,
                permissions=self.permissions_for(account),
                password_change_required=True,
            )
        result = self._issue_pair(account, metadata)
        self.logger.info("login_succeeded", account_id=account.id)
        return result

    async def refresh(
        self,
        refresh_token: Optional[str],
        *,
        old_access_token: Optional[str] = None,
        metadata: Optional[ClientMetadata] = None,
    ) -> RefreshResult:
        if not refresh_token:
            raise InvalidRefreshTokenError()
        rotate = self.sessions.rotate_on_redeem
        account_id = self.sessions.redeem(refresh_token, consume=rotate)
        account = self.store.get_account(account_id)
        if account is None or not account.is_active:
            if not rotate:
                self.sessions.revoke(refresh_token)
            self.logger.warning("refresh_account_invalid", account_id=account_id)
            raise InvalidRefreshTokenError()

        await self._blacklist(old_access_token)
        permissions = self.permissions_for(account)
        access = self.issuer.issue_user_token(account, permissions=permissions)
        new_refresh = self.sessions.issue(account.id, metadata) if rotate else None
        self.logger.info("access_token_refreshed", account_id=account.id, rotated=rotate)
        return RefreshResult(
            account=account, permissions=permissions, access=access, refresh=new_refresh
        )

    async def logout(
        self, *, access_token: Optional[str] = None, refresh_token: Optional[str] = None
    ) -> None:
        """Blacklist the access token and revoke the refresh token; never fails on bad input."""
        await self._blacklist(access_token)
        if refresh_token:
            try:
                self.sessions.revoke(refresh_token)
            except InvalidRefreshTokenError:
                self.logger.info("logout_unknown_refresh_token")
        self.logger.info("logout_completed")

    async def revoke_all(self, principal: UserPrincipal) -> int:
        """Sign out everywhere: every refresh session plus the presenting access token."""
        count = self.sessions.revoke_all(principal.account.id)
        await self._blacklist(principal.token)
        return count

    async def change_password(
        self, principal: UserPrincipal, current_password: str, new_password: str
    ) -> int:
        account = principal.account
        if not self.passwords.verify_account_password(account.id, current_password or ""):
            raise InvalidCredentialsError()
        validate_password_strength(new_password)
        self.passwords.set_password(account.id, new_password)
        count = self.sessions.revoke_all(account.id)
        await self._blacklist(principal.token)
        self.logger.info("password_changed", account_id=account.id, sessions_revoked=count)
        return count

    async def complete_required_password_change(
        self,
        email: str,
        current_password: str,
        new_password: str,
        metadata: Optional[ClientMetadata] = None,
    ) -> LoginResult:
        """Finish an admin-forced password change and log the account in."""
        account = self.store.get_account_by_email(email) if email else None
        if account is None:
            self.passwords.verify_hash(self._dummy_hash, current_password or "")
            raise InvalidCredentialsError()
        if not self.passwords.verify_account_password(account.id, current_password or ""):
            raise InvalidCredentialsError()
        if not account.is_active:
            raise AccountInactiveError()
        if not account.password_change_required:
            raise ValidationError("password change is not required for this account")
        if new_password == current_password:
            raise ValidationError("new password must differ from the current one")
        validate_password_strength(new_password)
        self.passwords.set_password(account.id, new_password)
        account = self.store.set_password_change_required(account.id, False) or account
        self.sessions.revoke_all(account.id)
        self.logger.info("required_password_change_completed", account_id=account.id)
        return self._issue_pair(account, metadata)

    # -- administration -------------------------------------------------

    async def admin_create_account(
        self,
        email: str,
        *,
        role: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        password: Optional[str] = None,
        permission_overrides: Iterable[str] | None = None,
    ) -> tuple[Account, str]:
        """Provision an account; the returned password must be changed on first login."""
        overrides = list(permission_overrides or [])
        rejected = unknown_permissions(overrides)
        if rejected:
            raise ValidationError("unknown permissions", detail={"invalid_permissions": rejected})
        temp_password = password or secrets.token_urlsafe(12)
        account = self._create_account(
            email,
            temp_password,
            role=role,
            first_name=first_name,
            last_name=last_name,
            password_change_required=True,
            permission_overrides=overrides,
        )
        self.logger.info("account_provisioned", account_id=account.id, role=role)
        return account, temp_password

    async def admin_reset_password(
        self, account_id: str, new_password: Optional[str] = None
    ) -> str:
        account = self._require_account(account_id)
        temp_password = new_password or secrets.token_urlsafe(12)
        validate_password_strength(temp_password)
        self.passwords.set_password(account.id, temp_password)
        self.store.set_password_change_required(account.id, True)
        self.sessions.revoke_all(account.id)
        self.logger.info("admin_password_reset", account_id=account.id)
        return temp_password

    async def set_account_active(self, account_id: str, is_active: bool) -> Account:
        account = self.store.set_account_active(account_id, is_active)
        if not account:
            raise NotFoundError("account not found")
        if not is_active:
            # forced logout; access tokens die on the next lookup of the inactive account
            self.sessions.revoke_all(account_id)
        self.logger.info("account_active_changed", account_id=account_id, is_active=is_active)
        return account

    async def update_permission_overrides(
        self, account_id: str, permissions: Iterable[str]
    ) -> Account:
        values = list(permissions)
        rejected = unknown_permissions(values)
        if rejected:
            raise ValidationError("unknown permissions", detail={"invalid_permissions": rejected})
        account = self.store.set_permission_overrides(account_id, values)
        if not account:
            raise NotFoundError("account not found")
        self.logger.info("permission_overrides_updated", account_id=account_id)
        return account

    async def delete_account(self, account_id: str) -> None:
        if not self.store.delete_account(account_id):
            raise NotFoundError("account not found")
        self.logger.info("account_deleted", account_id=account_id)

    def list_accounts(self, role: Optional[str] = None, limit: int = 100) -> List[Account]:
        return self.store.list_accounts(role=role, limit=limit)

    def get_account(self, account_id: str) -> Account:
        return self._require_account(account_id)

    # -- token endpoints ------------------------------------------------

    async def validate_access_token(self, token: str) -> UserPrincipal:
        if self.issuer.classify(token) is not TokenKind.USER:
            raise InvalidTokenError()
        principal = await self.authorizer.authenticate(token)
        if not isinstance(principal, UserPrincipal):
            raise InvalidTokenError()
        return principal

    async def validate_service_token(self, token: str) -> ServiceTokenValidation:
        if self.issuer.classify(token) is not TokenKind.SERVICE:
            raise InvalidTokenError("not a service token")
        principal = await self.authorizer.authenticate(token)
        if not isinstance(principal, ServicePrincipal):
            raise ServiceInvalidError()
        return ServiceTokenValidation(
            valid=True,
            client_id=principal.service_account.client_id,
            service_name=principal.service_account.service_name,
            scopes=sorted(principal.scopes),
        )

    async def revoke_service_token(self, token: str) -> int:
        if self.issuer.classify(token) is not TokenKind.SERVICE:
            raise InvalidTokenError("not a service token")
        ttl = await self.revocations.add(token)
        self.logger.info("service_token_revoked", ttl_seconds=ttl)
        return ttl

    def introspect(self, token: str) -> Dict[str, Any]:
        return self.issuer.introspect(token)
