"""Tests for turning access tokens into principals and checking them."""

import asyncio

import pytest

from forkauth.service.authorization import (
    Authorizer,
    ServicePrincipal,
    UserPrincipal,
    extract_token,
    principal_allows,
    require_permission,
    require_scope,
)
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
from forkauth.service.permissions import ADMIN, INTERNAL_SERVICE, READ, WRITE, Permission
from forkauth.service.tokens import TokenIssuer


class UnreachableCache:
    async def blacklist_token(self, digest, ttl_seconds):
        raise ConnectionError("redis down")

    async def is_token_blacklisted(self, digest):
        raise ConnectionError("redis down")

    async def unblacklist_token(self, digest):
        raise ConnectionError("redis down")


class StalledCache:
    async def blacklist_token(self, digest, ttl_seconds):
        await asyncio.sleep(10)

    async def is_token_blacklisted(self, digest):
        await asyncio.sleep(10)
        return False

    async def unblacklist_token(self, digest):
        await asyncio.sleep(10)


@pytest.fixture
def issuer(settings):
    return TokenIssuer(settings)


@pytest.fixture
def revocations(issuer, settings):
    return RevocationStore(issuer, settings)


@pytest.fixture
def authorizer(store, issuer, revocations, settings):
    return Authorizer(store, issuer, revocations, settings)


@pytest.fixture
def customer(store):
    return store.create_account("hungry@example.com", role="customer")


@pytest.fixture
def order_service(store):
    return store.create_service_account(
        name="orders",
        client_id="svc_orders",
        service_name="order-service",
        scopes=["order-service:read"],
        secret_hash="unused",
    )


class TestExtractToken:
    def test_bearer_header(self):
        assert extract_token("Bearer abc.def") == "abc.def"
        assert extract_token("bearer   abc.def  ") == "abc.def"

    def test_cookie_fallback(self):
        assert extract_token(None, "cookie-token") == "cookie-token"
        assert extract_token("Basic dXNlcg==", "cookie-token") == "cookie-token"

    def test_header_wins(self):
        assert extract_token("Bearer header-token", "cookie-token") == "header-token"

    def test_nothing(self):
        assert extract_token(None, None) is None
        assert extract_token("Bearer ", "  ") is None


class TestAuthenticate:
    async def test_user_principal(self, authorizer, issuer, customer):
        token = issuer.issue_user_token(customer).token
        principal = await authorizer.authenticate(token)
        assert isinstance(principal, UserPrincipal)
        assert principal.account.id == customer.id
        assert Permission.ORDER_CREATE.value in principal.permissions

    async def test_service_principal(self, authorizer, issuer, order_service):
        token = issuer.issue_service_token(order_service).token
        principal = await authorizer.authenticate(token)
        assert isinstance(principal, ServicePrincipal)
        assert principal.scopes == frozenset({"order-service:read"})
        assert principal.permissions == frozenset({INTERNAL_SERVICE})

    async def test_no_token(self, authorizer):
        with pytest.raises(NoTokenError):
            await authorizer.authenticate(None)

    async def test_invalid_token(self, authorizer):
        with pytest.raises(InvalidTokenError):
            await authorizer.authenticate("not.a.token")

    async def test_revoked_token(self, authorizer, issuer, revocations, customer):
        token = issuer.issue_user_token(customer).token
        await revocations.add(token)
        with pytest.raises(RevokedTokenError):
            await authorizer.authenticate(token)

    async def test_deactivated_account(self, authorizer, issuer, store, customer):
        """A still-valid token stops working once its account is deactivated."""
        token = issuer.issue_user_token(customer).token
        store.set_account_active(customer.id, False)
        with pytest.raises(AccountInvalidError):
            await authorizer.authenticate(token)

    async def test_deleted_account(self, authorizer, issuer, store, customer):
        token = issuer.issue_user_token(customer).token
        store.delete_account(customer.id)
        with pytest.raises(AccountInvalidError):
            await authorizer.authenticate(token)

    async def test_inactive_service(self, authorizer, issuer, store, order_service):
        token = issuer.issue_service_token(order_service).token
        store.update_service_account(order_service.id, active=False)
        with pytest.raises(ServiceInvalidError):
            await authorizer.authenticate(token)

    async def test_embedded_permissions_by_default(self, authorizer, issuer, store, customer):
        token = issuer.issue_user_token(customer).token
        store.set_permission_overrides(customer.id, [Permission.PAYMENT_REFUND.value])
        principal = await authorizer.authenticate(token)
        assert Permission.PAYMENT_REFUND.value not in principal.permissions

    async def test_live_permissions(self, store, issuer, revocations, settings, customer):
        settings.resolve_permissions_at_request = True
        authorizer = Authorizer(store, issuer, revocations, settings)
        token = issuer.issue_user_token(customer).token
        store.set_permission_overrides(customer.id, [Permission.PAYMENT_REFUND.value])
        principal = await authorizer.authenticate(token)
        assert Permission.PAYMENT_REFUND.value in principal.permissions

    @pytest.mark.parametrize("cache", [UnreachableCache(), StalledCache()])
    async def test_cache_outage_still_blocks_local_revocation(
        self, store, issuer, settings, customer, cache
    ):
        """A token revoked in this process stays rejected while the shared cache is down."""
        settings.cache_timeout_seconds = 0.05
        revocations = RevocationStore(issuer, settings, cache=cache)
        authorizer = Authorizer(store, issuer, revocations, settings)
        token = issuer.issue_user_token(customer).token

        assert isinstance(await authorizer.authenticate(token), UserPrincipal)
        await revocations.add(token)
        with pytest.raises(RevokedTokenError):
            await authorizer.authenticate(token)


class TestRequirePermission:
    async def test_user_with_permission(self, authorizer, issuer, customer):
        principal = await authorizer.authenticate(issuer.issue_user_token(customer).token)
        assert require_permission(principal, Permission.ORDER_CREATE.value) is principal

    async def test_user_without_permission(self, authorizer, issuer, customer):
        principal = await authorizer.authenticate(issuer.issue_user_token(customer).token)
        with pytest.raises(InsufficientPermissionError) as excinfo:
            require_permission(principal, Permission.USER_DELETE.value)
        assert excinfo.value.status_code == 403

    async def test_any_of_allowed(self, authorizer, issuer, customer):
        principal = await authorizer.authenticate(issuer.issue_user_token(customer).token)
        require_permission(principal, Permission.USER_DELETE.value, Permission.ORDER_READ.value)

    async def test_admin_level_matches_admin_role(self, authorizer, issuer, store):
        admin = store.create_account("root@example.com", role="admin")
        principal = await authorizer.authenticate(issuer.issue_user_token(admin).token)
        assert principal_allows(principal, ADMIN)

    async def test_users_never_internal_service(self, authorizer, issuer, customer):
        principal = await authorizer.authenticate(issuer.issue_user_token(customer).token)
        assert not principal_allows(principal, INTERNAL_SERVICE)
        assert not principal_allows(principal, ADMIN)

    async def test_service_internal_and_levels(self, authorizer, issuer, order_service):
        principal = await authorizer.authenticate(issuer.issue_service_token(order_service).token)
        assert principal_allows(principal, INTERNAL_SERVICE)
        assert principal_allows(principal, READ)
        assert not principal_allows(principal, WRITE)
        assert not principal_allows(principal, ADMIN)


class TestRequireScope:
    async def test_service_with_scope(self, authorizer, issuer, order_service):
        principal = await authorizer.authenticate(issuer.issue_service_token(order_service).token)
        assert require_scope(principal, "order-service:read") is principal

    async def test_service_missing_scope(self, authorizer, issuer, order_service):
        principal = await authorizer.authenticate(issuer.issue_service_token(order_service).token)
        with pytest.raises(InsufficientScopeError) as excinfo:
            require_scope(principal, "order-service:write")
        assert excinfo.value.detail == {"required_scope": "order-service:write"}

    async def test_user_has_no_scopes(self, authorizer, issuer, customer):
        principal = await authorizer.authenticate(issuer.issue_user_token(customer).token)
        with pytest.raises(InsufficientScopeError):
            require_scope(principal, "order-service:read")
