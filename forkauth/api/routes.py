from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Query, Request, Response

from forkauth.api.schemas import (
    AccountStatusRequest,
    AccountSummary,
    AdminCreateAccountRequest,
    AdminCreateAccountResponse,
    AdminPasswordResetRequest,
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetResponse,
    PermissionOverridesRequest,
    RefreshRequest,
    RegisterRequest,
    RequiredPasswordChangeRequest,
    RevokeResponse,
    ServiceAccountCreateRequest,
    ServiceAccountResponse,
    ServiceAccountSecretResponse,
    ServiceAccountUpdateRequest,
    ServiceAuthenticateRequest,
    ServiceTokenResponse,
    ServiceTokenValidationResponse,
    TokenRequest,
    TokenValidationResponse,
)
from forkauth.service.auth import AuthService
from forkauth.service.authorization import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    Principal,
    ServicePrincipal,
    UserPrincipal,
    extract_token,
    require_permission,
)
from forkauth.service.errors import ForbiddenError
from forkauth.service.permissions import ADMIN, INTERNAL_SERVICE, Permission
from forkauth.service.runtime import get_runtime
from forkauth.service.sessions import ClientMetadata, IssuedRefreshToken
from forkauth.service.tokens import IssuedToken
from forkauth.storage.models import Account, ServiceAccount, utcnow

router = APIRouter(prefix="/api")

_MAX_LIST_LIMIT = 500


# -- dependencies -------------------------------------------------------


async def get_principal(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_TOKEN_COOKIE),
) -> Principal:
    """Authenticate the caller from the bearer header or the access cookie.

    Raises:
        401: missing, malformed, expired or revoked token, or a token whose
            account or service account is gone or inactive
    """
    token = extract_token(authorization, access_cookie)
    return await get_runtime().authorizer.authenticate(token)


async def get_user_principal(principal: Principal = Depends(get_principal)) -> UserPrincipal:
    if not isinstance(principal, UserPrincipal):
        raise ForbiddenError("user token required")
    return principal


def require(*allowed: str):
    """Dependency factory: the caller must satisfy at least one of ``allowed``."""

    async def _dependency(principal: Principal = Depends(get_principal)) -> Principal:
        return require_permission(principal, *allowed)

    return _dependency


def require_user(*allowed: str):
    """Like :func:`require` but service tokens are refused outright."""

    async def _dependency(principal: UserPrincipal = Depends(get_user_principal)) -> Principal:
        return require_permission(principal, *allowed)

    return _dependency


# -- helpers ------------------------------------------------------------


def _client_metadata(request: Request) -> ClientMetadata:
    return ClientMetadata(
        user_agent=request.headers.get("user-agent"),
        ip_addr=request.client.host if request.client else None,
    )


def _account_summary(account: Account) -> AccountSummary:
    return AccountSummary(
        id=account.id,
        email=account.email,
        first_name=account.first_name,
        last_name=account.last_name,
        role=account.role,
        permissions=sorted(AuthService.permissions_for(account)),
        is_active=account.is_active,
        password_change_required=account.password_change_required,
        last_login_at=account.last_login_at,
    )


def _service_account_response(service_account: ServiceAccount) -> ServiceAccountResponse:
    return ServiceAccountResponse(
        id=service_account.id,
        name=service_account.name,
        client_id=service_account.client_id,
        service_name=service_account.service_name,
        scopes=list(service_account.scopes),
        active=service_account.active,
        description=service_account.description,
        created_by=service_account.created_by,
        last_used_at=service_account.last_used_at,
        created_at=service_account.created_at,
        updated_at=service_account.updated_at,
    )


def _apply_auth_cookies(
    response: Response,
    access: Optional[IssuedToken],
    refresh: Optional[IssuedRefreshToken],
) -> None:
    settings = get_runtime().settings
    secure = settings.is_production
    if access:
        response.set_cookie(
            ACCESS_TOKEN_COOKIE,
            access.token,
            httponly=True,
            secure=secure,
            samesite="lax",
            max_age=access.expires_in,
            path="/",
        )
    if refresh:
        max_age = max(int((refresh.expires_at - utcnow()).total_seconds()), 0)
        response.set_cookie(
            REFRESH_TOKEN_COOKIE,
            refresh.token,
            httponly=True,
            secure=secure,
            samesite="lax",
            max_age=max_age,
            path=settings.refresh_cookie_path,
        )


def _clear_auth_cookies(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(ACCESS_TOKEN_COOKIE, path="/")
    response.delete_cookie(REFRESH_TOKEN_COOKIE, path=settings.refresh_cookie_path)


def _auth_response(
    account: Account,
    access: Optional[IssuedToken],
    refresh: Optional[IssuedRefreshToken],
) -> AuthResponse:
    return AuthResponse(
        user=_account_summary(account),
        access_token=access.token if access else None,
        refresh_token=refresh.token if refresh else None,
        token_type="Bearer" if access else None,
        expires_in=access.expires_in if access else None,
        refresh_expires_at=refresh.expires_at if refresh else None,
    )


# -- user authentication ------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a self-service account and log it in.

    Raises:
        400: invalid email, weak password or a role that needs an administrator
        409: email already registered
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role,
        metadata=_client_metadata(request),
    )
    _apply_auth_cookies(response, result.access, result.refresh)
    return Envelope(status="ok", data=_auth_response(result.account, result.access, result.refresh))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Accounts flagged for a password change get a 200 with
    ``password_change_required`` and no tokens.

    Raises:
        401: invalid credentials or a deactivated account
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, _client_metadata(request))
    if result.password_change_required:
        data = AuthResponse(
            user=_account_summary(result.account),
            password_change_required=True,
            message="Password change required",
        )
        return Envelope(status="ok", data=data)
    _apply_auth_cookies(response, result.access, result.refresh)
    return Envelope(status="ok", data=_auth_response(result.account, result.access, result.refresh))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_TOKEN_COOKIE),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_TOKEN_COOKIE),
    authorization: Optional[str] = Header(None),
):
    """Exchange a refresh token for a new access token.

    The previous access token, if presented, is revoked. With rotation on,
    the refresh token is consumed and a new one is returned.

    Raises:
        401: missing, unknown, revoked or expired refresh token
    """
    runtime = get_runtime()
    refresh_token = (body.refresh_token if body else None) or refresh_cookie
    old_access = (body.old_access_token if body else None) or extract_token(
        authorization, access_cookie
    )
    result = await runtime.auth.refresh(
        refresh_token, old_access_token=old_access, metadata=_client_metadata(request)
    )
    _apply_auth_cookies(response, result.access, result.refresh)
    return Envelope(status="ok", data=_auth_response(result.account, result.access, result.refresh))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_TOKEN_COOKIE),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_TOKEN_COOKIE),
    authorization: Optional[str] = Header(None),
):
    """Revoke whatever tokens the caller presents; always succeeds."""
    runtime = get_runtime()
    await runtime.auth.logout(
        access_token=extract_token(authorization, access_cookie),
        refresh_token=(body.refresh_token if body else None) or refresh_cookie,
    )
    _clear_auth_cookies(response)
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.post("/auth/revoke-all", response_model=Envelope, tags=["auth"])
async def revoke_all_sessions(
    response: Response, principal: UserPrincipal = Depends(get_user_principal)
):
    """Sign out of every device."""
    count = await get_runtime().auth.revoke_all(principal)
    _clear_auth_cookies(response)
    return Envelope(status="ok", data=RevokeResponse(sessions_revoked=count))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_principal)):
    if isinstance(principal, ServicePrincipal):
        return Envelope(
            status="ok",
            data={
                "type": "service",
                "service": _service_account_response(principal.service_account),
                "scopes": sorted(principal.scopes),
            },
        )
    return Envelope(
        status="ok",
        data={
            "type": "user",
            "user": _account_summary(principal.account),
            "permissions": sorted(principal.permissions),
        },
    )


@router.put("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: UserPrincipal = Depends(get_user_principal),
):
    """Change the caller's password; every session is signed out.

    Raises:
        401: current password is wrong
    """
    count = await get_runtime().auth.change_password(
        principal, body.current_password, body.new_password
    )
    _clear_auth_cookies(response)
    return Envelope(status="ok", data=RevokeResponse(sessions_revoked=count))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def complete_required_password_change(
    body: RequiredPasswordChangeRequest, request: Request, response: Response
):
    """Finish an administrator-forced password change and log in.

    Raises:
        400: no change is pending or the new password is unchanged
        401: invalid credentials or a deactivated account
    """
    result = await get_runtime().auth.complete_required_password_change(
        body.email, body.current_password, body.new_password, _client_metadata(request)
    )
    _apply_auth_cookies(response, result.access, result.refresh)
    return Envelope(status="ok", data=_auth_response(result.account, result.access, result.refresh))


# -- service authentication ---------------------------------------------


@router.post("/services/authenticate", response_model=Envelope, tags=["services"])
async def authenticate_service(body: ServiceAuthenticateRequest):
    """Client-credentials exchange for a service token.

    Raises:
        401: unknown client, wrong secret or inactive service account
    """
    issued, service_account = get_runtime().service_credentials.authenticate(
        body.client_id, body.client_secret
    )
    return Envelope(
        status="ok",
        data=ServiceTokenResponse(
            access_token=issued.token,
            expires_in=issued.expires_in,
            service=_service_account_response(service_account),
        ),
    )


@router.post(
    "/services/validate",
    response_model=Envelope,
    tags=["services"],
    dependencies=[Depends(require(ADMIN, INTERNAL_SERVICE))],
)
async def validate_service_token(body: TokenRequest):
    result = await get_runtime().auth.validate_service_token(body.token)
    return Envelope(
        status="ok",
        data=ServiceTokenValidationResponse(
            valid=result.valid,
            client_id=result.client_id,
            service_name=result.service_name,
            scopes=result.scopes,
        ),
    )


@router.post(
    "/services/revoke",
    response_model=Envelope,
    tags=["services"],
    dependencies=[Depends(require(ADMIN, INTERNAL_SERVICE))],
)
async def revoke_service_token(body: TokenRequest):
    ttl = await get_runtime().auth.revoke_service_token(body.token)
    return Envelope(status="ok", data={"revoked": True, "ttl_seconds": ttl})


# -- service account administration -------------------------------------

_manage_services = require_user(Permission.SERVICE_ACCOUNT_MANAGE.value)


@router.get("/services/accounts", response_model=Envelope, tags=["service-accounts"])
async def list_service_accounts(_: Principal = Depends(_manage_services)):
    accounts = get_runtime().service_credentials.list()
    return Envelope(
        status="ok",
        data={"items": [_service_account_response(a) for a in accounts], "count": len(accounts)},
    )


@router.post(
    "/services/accounts", response_model=Envelope, status_code=201, tags=["service-accounts"]
)
async def create_service_account(
    body: ServiceAccountCreateRequest, principal: Principal = Depends(_manage_services)
):
    """Create a service account; the client secret is returned only here.

    Raises:
        400: unknown service or scopes outside the service's catalogue
        409: name already taken
    """
    service_account, secret = get_runtime().service_credentials.create(
        body.name,
        body.service_name,
        body.scopes,
        description=body.description,
        created_by=principal.subject,
    )
    return Envelope(
        status="ok",
        data=ServiceAccountSecretResponse(
            service_account=_service_account_response(service_account),
            client_secret=secret,
        ),
    )


@router.get("/services/accounts/{service_account_id}", response_model=Envelope, tags=["service-accounts"])
async def get_service_account(
    service_account_id: str = Path(..., max_length=64),
    _: Principal = Depends(_manage_services),
):
    service_account = get_runtime().service_credentials.get(service_account_id)
    return Envelope(status="ok", data=_service_account_response(service_account))


@router.put("/services/accounts/{service_account_id}", response_model=Envelope, tags=["service-accounts"])
async def update_service_account(
    body: ServiceAccountUpdateRequest,
    service_account_id: str = Path(..., max_length=64),
    _: Principal = Depends(_manage_services),
):
    service_account = get_runtime().service_credentials.update(
        service_account_id,
        name=body.name,
        description=body.description,
        scopes=body.scopes,
        active=body.active,
    )
    return Envelope(status="ok", data=_service_account_response(service_account))


@router.delete("/services/accounts/{service_account_id}", response_model=Envelope, tags=["service-accounts"])
async def delete_service_account(
    service_account_id: str = Path(..., max_length=64),
    _: Principal = Depends(_manage_services),
):
    get_runtime().service_credentials.delete(service_account_id)
    return Envelope(status="ok", data={"deleted": True})


@router.post(
    "/services/accounts/{service_account_id}/regenerate-secret",
    response_model=Envelope,
    tags=["service-accounts"],
)
async def regenerate_service_secret(
    service_account_id: str = Path(..., max_length=64),
    _: Principal = Depends(_manage_services),
):
    """Issue a new client secret; the old one stops working immediately."""
    credentials = get_runtime().service_credentials
    secret = credentials.rotate_secret(service_account_id)
    return Envelope(
        status="ok",
        data=ServiceAccountSecretResponse(
            service_account=_service_account_response(credentials.get(service_account_id)),
            client_secret=secret,
        ),
    )


# -- token utilities ----------------------------------------------------


@router.post("/token/validate", response_model=Envelope, tags=["token"])
async def validate_token(body: TokenRequest):
    """Fully validate a user access token, including revocation and account state."""
    principal = await get_runtime().auth.validate_access_token(body.token)
    return Envelope(
        status="ok",
        data=TokenValidationResponse(valid=True, user=_account_summary(principal.account)),
    )


@router.post("/token/introspect", response_model=Envelope, tags=["token"])
async def introspect_token(body: TokenRequest):
    """Decode a token without verifying it. The claims are not trustworthy."""
    claims = get_runtime().auth.introspect(body.token)
    return Envelope(status="ok", data={"verified": False, "claims": claims})


# -- account administration ---------------------------------------------

_read_users = require_user(Permission.USER_READ.value)
_create_users = require_user(Permission.USER_CREATE.value)
_update_users = require_user(Permission.USER_UPDATE.value)
_delete_users = require_user(Permission.USER_DELETE.value)


@router.post("/admin/users", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_account(
    body: AdminCreateAccountRequest, _: Principal = Depends(_create_users)
):
    """Provision an account with a temporary password that must be changed on first login."""
    account, temp_password = await get_runtime().auth.admin_create_account(
        body.email,
        role=body.role,
        first_name=body.first_name,
        last_name=body.last_name,
        password=body.password,
        permission_overrides=body.permissions,
    )
    return Envelope(
        status="ok",
        data=AdminCreateAccountResponse(
            user=_account_summary(account), temporary_password=temp_password
        ),
    )


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_accounts(
    role: Optional[str] = Query(None, max_length=32),
    limit: int = Query(100, ge=1, le=_MAX_LIST_LIMIT),
    _: Principal = Depends(_read_users),
):
    accounts = get_runtime().auth.list_accounts(role=role, limit=limit)
    return Envelope(
        status="ok",
        data={"items": [_account_summary(a) for a in accounts], "count": len(accounts)},
    )


@router.get("/admin/users/{account_id}", response_model=Envelope, tags=["admin"])
async def admin_get_account(
    account_id: str = Path(..., max_length=64), _: Principal = Depends(_read_users)
):
    account = get_runtime().auth.get_account(account_id)
    return Envelope(status="ok", data=_account_summary(account))


@router.put("/admin/users/{account_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_account_status(
    body: AccountStatusRequest,
    account_id: str = Path(..., max_length=64),
    _: Principal = Depends(_update_users),
):
    """Activate or deactivate an account. Deactivation signs it out everywhere."""
    account = await get_runtime().auth.set_account_active(account_id, body.is_active)
    return Envelope(status="ok", data=_account_summary(account))


@router.put("/admin/users/{account_id}/permissions", response_model=Envelope, tags=["admin"])
async def admin_set_permissions(
    body: PermissionOverridesRequest,
    account_id: str = Path(..., max_length=64),
    _: Principal = Depends(_update_users),
):
    account = await get_runtime().auth.update_permission_overrides(account_id, body.permissions)
    return Envelope(status="ok", data=_account_summary(account))


@router.put("/admin/users/{account_id}/reset-password", response_model=Envelope, tags=["admin"])
async def admin_reset_password(
    body: AdminPasswordResetRequest,
    account_id: str = Path(..., max_length=64),
    _: Principal = Depends(_update_users),
):
    temp_password = await get_runtime().auth.admin_reset_password(account_id, body.new_password)
    return Envelope(status="ok", data=PasswordResetResponse(temporary_password=temp_password))


@router.delete("/admin/users/{account_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_account(
    account_id: str = Path(..., max_length=64), _: Principal = Depends(_delete_users)
):
    await get_runtime().auth.delete_account(account_id)
    return Envelope(status="ok", data={"deleted": True})
