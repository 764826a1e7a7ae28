"""Role and permission catalogue.

Resolution is pure: ``resolve_permissions(role, overrides)`` is the role's
defaults unioned with the account's overrides. Overrides only ever grant,
so the result is always a superset of the role defaults. Unknown roles get
no defaults.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable


class Role(str, Enum):
    CUSTOMER = "customer"
    RESTAURANT_ADMIN = "restaurant-admin"
    DELIVERY_PERSONNEL = "delivery-personnel"
    ADMIN = "admin"


class Permission(str, Enum):
    USER_READ = "user:read"
    USER_CREATE = "user:create"
    USER_UPDATE = "user:update"
    USER_DELETE = "user:delete"

    RESTAURANT_READ = "restaurant:read"
    RESTAURANT_CREATE = "restaurant:create"
    RESTAURANT_UPDATE = "restaurant:update"
    RESTAURANT_DELETE = "restaurant:delete"

    MENU_READ = "menu:read"
    MENU_CREATE = "menu:create"
    MENU_UPDATE = "menu:update"
    MENU_DELETE = "menu:delete"

    ORDER_READ = "order:read"
    ORDER_CREATE = "order:create"
    ORDER_UPDATE = "order:update"
    ORDER_CANCEL = "order:cancel"

    DELIVERY_READ = "delivery:read"
    DELIVERY_UPDATE = "delivery:update"
    DELIVERY_ASSIGN = "delivery:assign"

    PAYMENT_READ = "payment:read"
    PAYMENT_CREATE = "payment:create"
    PAYMENT_REFUND = "payment:refund"

    PROFILE_READ = "profile:read"
    PROFILE_UPDATE = "profile:update"

    SERVICE_ACCOUNT_MANAGE = "service-account:manage"


# Pseudo-permissions understood by require_permission; never stored on accounts
INTERNAL_SERVICE = "INTERNAL_SERVICE"
ADMIN = "ADMIN"
READ = "READ"
WRITE = "WRITE"

ALL_PERMISSIONS: FrozenSet[str] = frozenset(p.value for p in Permission)

ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    Role.ADMIN.value: ALL_PERMISSIONS,
    Role.CUSTOMER.value: frozenset(
        {
            Permission.PROFILE_READ.value,
            Permission.PROFILE_UPDATE.value,
            Permission.RESTAURANT_READ.value,
            Permission.MENU_READ.value,
            Permission.ORDER_CREATE.value,
            Permission.ORDER_READ.value,
            Permission.ORDER_CANCEL.value,
            Permission.PAYMENT_CREATE.value,
            Permission.PAYMENT_READ.value,
            Permission.DELIVERY_READ.value,
        }
    ),
    Role.RESTAURANT_ADMIN.value: frozenset(
        {
            Permission.PROFILE_READ.value,
            Permission.PROFILE_UPDATE.value,
            Permission.RESTAURANT_READ.value,
            Permission.RESTAURANT_UPDATE.value,
            Permission.MENU_READ.value,
            Permission.MENU_CREATE.value,
            Permission.MENU_UPDATE.value,
            Permission.MENU_DELETE.value,
            Permission.ORDER_READ.value,
            Permission.ORDER_UPDATE.value,
            Permission.PAYMENT_READ.value,
            Permission.DELIVERY_READ.value,
        }
    ),
    Role.DELIVERY_PERSONNEL.value: frozenset(
        {
            Permission.PROFILE_READ.value,
            Permission.PROFILE_UPDATE.value,
            Permission.ORDER_READ.value,
            Permission.DELIVERY_READ.value,
            Permission.DELIVERY_UPDATE.value,
        }
    ),
}


def is_known_role(role: str) -> bool:
    return role in ROLE_PERMISSIONS


def role_permissions(role: str) -> FrozenSet[str]:
    return ROLE_PERMISSIONS.get(role, frozenset())


def resolve_permissions(role: str, overrides: Iterable[str] | None = None) -> FrozenSet[str]:
    return role_permissions(role) | frozenset(overrides or ())


def has_permission(role: str, permission: str) -> bool:
    return permission in role_permissions(role)


def unknown_permissions(values: Iterable[str]) -> list[str]:
    """Return the entries of ``values`` that are not catalogue permissions."""
    return sorted(v for v in set(values) if v not in ALL_PERMISSIONS)


__all__ = [
    "ADMIN",
    "ALL_PERMISSIONS",
    "INTERNAL_SERVICE",
    "Permission",
    "READ",
    "ROLE_PERMISSIONS",
    "Role",
    "WRITE",
    "has_permission",
    "is_known_role",
    "resolve_permissions",
    "role_permissions",
    "unknown_permissions",
]
