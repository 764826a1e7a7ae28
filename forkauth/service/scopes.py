from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Tuple


class ServiceName(str, Enum):
    RESTAURANT = "restaurant-service"
    ORDER = "order-service"
    DELIVERY = "delivery-service"
    PAYMENT = "payment-service"
    NOTIFICATION = "notification-service"
    API_GATEWAY = "api-gateway"


# Services allowed to hold any scope in the catalogue
ALL_ACCESS_SERVICES: FrozenSet[str] = frozenset({ServiceName.API_GATEWAY.value})

SCOPE_LEVELS: Tuple[str, ...] = ("read", "write", "admin")

SERVICE_SCOPES: Dict[str, Tuple[str, ...]] = {
    name.value: tuple(f"{name.value}:{level}" for level in SCOPE_LEVELS)
    for name in ServiceName
    if name.value not in ALL_ACCESS_SERVICES
}

ALL_SERVICE_SCOPES: Tuple[str, ...] = tuple(
    scope for scopes in SERVICE_SCOPES.values() for scope in scopes
)


def is_known_service(service_name: str) -> bool:
    return service_name in {s.value for s in ServiceName}


def catalogue_for(service_name: str) -> Tuple[str, ...]:
    """Scopes a service may hold; the gateway may hold every scope."""
    if service_name in ALL_ACCESS_SERVICES:
        return ALL_SERVICE_SCOPES
    return SERVICE_SCOPES.get(service_name, ())


def default_scopes(service_name: str) -> List[str]:
    return list(catalogue_for(service_name))


def invalid_scopes(service_name: str, scopes: Iterable[str]) -> List[str]:
    """Return every requested scope outside ``service_name``'s catalogue."""
    allowed = set(catalogue_for(service_name))
    return sorted({scope for scope in scopes if scope not in allowed})


def scope_for(service_name: str, level: str) -> str:
    """Map a generic level (``READ``/``WRITE``/``ADMIN``) to the service's own scope."""
    return f"{service_name}:{level.lower()}"
