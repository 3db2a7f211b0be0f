# Overview: Role to capability mapping and the pure authorization check.

"""
Authorization mediator.

WHY: Every admin and customer endpoint asks one question, "may this
principal do X?", and the answer depends only on the principal's role.
No datastore access happens here; the decorators in ..decorators do the
request plumbing and the audit write.

DESIGN PRINCIPLES:
- Fail closed: unknown roles have no capabilities
- Roles are fixed sets, not per-user grants
"""

from __future__ import annotations

from dataclasses import dataclass, field


# Roles
ROLE_SUPER_ADMIN = "super_admin"
ROLE_BUSINESS_PROCESSING = "business_processing"
ROLE_WEBSITE_ADMIN = "website_admin"
ROLE_CUSTOMER = "customer"

# Capabilities
VIEW_OWN_ORDERS = "view_own_orders"
VIEW_ALL_ORDERS = "view_all_orders"
UPDATE_ORDER_STATUS = "update_order_status"

VIEW_PRODUCTS = "view_products"
CREATE_PRODUCTS = "create_products"
EDIT_PRODUCTS = "edit_products"
DELETE_PRODUCTS = "delete_products"

VIEW_MEDIA = "view_media"
UPLOAD_MEDIA = "upload_media"
DELETE_MEDIA = "delete_media"

VIEW_SETTINGS = "view_settings"
EDIT_SETTINGS = "edit_settings"

VIEW_USERS = "view_users"
MANAGE_USERS = "manage_users"

VIEW_AUDIT_LOGS = "view_audit_logs"

MANAGE_DISCOUNTS = "manage_discounts"

VIEW_GIFT_CARDS = "view_gift_cards"
MANAGE_GIFT_CARDS = "manage_gift_cards"


_ORDER_CAPABILITIES = frozenset({VIEW_ALL_ORDERS, UPDATE_ORDER_STATUS})
_PRODUCT_CAPABILITIES = frozenset({VIEW_PRODUCTS, CREATE_PRODUCTS, EDIT_PRODUCTS, DELETE_PRODUCTS})
_MEDIA_CAPABILITIES = frozenset({VIEW_MEDIA, UPLOAD_MEDIA, DELETE_MEDIA})
_ADMIN_ONLY_CAPABILITIES = frozenset({
    VIEW_SETTINGS,
    EDIT_SETTINGS,
    VIEW_USERS,
    MANAGE_USERS,
    VIEW_AUDIT_LOGS,
    MANAGE_DISCOUNTS,
    VIEW_GIFT_CARDS,
    MANAGE_GIFT_CARDS,
})

_FULL_ADMIN = _ORDER_CAPABILITIES | _PRODUCT_CAPABILITIES | _MEDIA_CAPABILITIES | _ADMIN_ONLY_CAPABILITIES

ROLE_CAPABILITIES: dict[str, frozenset[str]] = {
    ROLE_SUPER_ADMIN: _FULL_ADMIN,
    ROLE_WEBSITE_ADMIN: _FULL_ADMIN,
    ROLE_BUSINESS_PROCESSING: (
        _ORDER_CAPABILITIES | _PRODUCT_CAPABILITIES | _MEDIA_CAPABILITIES | frozenset({VIEW_GIFT_CARDS})
    ),
    ROLE_CUSTOMER: frozenset({VIEW_OWN_ORDERS}),
}

ADMIN_ROLES = frozenset({ROLE_SUPER_ADMIN, ROLE_BUSINESS_PROCESSING, ROLE_WEBSITE_ADMIN})


@dataclass(frozen=True)
class Principal:
    """Verified caller identity (decoded from a signed bearer token)."""

    role: str
    email: str | None = None
    id: str | None = None
    name: str | None = None
    claims: dict = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_customer(self) -> bool:
        return self.role == ROLE_CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def capabilities_for(role: str | None) -> frozenset[str]:
    return ROLE_CAPABILITIES.get(role or "", frozenset())


def has(principal: Principal | None, capability: str) -> bool:
    """Pure check: no principal or unknown role means no capability."""
    if principal is None:
        return False
    return capability in capabilities_for(principal.role)


def has_any(principal: Principal | None, capabilities) -> bool:
    return any(has(principal, c) for c in capabilities)
