"""
Admin roles and permissions, plus the studio publishing gate.
"""

from typing import Optional

from errors import PermissionDenied
from schemas import User

MANAGE_USERS = "manage_users"
VERIFY_USERS = "verify_users"
APPROVE_COURSES = "approve_courses"
APPROVE_PRODUCTS = "approve_products"
APPROVE_WORKSHOPS = "approve_workshops"
MANAGE_ORDERS = "manage_orders"
REFUND_ORDERS = "refund_orders"
MANAGE_FINANCE = "manage_finance"
MANAGE_MARKETING = "manage_marketing"
MANAGE_SETTINGS = "manage_settings"
VIEW_ANALYTICS = "view_analytics"

ALL_PERMISSIONS = frozenset({
    MANAGE_USERS, VERIFY_USERS, APPROVE_COURSES, APPROVE_PRODUCTS, APPROVE_WORKSHOPS,
    MANAGE_ORDERS, REFUND_ORDERS, MANAGE_FINANCE, MANAGE_MARKETING, MANAGE_SETTINGS,
    VIEW_ANALYTICS,
})

ROLE_PERMISSIONS = {
    "super": ALL_PERMISSIONS,
    "operations": frozenset({MANAGE_USERS, VERIFY_USERS, MANAGE_ORDERS, REFUND_ORDERS, VIEW_ANALYTICS}),
    "content": frozenset({APPROVE_COURSES, APPROVE_PRODUCTS, APPROVE_WORKSHOPS}),
    "seo": frozenset({MANAGE_MARKETING, VIEW_ANALYTICS}),
    "finance": frozenset({MANAGE_FINANCE, MANAGE_ORDERS, REFUND_ORDERS, MANAGE_SETTINGS, VIEW_ANALYTICS}),
    "support": frozenset({MANAGE_USERS, MANAGE_ORDERS}),
}


def has_admin_permission(user: Optional[User], permission: Optional[str] = None) -> bool:
    if user is None or user.role != "admin" or not user.is_active:
        return False
    if user.admin_role == "super":
        return True
    if permission is None:
        return True
    granted = ROLE_PERMISSIONS.get(user.admin_role, frozenset()) | set(user.permissions)
    return permission in granted


def require_admin(user: Optional[User], permission: Optional[str] = None) -> None:
    if not has_admin_permission(user, permission):
        raise PermissionDenied("You do not have permission to do this")


def require_verified_studio(user: Optional[User]) -> None:
    """Only studios with approved KYC may publish paid content."""
    if user is None or user.role != "studio":
        raise PermissionDenied("Only studios can publish content")
    if user.kyc.status != "approved":
        raise PermissionDenied("Complete identity verification before publishing")
