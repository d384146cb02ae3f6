from enum import Enum

from .models import User, UserRole


class Permissions(str, Enum):
    # Orders
    ORDERS_READ = "orders:read"
    ORDERS_CREATE = "orders:create"
    ORDERS_UPDATE = "orders:update"
    ORDERS_CANCEL = "orders:cancel"
    ORDERS_PAY = "orders:pay"

    # Menu
    MENU_READ = "menu:read"
    MENU_MANAGE = "menu:manage"  # Create, Update, Delete

    # Floors & Tables
    TABLES_READ = "tables:read"
    TABLES_MANAGE = "tables:manage"

    # Restaurant settings and branding
    SETTINGS_READ = "settings:read"
    SETTINGS_MANAGE = "settings:manage"

    # Customer entry code
    ACCESS_CODE_MANAGE = "access_code:manage"

    # Customer feedback
    FEEDBACK_READ = "feedback:read"
    FEEDBACK_REPLY = "feedback:reply"

    # Customer complaints
    COMPLAINTS_READ = "complaints:read"
    COMPLAINTS_MANAGE = "complaints:manage"

    # Staff accounts
    STAFF_READ = "staff:read"
    STAFF_MANAGE = "staff:manage"

    # SaaS billing
    BILLING_MANAGE = "billing:manage"


_ALL = list(Permissions)

ROLE_PERMISSIONS: dict[UserRole, list[Permissions]] = {
    UserRole.admin: _ALL,
    UserRole.manager: [
        p for p in _ALL if p != Permissions.BILLING_MANAGE
    ],
    UserRole.cashier: [
        Permissions.ORDERS_READ,
        Permissions.ORDERS_CREATE,
        Permissions.ORDERS_UPDATE,
        Permissions.ORDERS_CANCEL,
        Permissions.ORDERS_PAY,
        Permissions.MENU_READ,
        Permissions.TABLES_READ,
        Permissions.SETTINGS_READ,
        Permissions.COMPLAINTS_READ,
    ],
    UserRole.waiter: [
        Permissions.ORDERS_READ,
        Permissions.ORDERS_CREATE,
        Permissions.ORDERS_UPDATE,
        Permissions.ORDERS_CANCEL,
        Permissions.MENU_READ,
        Permissions.TABLES_READ,
        Permissions.COMPLAINTS_READ,
    ],
    UserRole.kitchen: [
        Permissions.ORDERS_READ,
        Permissions.ORDERS_UPDATE,
        Permissions.MENU_READ,
    ],
}


class PermissionService:
    @staticmethod
    def get_user_permissions(user: User) -> set[str]:
        """Get all permissions for a user based on their role."""
        return {p.value for p in ROLE_PERMISSIONS.get(user.role, [])}

    @staticmethod
    def has_permission(user: User, required_permission: str) -> bool:
        """Check if user has specific permission."""
        return required_permission in PermissionService.get_user_permissions(user)
