from rest_framework.permissions import BasePermission

from apps.accounts.models import UserRole


ROLE_CAPABILITIES = {
    UserRole.ADMIN: {
        "catalog.view",
        "catalog.manage",
        "maintains.view",
        "maintains.manage",
        "inventory.view",
        "inventory.manage",
        "sales.view",
        "sales.create",
        "sales.cancel",
        "customers.view",
        "customers.manage",
        "dues.collect",
    },
    UserRole.MANAGER: {
        "catalog.view",
        "catalog.manage",
        "maintains.view",
        "inventory.view",
        "inventory.manage",
        "sales.view",
        "sales.create",
        "sales.cancel",
        "customers.view",
        "customers.manage",
        "dues.collect",
    },
    UserRole.SELLER: {
        "catalog.view",
        "maintains.view",
        "inventory.view",
        "sales.view",
        "sales.create",
        "customers.view",
        "customers.manage",
        "dues.collect",
    },
}


class RolePermission(BasePermission):
    @staticmethod
    def _resolve_role(user):
        group_names = set(user.groups.values_list("name", flat=True))
        for role in (UserRole.ADMIN, UserRole.MANAGER, UserRole.SELLER):
            if role in group_names:
                return role
        return getattr(user, "role", UserRole.SELLER)

    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False

        capability_map = getattr(view, "capability_map", {})
        action = getattr(view, "action", request.method.lower())
        required = capability_map.get(action) or capability_map.get(request.method.lower()) or set()
        if not required:
            return True

        user_role = self._resolve_role(request.user)
        user_caps = ROLE_CAPABILITIES.get(user_role, set())
        return all(cap in user_caps for cap in required)
