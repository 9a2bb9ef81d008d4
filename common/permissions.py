import logging

from rest_framework.permissions import BasePermission

from core.models import User

logger = logging.getLogger("security.authorization")

ROLE_CAPABILITY_MATRIX = {
    "deliveries.view": {User.Role.DELIVERY, User.Role.ADMIN},
    "deliveries.mark": {User.Role.DELIVERY, User.Role.ADMIN},
    "customers.view": {User.Role.DELIVERY, User.Role.ADMIN},
    "customers.pause": {User.Role.CUSTOMER, User.Role.ADMIN},
    "customers.assign": {User.Role.ADMIN},
    "wallet.adjust": {User.Role.ADMIN},
    "penalty.view": {User.Role.ADMIN},
    "penalty.impose": {User.Role.ADMIN},
    "monthly.view": {User.Role.ADMIN},
    "monthly.manage": {User.Role.ADMIN},
    "admin.records.manage": {User.Role.ADMIN},
}


def get_user_role(user):
    if not user or not user.is_authenticated:
        return None
    if user.is_superuser:
        return User.Role.ADMIN
    role = getattr(user, "role", None)
    if role:
        return role
    if getattr(user, "is_staff", False):
        return User.Role.ADMIN
    return User.Role.CUSTOMER


def user_has_capability(user, capability):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    allowed_roles = ROLE_CAPABILITY_MATRIX.get(capability)
    if not allowed_roles:
        return False
    return get_user_role(user) in allowed_roles


class RoleCapabilityPermission(BasePermission):
    """Permission class that validates role capability by action/method and logs denied attempts."""

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        capability_map = getattr(view, "permission_action_map", {})
        action_key = getattr(view, "action", None) or request.method.lower()
        capability = capability_map.get(action_key)
        if capability is None:
            return True

        allowed = user_has_capability(request.user, capability)
        if not allowed:
            logger.warning(
                "permission_denied capability=%s user=%s role=%s method=%s path=%s view=%s action=%s",
                capability,
                getattr(request.user, "username", "anonymous"),
                get_user_role(request.user),
                request.method,
                request.path,
                view.__class__.__name__,
                action_key,
            )
        return allowed


def scope_customers_for_user(queryset, user, prefix=""):
    """Limit a customer-bearing queryset to what the user may see.

    `prefix` is the lookup path to the customer, e.g. "customer__" for
    deliveries. Delivery staff see their assigned route, customers their own
    account.
    """
    role = get_user_role(user)
    if role == User.Role.ADMIN:
        return queryset
    if role == User.Role.DELIVERY:
        return queryset.filter(**{f"{prefix}delivery_person": user})
    if role == User.Role.CUSTOMER:
        return queryset.filter(**{f"{prefix}user": user})
    return queryset.none()
