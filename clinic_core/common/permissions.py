# clinic_core/common/permissions.py

from __future__ import annotations

from typing import FrozenSet, Set

from rest_framework.permissions import BasePermission, SAFE_METHODS

# One Django group per clinic station.
ROLE_ADMIN = "ADMIN"
ROLE_DOCTOR = "DOCTOR"
ROLE_NURSE = "NURSE"
ROLE_RECEPTION = "RECEPTION"
ROLE_LAB = "LAB"
ROLE_PHARMACY = "PHARMACY"
ROLE_BILLING = "BILLING"
ROLE_READONLY = "READONLY"

ALL_ROLES = (
    ROLE_ADMIN,
    ROLE_DOCTOR,
    ROLE_NURSE,
    ROLE_RECEPTION,
    ROLE_LAB,
    ROLE_PHARMACY,
    ROLE_BILLING,
    ROLE_READONLY,
)

STAFF_ROLES = {ROLE_ADMIN, ROLE_DOCTOR, ROLE_NURSE, ROLE_RECEPTION, ROLE_LAB, ROLE_PHARMACY, ROLE_BILLING}
READ_ROLES = STAFF_ROLES | {ROLE_READONLY}


def _user_roles(user) -> Set[str]:
    """
    Station roles are Django group names; a custom user model may also carry
    a single `role` attribute. Superusers act as ADMIN, and a signed-in
    account with no group can only read.
    """
    if not user or not getattr(user, "is_authenticated", False):
        return set()
    if getattr(user, "is_superuser", False):
        return {ROLE_ADMIN}

    roles = set(user.groups.values_list("name", flat=True)) if hasattr(user, "groups") else set()
    extra = getattr(user, "role", None)
    if extra:
        roles.add(str(extra))
    return roles or {ROLE_READONLY}


def request_actor(request) -> tuple[int | None, FrozenSet[str]]:
    """
    (actor_user_id, actor_roles) for service calls made from views.
    """
    user = getattr(request, "user", None)
    return getattr(user, "id", None), frozenset(_user_roles(user))


_METHOD_ACTIONS = {"POST": "create", "PUT": "update", "PATCH": "partial_update", "DELETE": "destroy"}


def _is_detail(view) -> bool:
    kwargs = getattr(view, "kwargs", None) or {}
    return "pk" in kwargs or "id" in kwargs


class BaseRolePermission(BasePermission):
    """
    Role gate for a viewset. Subclasses map each action name to the roles
    allowed to call it; ADMIN passes everywhere and unknown actions are denied.
    Read actions a subclass does not list reuse its list/retrieve roles.

    Stage ownership (who may sign off which station) is checked again by the
    stage gate; this layer only keeps roles away from screens they never use.
    """
    message = "You do not have permission to perform this action."

    allowed_roles_per_action = {
        "list": READ_ROLES,
        "retrieve": READ_ROLES,
        "create": {ROLE_ADMIN},
        "update": {ROLE_ADMIN},
        "partial_update": {ROLE_ADMIN},
        "destroy": {ROLE_ADMIN},
    }

    def _action(self, request, view) -> str | None:
        action = getattr(view, "action", None)
        if action:
            return action
        if request.method in SAFE_METHODS:
            return "retrieve" if _is_detail(view) else "list"
        return _METHOD_ACTIONS.get(request.method.upper())

    def has_permission(self, request, view) -> bool:
        roles = _user_roles(request.user)
        if not roles:
            return False
        if ROLE_ADMIN in roles:
            return True

        allowed = self.allowed_roles_per_action.get(self._action(request, view))
        if allowed is None and request.method in SAFE_METHODS:
            allowed = self.allowed_roles_per_action.get("retrieve" if _is_detail(view) else "list")
        return bool(allowed and roles & allowed)

    def has_object_permission(self, request, view, obj) -> bool:
        return self.has_permission(request, view)


class VisitPermission(BaseRolePermission):
    """Permissions for the visit workflow"""
    allowed_roles_per_action = {
        "list": READ_ROLES,
        "retrieve": READ_ROLES,
        "timeline": READ_ROLES,
        "create": {ROLE_ADMIN, ROLE_RECEPTION},
        "complete_stage": STAFF_ROLES,
        "order_labs": {ROLE_ADMIN, ROLE_DOCTOR},
        "cancel": {ROLE_ADMIN, ROLE_RECEPTION},
    }


class LabPermission(BaseRolePermission):
    """Permissions for Lab tests"""
    allowed_roles_per_action = {
        "list": {ROLE_ADMIN, ROLE_DOCTOR, ROLE_NURSE, ROLE_LAB, ROLE_READONLY},
        "retrieve": {ROLE_ADMIN, ROLE_DOCTOR, ROLE_NURSE, ROLE_LAB, ROLE_READONLY},
        "complete": {ROLE_ADMIN, ROLE_LAB},
    }


class PharmacyPermission(BaseRolePermission):
    """Permissions for prescriptions + dispensing"""
    allowed_roles_per_action = {
        "list": {ROLE_ADMIN, ROLE_DOCTOR, ROLE_NURSE, ROLE_PHARMACY, ROLE_BILLING, ROLE_READONLY},
        "retrieve": {ROLE_ADMIN, ROLE_DOCTOR, ROLE_NURSE, ROLE_PHARMACY, ROLE_BILLING, ROLE_READONLY},
        "create": {ROLE_ADMIN, ROLE_DOCTOR},
        "dispense": {ROLE_ADMIN, ROLE_PHARMACY},
        "low_stock": {ROLE_ADMIN, ROLE_PHARMACY},
    }


class BillingPermission(BaseRolePermission):
    """Permissions for invoices + counter payments"""
    allowed_roles_per_action = {
        "list": {ROLE_ADMIN, ROLE_RECEPTION, ROLE_BILLING, ROLE_READONLY},
        "retrieve": {ROLE_ADMIN, ROLE_RECEPTION, ROLE_BILLING, ROLE_READONLY},
        "compose": {ROLE_ADMIN, ROLE_BILLING},
        "void": {ROLE_ADMIN, ROLE_BILLING},
        "payments": {ROLE_ADMIN, ROLE_BILLING},
    }


class MobilePaymentPermission(BaseRolePermission):
    """Permissions for mobile money initiation + status checks"""
    allowed_roles_per_action = {
        "initiate": {ROLE_ADMIN, ROLE_BILLING, ROLE_RECEPTION},
        "order_status": {ROLE_ADMIN, ROLE_BILLING, ROLE_RECEPTION},
        "pending": {ROLE_ADMIN, ROLE_BILLING},
    }


class AuditPermission(BaseRolePermission):
    """Activity log is an administrator screen"""
    allowed_roles_per_action = {
        "list": {ROLE_ADMIN},
    }


class AlertPermission(BaseRolePermission):
    """Permissions for the operator alert queue"""
    allowed_roles_per_action = {
        "list": STAFF_ROLES,
        "retrieve": STAFF_ROLES,
        "ack": {ROLE_ADMIN, ROLE_BILLING, ROLE_PHARMACY, ROLE_RECEPTION},
        "resolve": {ROLE_ADMIN, ROLE_BILLING, ROLE_PHARMACY},
    }
