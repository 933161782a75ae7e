from __future__ import annotations

from typing import Iterable, Tuple

from api.authentication import Principal

PERM_PURCHASE_ORDER_VIEW = "purchasing.purchase_order.view"
PERM_PURCHASE_ORDER_CREATE = "purchasing.purchase_order.create"
PERM_PURCHASE_ORDER_APPROVE = "purchasing.purchase_order.approve"
PERM_PURCHASE_ORDER_ISSUE = "purchasing.purchase_order.issue"
PERM_PURCHASE_ORDER_RECEIVE = "purchasing.purchase_order.receive"
PERM_PURCHASE_ORDER_CANCEL = "purchasing.purchase_order.cancel"
PERM_PURCHASE_RETURN_VIEW = "purchasing.purchase_return.view"
PERM_PURCHASE_RETURN_CREATE = "purchasing.purchase_return.create"
PERM_PURCHASE_RETURN_APPROVE = "purchasing.purchase_return.approve"
# Approves every remaining workflow level in one step.
PERM_APPROVAL_OVERRIDE = "purchasing.approval.override"

_ROLE_PERMISSION_MAP = {
    "PURCHASER": {
        PERM_PURCHASE_ORDER_VIEW,
        PERM_PURCHASE_ORDER_CREATE,
        PERM_PURCHASE_ORDER_ISSUE,
        PERM_PURCHASE_ORDER_CANCEL,
        PERM_PURCHASE_RETURN_VIEW,
        PERM_PURCHASE_RETURN_CREATE,
    },
    "STOREKEEPER": {
        PERM_PURCHASE_ORDER_VIEW,
        PERM_PURCHASE_ORDER_RECEIVE,
        PERM_PURCHASE_RETURN_VIEW,
        PERM_PURCHASE_RETURN_CREATE,
    },
    "APPROVER": {
        PERM_PURCHASE_ORDER_VIEW,
        PERM_PURCHASE_ORDER_APPROVE,
        PERM_PURCHASE_RETURN_VIEW,
        PERM_PURCHASE_RETURN_APPROVE,
    },
}


def _dedupe_preserve_order(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def _permissions_for_roles(roles: Iterable[str]) -> set[str]:
    permissions: set[str] = set()
    for role in roles:
        normalized = str(role).strip().upper()
        if normalized == "SUPER_ADMIN":
            for granted in _ROLE_PERMISSION_MAP.values():
                permissions |= granted
            permissions.add(PERM_APPROVAL_OVERRIDE)
            continue
        permissions |= _ROLE_PERMISSION_MAP.get(normalized, set())
    return permissions


def resolve_roles_and_permissions(
    request, principal: Principal
) -> Tuple[list[str], list[str]]:
    if hasattr(request, "_rbac_cache"):
        cached = request._rbac_cache
        return cached["roles"], cached["permissions"]

    roles: list[str] = list(principal.roles or [])
    permissions = _dedupe_preserve_order(
        list(getattr(principal, "permissions", []) or [])
        + sorted(_permissions_for_roles(roles))
    )

    request._rbac_cache = {"roles": roles, "permissions": permissions}
    return roles, permissions
