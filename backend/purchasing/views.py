import logging
from typing import Any, Dict, Optional

from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.response import Response

from api.authentication import GarageAuthentication
from api.permissions import PurchasingPermission
from api.rbac import (
    PERM_APPROVAL_OVERRIDE,
    PERM_PURCHASE_ORDER_APPROVE,
    PERM_PURCHASE_ORDER_CANCEL,
    PERM_PURCHASE_ORDER_CREATE,
    PERM_PURCHASE_ORDER_ISSUE,
    PERM_PURCHASE_ORDER_RECEIVE,
    PERM_PURCHASE_ORDER_VIEW,
    PERM_PURCHASE_RETURN_APPROVE,
    PERM_PURCHASE_RETURN_CREATE,
    PERM_PURCHASE_RETURN_VIEW,
    resolve_roles_and_permissions,
)
from purchasing.exceptions import (
    ConfigurationError,
    ConflictError,
    EngineError,
    NotFoundError,
    ValidationError,
)
from purchasing.services import backorders, purchase_orders, receiving, returns

logger = logging.getLogger(__name__)


def _actor_id(request) -> str | None:
    return getattr(request.user, "user_id", None) or getattr(request.user, "username", None)


def _company_id(request) -> int | None:
    return getattr(request.user, "company_id", None)


def _missing_company_response() -> Response:
    return Response({"errors": {"company_id": "Principal has no company."}}, status=400)


def _payload(request) -> Dict[str, Any]:
    data = request.data or {}
    return data if isinstance(data, dict) else {}


def _expected_version(data: Dict[str, Any]) -> Optional[int]:
    raw = data.get("version_nbr")
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError("version_nbr must be an integer.", errors={"version_nbr": "Must be an integer."})


def _wants_override(request, data: Dict[str, Any]) -> bool:
    if not data.get("override"):
        return False
    _, permissions = resolve_roles_and_permissions(request, request.user)
    return PERM_APPROVAL_OVERRIDE in permissions


def _error_response(exc: EngineError) -> Response:
    if isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, ConflictError):
        status = 409
    elif isinstance(exc, ConfigurationError):
        status = 503
        logger.error("purchasing configuration error code=%s detail=%s", exc.code, exc.message)
    elif isinstance(exc, ValidationError) and exc.code == "approver_role_mismatch":
        status = 403
    else:
        status = 400
    body: Dict[str, Any] = {"detail": exc.message, "code": exc.code}
    errors = getattr(exc, "errors", None)
    if errors:
        body["errors"] = errors
    return Response(body, status=status)


# ── Purchase Orders ─────────────────────────────────────────────────────────


@api_view(["GET", "POST"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def purchase_order_list(request):
    company_id = _company_id(request)
    if company_id is None:
        return _missing_company_response()
    try:
        if request.method == "GET":
            orders = purchase_orders.list_purchase_orders(
                company_id,
                status=request.query_params.get("status"),
                supplier_id=request.query_params.get("supplier_id"),
            )
            return Response({"results": orders, "count": len(orders)})

        data = _payload(request)
        order = purchase_orders.create_purchase_order(
            company_id,
            supplier_id=data.get("supplier_id"),
            store_id=data.get("store_id"),
            items=data.get("items") or [],
            actor_id=_actor_id(request),
            remarks=data.get("remarks"),
        )
        return Response(order, status=201)
    except EngineError as exc:
        return _error_response(exc)


@api_view(["GET"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def purchase_order_get(request, purchase_order_id: int):
    try:
        return Response(purchase_orders.get_purchase_order(purchase_order_id, _company_id(request)))
    except EngineError as exc:
        return _error_response(exc)


@api_view(["POST"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def purchase_order_approve(request, purchase_order_id: int):
    data = _payload(request)
    roles, _ = resolve_roles_and_permissions(request, request.user)
    try:
        order = purchase_orders.approve_purchase_order(
            purchase_order_id,
            actor_id=_actor_id(request),
            actor_roles=roles,
            comment=str(data.get("comment") or ""),
            company_id=_company_id(request),
            expected_version=_expected_version(data),
            override=_wants_override(request, data),
        )
        return Response(order)
    except EngineError as exc:
        return _error_response(exc)


@api_view(["POST"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def purchase_order_reject(request, purchase_order_id: int):
    data = _payload(request)
    try:
        order = purchase_orders.reject_purchase_order(
            purchase_order_id,
            actor_id=_actor_id(request),
            comment=str(data.get("comment") or ""),
            company_id=_company_id(request),
            expected_version=_expected_version(data),
        )
        return Response(order)
    except EngineError as exc:
        return _error_response(exc)


@api_view(["POST"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def purchase_order_resubmit(request, purchase_order_id: int):
    data = _payload(request)
    try:
        order = purchase_orders.resubmit_purchase_order(
            purchase_order_id,
            actor_id=_actor_id(request),
            items=data.get("items"),
            remarks=data.get("remarks"),
            company_id=_company_id(request),
            expected_version=_expected_version(data),
        )
        return Response(order)
    except EngineError as exc:
        return _error_response(exc)


@api_view(["POST"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def purchase_order_issue(request, purchase_order_id: int):
    data = _payload(request)
    notify = data.get("notify_supplier")
    try:
        order = purchase_orders.issue_purchase_order(
            purchase_order_id,
            actor_id=_actor_id(request),
            company_id=_company_id(request),
            expected_version=_expected_version(data),
            notify_supplier=None if notify is None else bool(notify),
        )
        return Response(order)
    except EngineError as exc:
        return _error_response(exc)


@api_view(["POST"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def purchase_order_receive(request, purchase_order_id: int):
    data = _payload(request)
    try:
        order = receiving.receive_purchase_order(
            purchase_order_id,
            receipts=data.get("items") or [],
            actor_id=_actor_id(request),
            company_id=_company_id(request),
            expected_version=_expected_version(data),
        )
        return Response(order)
    except EngineError as exc:
        return _error_response(exc)


@api_view(["POST"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def purchase_order_cancel(request, purchase_order_id: int):
    data = _payload(request)
    try:
        order = purchase_orders.cancel_purchase_order(
            purchase_order_id,
            reason=str(data.get("reason") or ""),
            actor_id=_actor_id(request),
            details=str(data.get("details") or ""),
            company_id=_company_id(request),
            expected_version=_expected_version(data),
        )
        return Response(order)
    except EngineError as exc:
        return _error_response(exc)


@api_view(["POST"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def purchase_order_backorder(request, purchase_order_id: int):
    try:
        order = backorders.create_backorder(
            purchase_order_id,
            actor_id=_actor_id(request),
            company_id=_company_id(request),
        )
        return Response(order, status=201)
    except EngineError as exc:
        return _error_response(exc)


@api_view(["POST"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def purchase_order_deactivate(request, purchase_order_id: int):
    try:
        order = purchase_orders.deactivate_purchase_order(
            purchase_order_id,
            actor_id=_actor_id(request),
            company_id=_company_id(request),
        )
        return Response(order)
    except EngineError as exc:
        return _error_response(exc)


@api_view(["GET"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def purchase_order_returnable(request, purchase_order_id: int):
    try:
        summary = returns.returnable_summary(
            purchase_order_id,
            company_id=_company_id(request),
            exclude_return_id=request.query_params.get("exclude_return_id"),
        )
        return Response({"purchase_order_id": purchase_order_id, "items": summary})
    except EngineError as exc:
        return _error_response(exc)


# ── Purchase Returns ────────────────────────────────────────────────────────


@api_view(["GET", "POST"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def return_list(request):
    company_id = _company_id(request)
    if company_id is None:
        return _missing_company_response()
    try:
        if request.method == "GET":
            results = returns.list_returns(
                company_id, purchase_order_id=request.query_params.get("purchase_order_id")
            )
            return Response({"results": results, "count": len(results)})

        data = _payload(request)
        ret = returns.create_return(
            data.get("purchase_order_id"),
            items=data.get("items") or [],
            actor_id=_actor_id(request),
            remark=data.get("remark"),
            attachment=data.get("attachment"),
            company_id=company_id,
        )
        return Response(ret, status=201)
    except EngineError as exc:
        return _error_response(exc)


@api_view(["GET"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def return_eligible_orders(request):
    company_id = _company_id(request)
    if company_id is None:
        return _missing_company_response()
    orders = returns.list_returnable_orders(
        company_id, supplier_id=request.query_params.get("supplier_id")
    )
    return Response({"results": orders, "count": len(orders)})


@api_view(["GET", "PATCH"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def return_detail(request, return_request_id: int):
    try:
        if request.method == "GET":
            return Response(returns.get_return(return_request_id, _company_id(request)))

        data = _payload(request)
        ret = returns.update_return_details(
            return_request_id,
            actor_id=_actor_id(request),
            remark=data.get("remark"),
            attachment=data.get("attachment"),
            company_id=_company_id(request),
            expected_version=_expected_version(data),
        )
        return Response(ret)
    except EngineError as exc:
        return _error_response(exc)


@api_view(["POST"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def return_resubmit(request, return_request_id: int):
    data = _payload(request)
    try:
        ret = returns.resubmit_return(
            return_request_id,
            items=data.get("items") or [],
            actor_id=_actor_id(request),
            remark=data.get("remark"),
            attachment=data.get("attachment"),
            company_id=_company_id(request),
            expected_version=_expected_version(data),
        )
        return Response(ret)
    except EngineError as exc:
        return _error_response(exc)


@api_view(["POST"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def return_approve(request, return_request_id: int):
    data = _payload(request)
    roles, _ = resolve_roles_and_permissions(request, request.user)
    try:
        ret = returns.approve_return(
            return_request_id,
            actor_id=_actor_id(request),
            actor_roles=roles,
            comment=str(data.get("comment") or ""),
            company_id=_company_id(request),
            expected_version=_expected_version(data),
            override=_wants_override(request, data),
        )
        return Response(ret)
    except EngineError as exc:
        return _error_response(exc)


@api_view(["POST"])
@authentication_classes([GarageAuthentication])
@permission_classes([PurchasingPermission])
def return_reject(request, return_request_id: int):
    data = _payload(request)
    try:
        ret = returns.reject_return(
            return_request_id,
            actor_id=_actor_id(request),
            comment=str(data.get("comment") or ""),
            company_id=_company_id(request),
            expected_version=_expected_version(data),
        )
        return Response(ret)
    except EngineError as exc:
        return _error_response(exc)


purchase_order_list.required_permission = {
    "GET": PERM_PURCHASE_ORDER_VIEW,
    "POST": PERM_PURCHASE_ORDER_CREATE,
}
purchase_order_get.required_permission = PERM_PURCHASE_ORDER_VIEW
purchase_order_approve.required_permission = PERM_PURCHASE_ORDER_APPROVE
purchase_order_reject.required_permission = PERM_PURCHASE_ORDER_APPROVE
purchase_order_resubmit.required_permission = PERM_PURCHASE_ORDER_CREATE
purchase_order_issue.required_permission = PERM_PURCHASE_ORDER_ISSUE
purchase_order_receive.required_permission = PERM_PURCHASE_ORDER_RECEIVE
purchase_order_cancel.required_permission = PERM_PURCHASE_ORDER_CANCEL
purchase_order_backorder.required_permission = PERM_PURCHASE_ORDER_CREATE
purchase_order_deactivate.required_permission = PERM_PURCHASE_ORDER_CANCEL
purchase_order_returnable.required_permission = [PERM_PURCHASE_RETURN_VIEW, PERM_PURCHASE_RETURN_CREATE]
return_list.required_permission = {
    "GET": PERM_PURCHASE_RETURN_VIEW,
    "POST": PERM_PURCHASE_RETURN_CREATE,
}
return_eligible_orders.required_permission = PERM_PURCHASE_RETURN_CREATE
return_detail.required_permission = {
    "GET": PERM_PURCHASE_RETURN_VIEW,
    "PATCH": PERM_PURCHASE_RETURN_CREATE,
}
return_resubmit.required_permission = PERM_PURCHASE_RETURN_CREATE
return_approve.required_permission = PERM_PURCHASE_RETURN_APPROVE
return_reject.required_permission = PERM_PURCHASE_RETURN_APPROVE

for view_func in (
    purchase_order_list,
    purchase_order_get,
    purchase_order_approve,
    purchase_order_reject,
    purchase_order_resubmit,
    purchase_order_issue,
    purchase_order_receive,
    purchase_order_cancel,
    purchase_order_backorder,
    purchase_order_deactivate,
    purchase_order_returnable,
    return_list,
    return_eligible_orders,
    return_detail,
    return_resubmit,
    return_approve,
    return_reject,
):
    if hasattr(view_func, "cls"):
        view_func.cls.required_permission = view_func.required_permission
