"""
Purchase return service layer.

A return request sends previously received goods back to the supplier. The
quantity returned per item can never exceed what the order received minus
what earlier returns (in any status) already claimed. Stock is taken out of
inventory when the request is accepted, and only the difference is applied
when a rejected request is resubmitted with new quantities.
"""
from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from purchasing import events, rules
from purchasing.exceptions import ConflictError, NotFoundError, ValidationError
from purchasing.log_sanitizer import sanitize_for_log
from purchasing.models import (
    InventoryRecord,
    PurchaseOrder,
    PurchaseOrderItem,
    ReturnRequest,
    ReturnRequestItem,
)
from purchasing.services import approval_trail
from purchasing.services.purchase_orders import (
    line_unit_price,
    lock_purchase_order,
    order_machine,
)
from purchasing.services.sequences import allocate_number
from purchasing.services.state_machine import (
    PURCHASE_RETURN,
    ApprovalOutcome,
    ApprovalStateMachine,
)

logger = logging.getLogger("garage.audit")

_CENT = Decimal("0.01")

return_machine = ApprovalStateMachine(PURCHASE_RETURN)


# ── Reconciliation ──────────────────────────────────────────────────────────


def total_received(order: PurchaseOrder, item_id: Any) -> int:
    result = PurchaseOrderItem.objects.filter(purchase_order=order, item_id=item_id).aggregate(
        total=Sum("received_qty")
    )
    return int(result.get("total") or 0)


def already_returned(
    order: PurchaseOrder,
    item_id: Any,
    exclude_return: Optional[ReturnRequest] = None,
) -> int:
    """Quantity of ``item_id`` claimed by every return on ``order``, whatever its status."""
    queryset = ReturnRequestItem.objects.filter(
        return_request__purchase_order=order, item_id=item_id
    )
    if exclude_return is not None:
        queryset = queryset.exclude(return_request=exclude_return)
    result = queryset.aggregate(total=Sum("returned_qty"))
    return int(result.get("total") or 0)


def returnable_qty(
    order: PurchaseOrder,
    item_id: Any,
    exclude_return: Optional[ReturnRequest] = None,
) -> int:
    return total_received(order, item_id) - already_returned(order, item_id, exclude_return)


def validate_return(
    order: PurchaseOrder,
    items: Iterable[Dict[str, Any]],
    editing: Optional[ReturnRequest] = None,
) -> List[Dict[str, Any]]:
    """Validate requested return lines against what is still returnable.

    When ``editing`` is given, that request's own current quantities are not
    counted as already returned, so resubmitting unchanged quantities passes.
    """
    rows = list(items or [])
    if not rows:
        raise ValidationError("At least one item is required.", errors={"items": "At least one item is required."})

    order_lines = {
        str(line.item_id): line
        for line in PurchaseOrderItem.objects.filter(purchase_order=order).select_related("item")
    }
    errors: Dict[str, str] = {}
    lines: List[Dict[str, Any]] = []
    seen: set = set()
    for index, row in enumerate(rows):
        prefix = f"items[{index}]"
        item_key = str(row.get("item_id"))
        order_line = order_lines.get(item_key)
        if order_line is None:
            errors[f"{prefix}.item_id"] = "Item is not on this purchase order."
            continue
        if item_key in seen:
            errors[f"{prefix}.item_id"] = "Item is listed more than once."
            continue
        seen.add(item_key)

        raw_qty = row.get("return_qty", row.get("returned_qty"))
        qty_field = f"{prefix}.return_qty"
        if raw_qty is None or raw_qty == "" or isinstance(raw_qty, bool):
            errors[qty_field] = "Return quantity is required"
            continue
        try:
            qty = Decimal(str(raw_qty).strip())
        except ArithmeticError:
            errors[qty_field] = "Must be a whole number"
            continue
        if not qty.is_finite() or qty != qty.to_integral_value():
            errors[qty_field] = "Must be a whole number"
            continue
        qty = int(qty)
        if qty < 1:
            errors[qty_field] = "Must be at least 1"
            continue

        reason = str(row.get("return_reason") or "").strip()
        if not reason:
            errors[f"{prefix}.return_reason"] = "Return reason is required"
            continue

        returnable = returnable_qty(order, order_line.item_id, exclude_return=editing)
        if qty > returnable:
            errors[qty_field] = f"Cannot exceed returnable qty ({max(returnable, 0)})"
            continue

        unit_price = line_unit_price(order_line)
        lines.append(
            {
                "item": order_line.item,
                "returned_qty": qty,
                "unit_price": unit_price,
                "order_price": (unit_price * qty).quantize(_CENT),
                "return_reason": reason,
            }
        )

    if errors:
        raise ValidationError("Return items are invalid.", errors=errors)
    return lines


def _adjust_inventory(order: PurchaseOrder, item_id: Any, returned_delta: int, actor_id: str) -> None:
    """Take ``returned_delta`` units out of the order's stock of the item (negative puts back)."""
    if returned_delta == 0:
        return
    record = (
        InventoryRecord.objects.select_for_update()
        .filter(purchase_order=order, item_id=item_id)
        .first()
    )
    if record is None:
        raise ConflictError(
            f"No inventory received for item {item_id} on {order.po_number}.",
            code="inventory_missing",
        )
    if record.item_qty < returned_delta:
        raise ConflictError(
            f"Only {record.item_qty} of item {item_id} left in stock.",
            code="insufficient_stock",
        )
    record.item_qty -= returned_delta
    record.update_by_id = actor_id
    record.version_nbr = (record.version_nbr or 0) + 1
    record.save(update_fields=["item_qty", "update_by_id", "version_nbr", "update_dtime"])


def _write_lines(ret: ReturnRequest, lines: List[Dict[str, Any]], actor_id: str) -> None:
    ReturnRequestItem.objects.bulk_create(
        [
            ReturnRequestItem(
                return_request=ret,
                item=line["item"],
                returned_qty=line["returned_qty"],
                unit_price=line["unit_price"],
                order_price=line["order_price"],
                return_reason=line["return_reason"],
                create_by_id=actor_id,
                update_by_id=actor_id,
            )
            for line in lines
        ]
    )
    ret.total_items = sum(line["returned_qty"] for line in lines)
    ret.total_value = sum((line["order_price"] for line in lines), Decimal("0.00"))


# ── Serialization ───────────────────────────────────────────────────────────


def serialize_return(ret: ReturnRequest, include_trail: bool = True) -> Dict[str, Any]:
    status = ret.status
    data: Dict[str, Any] = {
        "return_request_id": ret.return_request_id,
        "return_number": ret.return_number,
        "company_id": ret.company_id,
        "purchase_order_id": ret.purchase_order_id,
        "supplier_id": ret.supplier_id,
        "status": status.sub_category_id if status else None,
        "status_label": status.value if status else None,
        "return_date": ret.return_date.isoformat() if ret.return_date else None,
        "total_items": ret.total_items,
        "total_value": str(ret.total_value),
        "workflow_level": ret.workflow.level if ret.workflow_id else None,
        "next_level_role_id": ret.next_level_role_id,
        "remark": ret.remark,
        "attachment": ret.attachment,
        "version_nbr": ret.version_nbr,
        "items": [
            {
                "return_request_item_id": line.return_request_item_id,
                "item_id": line.item_id,
                "returned_qty": line.returned_qty,
                "unit_price": str(line.unit_price),
                "order_price": str(line.order_price),
                "return_reason": line.return_reason,
            }
            for line in ret.items.order_by("return_request_item_id")
        ],
    }
    if include_trail:
        data["approval_trail"] = [
            approval_trail.serialize_step(step) for step in approval_trail.trail(ret)
        ]
    return data


# ── Helpers ─────────────────────────────────────────────────────────────────


def _lock_return(return_request_id: Any, company_id: Optional[int] = None) -> ReturnRequest:
    queryset = ReturnRequest.objects.select_for_update()
    if company_id is not None:
        queryset = queryset.filter(company_id=company_id)
    try:
        return queryset.get(return_request_id=return_request_id)
    except (ReturnRequest.DoesNotExist, ValueError, TypeError):
        raise NotFoundError("Return request not found.")


def _notify_approval_required(ret: ReturnRequest, outcome: ApprovalOutcome, actor_id: str) -> None:
    if outcome.completed or outcome.next_level is None:
        return
    events.emit(
        events.approval_required,
        sender=ReturnRequest,
        document_type="purchase_return",
        document_id=ret.return_request_id,
        number=ret.return_number,
        company_id=ret.company_id,
        level=outcome.next_level,
        role_id=outcome.next_role_id,
        actor_id=actor_id,
    )


# ── Queries ─────────────────────────────────────────────────────────────────


def list_returnable_orders(company_id: int, supplier_id: Optional[Any] = None) -> List[Dict[str, Any]]:
    """Received or partially received orders that returns may be raised against."""
    queryset = PurchaseOrder.objects.filter(
        company_id=company_id,
        is_active=True,
        status__sub_category_id__in=rules.RETURN_ELIGIBLE_STATUSES,
    ).select_related("status")
    if supplier_id:
        queryset = queryset.filter(supplier_id=supplier_id)
    return [
        {
            "purchase_order_id": order.purchase_order_id,
            "po_number": order.po_number,
            "supplier_id": order.supplier_id,
            "status": order.status.sub_category_id,
        }
        for order in queryset
    ]


def returnable_summary(
    purchase_order_id: Any,
    company_id: Optional[int] = None,
    exclude_return_id: Optional[Any] = None,
) -> List[Dict[str, Any]]:
    queryset = PurchaseOrder.objects.all()
    if company_id is not None:
        queryset = queryset.filter(company_id=company_id)
    try:
        order = queryset.get(purchase_order_id=purchase_order_id)
    except (PurchaseOrder.DoesNotExist, ValueError, TypeError):
        raise NotFoundError("Purchase order not found.")
    exclude = None
    if exclude_return_id is not None:
        exclude = ReturnRequest.objects.filter(
            return_request_id=exclude_return_id, purchase_order=order
        ).first()

    summary = []
    for line in PurchaseOrderItem.objects.filter(purchase_order=order).order_by("purchase_order_item_id"):
        received = total_received(order, line.item_id)
        returned = already_returned(order, line.item_id, exclude)
        summary.append(
            {
                "item_id": line.item_id,
                "order_qty": line.order_qty,
                "received_qty": received,
                "already_returned": returned,
                "returnable_qty": max(received - returned, 0),
                "unit_price": str(line_unit_price(line)),
            }
        )
    return summary


def get_return(return_request_id: Any, company_id: Optional[int] = None) -> Dict[str, Any]:
    queryset = ReturnRequest.objects.select_related("status", "workflow")
    if company_id is not None:
        queryset = queryset.filter(company_id=company_id)
    try:
        ret = queryset.get(return_request_id=return_request_id)
    except (ReturnRequest.DoesNotExist, ValueError, TypeError):
        raise NotFoundError("Return request not found.")
    return serialize_return(ret)


def list_returns(company_id: int, purchase_order_id: Optional[Any] = None) -> List[Dict[str, Any]]:
    queryset = ReturnRequest.objects.select_related("status", "workflow").filter(
        company_id=company_id, is_active=True
    )
    if purchase_order_id:
        queryset = queryset.filter(purchase_order_id=purchase_order_id)
    return [serialize_return(ret, include_trail=False) for ret in queryset]


# ── Core Operations ─────────────────────────────────────────────────────────


@transaction.atomic
def create_return(
    purchase_order_id: Any,
    items: Iterable[Dict[str, Any]],
    actor_id: str,
    remark: Optional[str] = None,
    attachment: Optional[Dict[str, Any]] = None,
    company_id: Optional[int] = None,
    return_date: Optional[date] = None,
) -> Dict[str, Any]:
    """Raise a return against a received order and take the goods out of stock."""
    order = lock_purchase_order(purchase_order_id, company_id)
    order_machine.ensure_allowed(order, "return", order_machine.catalog(order.company_id))
    catalog = return_machine.catalog(order.company_id)

    lines = validate_return(order, items)
    return_date = return_date or timezone.localdate()
    supplier = order.supplier

    ret = ReturnRequest(
        return_number=allocate_number(
            order.company_id, supplier.supplier_code, rules.PREFIX_RETURN, return_date
        ),
        company_id=order.company_id,
        purchase_order=order,
        supplier=supplier,
        status=catalog.status(rules.ORDER_RETURN_CREATED),
        return_date=return_date,
        remark=remark or None,
        attachment=attachment or None,
        create_by_id=actor_id,
        update_by_id=actor_id,
    )
    ret.save()
    _write_lines(ret, lines, actor_id)
    for line in lines:
        _adjust_inventory(order, line["item"].item_id, line["returned_qty"], actor_id)

    outcome = return_machine.open_approval(ret, catalog, actor_id)
    ret.save(
        update_fields=[
            "status",
            "workflow",
            "next_level_role_id",
            "total_items",
            "total_value",
            "update_dtime",
        ]
    )

    events.emit(
        events.return_created,
        sender=ReturnRequest,
        return_request_id=ret.return_request_id,
        return_number=ret.return_number,
        purchase_order_id=order.purchase_order_id,
        actor_id=actor_id,
    )
    _notify_approval_required(ret, outcome, actor_id)

    logger.info(
        "purchase_return.created return_no=%s po_no=%s total_items=%s actor=%s",
        ret.return_number,
        order.po_number,
        ret.total_items,
        actor_id,
    )
    return serialize_return(ret)


@transaction.atomic
def update_return_details(
    return_request_id: Any,
    actor_id: str,
    remark: Optional[str] = None,
    attachment: Optional[Dict[str, Any]] = None,
    company_id: Optional[int] = None,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """Edit the remark or attachment metadata; quantities change only by resubmission."""
    ret = _lock_return(return_request_id, company_id)
    catalog = return_machine.catalog(ret.company_id)
    return_machine.ensure_allowed(ret, "edit", catalog)
    return_machine.check_version(ret, expected_version)

    fields = []
    if remark is not None:
        ret.remark = remark or None
        fields.append("remark")
    if attachment is not None:
        ret.attachment = attachment or None
        fields.append("attachment")
    ret.save(update_fields=return_machine.touch(ret, actor_id, fields))

    logger.info("purchase_return.updated return_no=%s actor=%s", ret.return_number, actor_id)
    return serialize_return(ret)


@transaction.atomic
def resubmit_return(
    return_request_id: Any,
    items: Iterable[Dict[str, Any]],
    actor_id: str,
    remark: Optional[str] = None,
    attachment: Optional[Dict[str, Any]] = None,
    company_id: Optional[int] = None,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """Resubmit a rejected return with corrected lines and re-enter approval."""
    ret = _lock_return(return_request_id, company_id)
    catalog = return_machine.catalog(ret.company_id)
    return_machine.ensure_allowed(ret, "resubmit", catalog)
    return_machine.check_version(ret, expected_version)

    order = lock_purchase_order(ret.purchase_order_id)
    lines = validate_return(order, items, editing=ret)

    previous = {line.item_id: line.returned_qty for line in ret.items.all()}
    requested = {line["item"].item_id: line["returned_qty"] for line in lines}
    ret.items.all().delete()
    _write_lines(ret, lines, actor_id)
    for item_id in sorted(set(previous) | set(requested)):
        delta = requested.get(item_id, 0) - previous.get(item_id, 0)
        _adjust_inventory(order, item_id, delta, actor_id)

    fields = ["status", "workflow", "next_level_role_id", "total_items", "total_value"]
    if remark is not None:
        ret.remark = remark or None
        fields.append("remark")
    if attachment is not None:
        ret.attachment = attachment or None
        fields.append("attachment")

    outcome = return_machine.open_approval(ret, catalog, actor_id)
    ret.save(update_fields=return_machine.touch(ret, actor_id, fields))

    events.emit(
        events.return_resubmitted,
        sender=ReturnRequest,
        return_request_id=ret.return_request_id,
        return_number=ret.return_number,
        purchase_order_id=order.purchase_order_id,
        actor_id=actor_id,
    )
    _notify_approval_required(ret, outcome, actor_id)

    logger.info(
        "purchase_return.resubmitted return_no=%s status=%s actor=%s",
        ret.return_number,
        ret.status.sub_category_id,
        actor_id,
    )
    return serialize_return(ret)


@transaction.atomic
def approve_return(
    return_request_id: Any,
    actor_id: str,
    actor_roles: Iterable[str] = (),
    comment: str = "",
    company_id: Optional[int] = None,
    expected_version: Optional[int] = None,
    override: bool = False,
) -> Dict[str, Any]:
    ret = _lock_return(return_request_id, company_id)
    catalog = return_machine.catalog(ret.company_id)
    return_machine.ensure_allowed(ret, "approve", catalog)
    return_machine.check_version(ret, expected_version)

    outcome = return_machine.approve(
        ret, catalog, actor_id, actor_roles=actor_roles, comment=comment, override=override
    )
    ret.save(
        update_fields=return_machine.touch(ret, actor_id, ["status", "workflow", "next_level_role_id"])
    )

    events.emit(
        events.return_approved,
        sender=ReturnRequest,
        return_request_id=ret.return_request_id,
        return_number=ret.return_number,
        level=outcome.level,
        completed=outcome.completed,
        actor_id=actor_id,
    )
    _notify_approval_required(ret, outcome, actor_id)

    logger.info(
        "purchase_return.approved return_no=%s level=%s completed=%s actor=%s",
        ret.return_number,
        outcome.level,
        outcome.completed,
        actor_id,
    )
    return serialize_return(ret)


@transaction.atomic
def reject_return(
    return_request_id: Any,
    actor_id: str,
    comment: str,
    company_id: Optional[int] = None,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    ret = _lock_return(return_request_id, company_id)
    catalog = return_machine.catalog(ret.company_id)
    return_machine.ensure_allowed(ret, "reject", catalog)
    return_machine.check_version(ret, expected_version)

    outcome = return_machine.reject(ret, catalog, actor_id, comment)
    ret.save(
        update_fields=return_machine.touch(ret, actor_id, ["status", "workflow", "next_level_role_id"])
    )

    events.emit(
        events.return_rejected,
        sender=ReturnRequest,
        return_request_id=ret.return_request_id,
        return_number=ret.return_number,
        level=outcome.level,
        actor_id=actor_id,
    )
    _notify_approval_required(ret, outcome, actor_id)

    logger.info(
        "purchase_return.rejected return_no=%s level=%s actor=%s comment=%s",
        ret.return_number,
        outcome.level,
        actor_id,
        sanitize_for_log(comment),
    )
    return serialize_return(ret)
