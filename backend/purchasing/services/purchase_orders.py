"""
Purchase order service layer.

Handles creation, approval, resubmission, issuance, cancellation and
deactivation of purchase orders. Receiving and backorders live in their own
modules and reuse the helpers here. Every state transition is validated by
the purchase order state machine, runs in one transaction and is
audit-logged.
"""
from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from django.db import transaction
from django.utils import timezone

from purchasing import events, rules
from purchasing.exceptions import ConflictError, NotFoundError, ValidationError
from purchasing.log_sanitizer import sanitize_for_log
from purchasing.models import Item, PurchaseOrder, PurchaseOrderItem, Store, Supplier
from purchasing.services import approval_trail
from purchasing.services.sequences import allocate_number
from purchasing.services.state_machine import (
    PURCHASE_ORDER,
    ApprovalOutcome,
    ApprovalStateMachine,
)
from purchasing.services.status_catalog import StatusCatalog

logger = logging.getLogger("garage.audit")

_CENT = Decimal("0.01")

order_machine = ApprovalStateMachine(PURCHASE_ORDER)


# ── Input parsing ───────────────────────────────────────────────────────────


def parse_quantity(value: Any, field: str, minimum: int = 1) -> int:
    """Parse a whole-number quantity, rejecting booleans and fractions."""
    if value is None or value == "" or isinstance(value, bool):
        raise ValidationError(f"{field} is required.", errors={field: "Quantity is required."})
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number.", errors={field: "Must be a whole number."})
    if not parsed.is_finite() or parsed != parsed.to_integral_value():
        raise ValidationError(f"{field} must be a whole number.", errors={field: "Must be a whole number."})
    quantity = int(parsed)
    if quantity < minimum:
        raise ValidationError(
            f"{field} must be at least {minimum}.", errors={field: f"Must be at least {minimum}."}
        )
    return quantity


def parse_price(value: Any, field: str) -> Decimal:
    if value is None or value == "" or isinstance(value, bool):
        raise ValidationError(f"{field} is required.", errors={field: "Unit price is required."})
    try:
        price = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number.", errors={field: "Must be a number."})
    if not price.is_finite() or price < 0:
        raise ValidationError(f"{field} cannot be negative.", errors={field: "Cannot be negative."})
    return price.quantize(_CENT)


def line_unit_price(line: PurchaseOrderItem) -> Decimal:
    """Unit price frozen on an order line at order time."""
    if line.order_qty:
        return (Decimal(line.order_price) / Decimal(line.order_qty)).quantize(_CENT)
    return Decimal(line.unit_price).quantize(_CENT)


def _validate_lines(company_id: int, items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    rows = list(items or [])
    if not rows:
        raise ValidationError("At least one item is required.", errors={"items": "At least one item is required."})

    errors: Dict[str, str] = {}
    lines: List[Dict[str, Any]] = []
    seen: set = set()
    for index, row in enumerate(rows):
        prefix = f"items[{index}]"
        item_id = row.get("item_id")
        if item_id in (None, ""):
            errors[f"{prefix}.item_id"] = "Item is required."
            continue
        if str(item_id) in seen:
            errors[f"{prefix}.item_id"] = "Item is listed more than once."
            continue
        seen.add(str(item_id))
        try:
            qty = parse_quantity(row.get("order_qty"), f"{prefix}.order_qty")
            price = parse_price(row.get("unit_price"), f"{prefix}.unit_price")
        except ValidationError as exc:
            errors.update(exc.errors)
            continue
        lines.append({"item_id": item_id, "order_qty": qty, "unit_price": price})

    items_by_id = {
        str(item.item_id): item
        for item in Item.objects.filter(
            company_id=company_id, item_id__in=[line["item_id"] for line in lines]
        )
    }
    for index, line in enumerate(lines):
        item = items_by_id.get(str(line["item_id"]))
        if item is None:
            errors[f"items[{index}].item_id"] = f"Item {line['item_id']} not found."
            continue
        line["item"] = item
        line["order_price"] = (line["unit_price"] * line["order_qty"]).quantize(_CENT)

    if errors:
        raise ValidationError("Purchase order items are invalid.", errors=errors)
    return lines


def _get_supplier(company_id: int, supplier_id: Any) -> Supplier:
    try:
        supplier = Supplier.objects.get(supplier_id=supplier_id, company_id=company_id)
    except (Supplier.DoesNotExist, ValueError, TypeError):
        raise ValidationError("Supplier not found.", errors={"supplier_id": "Supplier not found."})
    if supplier.status_code != "A":
        raise ValidationError("Supplier is inactive.", errors={"supplier_id": "Supplier is inactive."})
    return supplier


def _get_store(company_id: int, store_id: Any) -> Store:
    try:
        return Store.objects.get(store_id=store_id, company_id=company_id)
    except (Store.DoesNotExist, ValueError, TypeError):
        raise ValidationError("Store not found.", errors={"store_id": "Store not found."})


# ── Serialization ───────────────────────────────────────────────────────────


def _serialize_line(line: PurchaseOrderItem) -> Dict[str, Any]:
    return {
        "purchase_order_item_id": line.purchase_order_item_id,
        "item_id": line.item_id,
        "order_qty": line.order_qty,
        "unit_price": str(line.unit_price),
        "order_price": str(line.order_price),
        "received_qty": line.received_qty,
    }


def serialize_purchase_order(order: PurchaseOrder, include_trail: bool = True) -> Dict[str, Any]:
    status = order.status
    data: Dict[str, Any] = {
        "purchase_order_id": order.purchase_order_id,
        "po_number": order.po_number,
        "company_id": order.company_id,
        "order_date": order.order_date.isoformat() if order.order_date else None,
        "supplier_id": order.supplier_id,
        "store_id": order.store_id,
        "status": status.sub_category_id if status else None,
        "status_label": status.value if status else None,
        "total_items": order.total_items,
        "total_value": str(order.total_value),
        "workflow_level": order.workflow.level if order.workflow_id else None,
        "next_level_role_id": order.next_level_role_id,
        "issued_by": order.issued_by,
        "issued_on": order.issued_on.isoformat() if order.issued_on else None,
        "received_by": order.received_by,
        "received_on": order.received_on.isoformat() if order.received_on else None,
        "cancelled_by": order.cancelled_by,
        "cancelled_on": order.cancelled_on.isoformat() if order.cancelled_on else None,
        "cancellation_reason": order.cancellation_reason,
        "backorder_reference_id": order.backorder_reference_id,
        "remarks": order.remarks,
        "is_active": order.is_active,
        "version_nbr": order.version_nbr,
        "items": [_serialize_line(line) for line in order.items.order_by("purchase_order_item_id")],
    }
    if include_trail:
        data["approval_trail"] = [
            approval_trail.serialize_step(step) for step in approval_trail.trail(order)
        ]
    return data


# ── Helpers ─────────────────────────────────────────────────────────────────


def lock_purchase_order(purchase_order_id: Any, company_id: Optional[int] = None) -> PurchaseOrder:
    """Load an order holding its row lock until the transaction ends."""
    queryset = PurchaseOrder.objects.select_for_update()
    if company_id is not None:
        queryset = queryset.filter(company_id=company_id)
    try:
        return queryset.get(purchase_order_id=purchase_order_id)
    except (PurchaseOrder.DoesNotExist, ValueError, TypeError):
        raise NotFoundError("Purchase order not found.")


def notify_approval_required(order: PurchaseOrder, outcome: ApprovalOutcome, actor_id: str) -> None:
    if outcome.completed or outcome.next_level is None:
        return
    events.emit(
        events.approval_required,
        sender=PurchaseOrder,
        document_type="purchase_order",
        document_id=order.purchase_order_id,
        number=order.po_number,
        company_id=order.company_id,
        level=outcome.next_level,
        role_id=outcome.next_role_id,
        actor_id=actor_id,
    )


def create_order_record(
    *,
    company_id: int,
    supplier: Supplier,
    store: Store,
    lines: List[Dict[str, Any]],
    actor_id: str,
    catalog: StatusCatalog,
    prefix: str = rules.PREFIX_PURCHASE_ORDER,
    order_date: Optional[date] = None,
    remarks: Optional[str] = None,
    backorder_reference: Optional[PurchaseOrder] = None,
) -> tuple[PurchaseOrder, ApprovalOutcome]:
    """Number, persist and enter the workflow. Caller holds the transaction."""
    order_date = order_date or timezone.localdate()
    po_number = allocate_number(company_id, supplier.supplier_code, prefix, order_date)

    order = PurchaseOrder.objects.create(
        po_number=po_number,
        company_id=company_id,
        order_date=order_date,
        supplier=supplier,
        store=store,
        status=catalog.status(rules.ORDER_CREATED),
        total_items=sum(line["order_qty"] for line in lines),
        total_value=sum((line["order_price"] for line in lines), Decimal("0.00")),
        remarks=remarks or None,
        backorder_reference=backorder_reference,
        create_by_id=actor_id,
        update_by_id=actor_id,
    )
    PurchaseOrderItem.objects.bulk_create(
        [
            PurchaseOrderItem(
                purchase_order=order,
                item=line["item"],
                order_qty=line["order_qty"],
                unit_price=line["unit_price"],
                order_price=line["order_price"],
                create_by_id=actor_id,
                update_by_id=actor_id,
            )
            for line in lines
        ]
    )

    outcome = order_machine.open_approval(order, catalog, actor_id)
    order.save(update_fields=["status", "workflow", "next_level_role_id", "update_dtime"])

    events.emit(
        events.order_created,
        sender=PurchaseOrder,
        purchase_order_id=order.purchase_order_id,
        po_number=order.po_number,
        company_id=company_id,
        actor_id=actor_id,
    )
    notify_approval_required(order, outcome, actor_id)
    return order, outcome


# ── Core Operations ─────────────────────────────────────────────────────────


@transaction.atomic
def create_purchase_order(
    company_id: int,
    supplier_id: Any,
    store_id: Any,
    items: Iterable[Dict[str, Any]],
    actor_id: str,
    order_date: Optional[date] = None,
    remarks: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a purchase order and route it into approval (or straight to completed)."""
    catalog = order_machine.catalog(company_id)
    supplier = _get_supplier(company_id, supplier_id)
    store = _get_store(company_id, store_id)
    lines = _validate_lines(company_id, items)

    order, _ = create_order_record(
        company_id=company_id,
        supplier=supplier,
        store=store,
        lines=lines,
        actor_id=actor_id,
        catalog=catalog,
        order_date=order_date,
        remarks=remarks,
    )

    logger.info(
        "purchase_order.created po_no=%s status=%s actor=%s",
        order.po_number,
        order.status.sub_category_id,
        actor_id,
    )
    return serialize_purchase_order(order)


def get_purchase_order(purchase_order_id: Any, company_id: Optional[int] = None) -> Dict[str, Any]:
    queryset = PurchaseOrder.objects.select_related("status", "workflow")
    if company_id is not None:
        queryset = queryset.filter(company_id=company_id)
    try:
        order = queryset.get(purchase_order_id=purchase_order_id)
    except (PurchaseOrder.DoesNotExist, ValueError, TypeError):
        raise NotFoundError("Purchase order not found.")
    return serialize_purchase_order(order)


def list_purchase_orders(
    company_id: int,
    status: Optional[str] = None,
    supplier_id: Optional[Any] = None,
    include_inactive: bool = False,
) -> List[Dict[str, Any]]:
    queryset = PurchaseOrder.objects.select_related("status", "workflow").filter(company_id=company_id)
    if not include_inactive:
        queryset = queryset.filter(is_active=True)
    if status:
        queryset = queryset.filter(status__sub_category_id=str(status).strip().upper())
    if supplier_id:
        queryset = queryset.filter(supplier_id=supplier_id)
    return [serialize_purchase_order(order, include_trail=False) for order in queryset]


@transaction.atomic
def approve_purchase_order(
    purchase_order_id: Any,
    actor_id: str,
    actor_roles: Iterable[str] = (),
    comment: str = "",
    company_id: Optional[int] = None,
    expected_version: Optional[int] = None,
    override: bool = False,
) -> Dict[str, Any]:
    """Approve the pending level: APPROVAL_PENDING → next level or APPROVER_COMPLETED."""
    order = lock_purchase_order(purchase_order_id, company_id)
    catalog = order_machine.catalog(order.company_id)
    order_machine.ensure_allowed(order, "approve", catalog)
    order_machine.check_version(order, expected_version)

    outcome = order_machine.approve(
        order, catalog, actor_id, actor_roles=actor_roles, comment=comment, override=override
    )
    order.save(
        update_fields=order_machine.touch(order, actor_id, ["status", "workflow", "next_level_role_id"])
    )

    events.emit(
        events.order_approved,
        sender=PurchaseOrder,
        purchase_order_id=order.purchase_order_id,
        po_number=order.po_number,
        level=outcome.level,
        completed=outcome.completed,
        actor_id=actor_id,
    )
    notify_approval_required(order, outcome, actor_id)

    logger.info(
        "purchase_order.approved po_no=%s level=%s completed=%s override=%s actor=%s",
        order.po_number,
        outcome.level,
        outcome.completed,
        override,
        actor_id,
    )
    return serialize_purchase_order(order)


@transaction.atomic
def reject_purchase_order(
    purchase_order_id: Any,
    actor_id: str,
    comment: str,
    company_id: Optional[int] = None,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """Reject the pending level: back to ORDER_CREATED at level 1, else one level down."""
    order = lock_purchase_order(purchase_order_id, company_id)
    catalog = order_machine.catalog(order.company_id)
    order_machine.ensure_allowed(order, "reject", catalog)
    order_machine.check_version(order, expected_version)

    outcome = order_machine.reject(order, catalog, actor_id, comment)
    order.save(
        update_fields=order_machine.touch(order, actor_id, ["status", "workflow", "next_level_role_id"])
    )

    events.emit(
        events.order_rejected,
        sender=PurchaseOrder,
        purchase_order_id=order.purchase_order_id,
        po_number=order.po_number,
        level=outcome.level,
        returned_to_level=outcome.next_level,
        actor_id=actor_id,
    )
    notify_approval_required(order, outcome, actor_id)

    logger.info(
        "purchase_order.rejected po_no=%s level=%s actor=%s comment=%s",
        order.po_number,
        outcome.level,
        actor_id,
        sanitize_for_log(comment),
    )
    return serialize_purchase_order(order)


@transaction.atomic
def resubmit_purchase_order(
    purchase_order_id: Any,
    actor_id: str,
    items: Optional[Iterable[Dict[str, Any]]] = None,
    remarks: Optional[str] = None,
    company_id: Optional[int] = None,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """Resubmit a rejected order, optionally replacing its lines."""
    order = lock_purchase_order(purchase_order_id, company_id)
    catalog = order_machine.catalog(order.company_id)
    order_machine.ensure_allowed(order, "resubmit", catalog)
    order_machine.check_version(order, expected_version)

    fields = ["status", "workflow", "next_level_role_id"]
    if items is not None:
        lines = _validate_lines(order.company_id, items)
        order.items.all().delete()
        PurchaseOrderItem.objects.bulk_create(
            [
                PurchaseOrderItem(
                    purchase_order=order,
                    item=line["item"],
                    order_qty=line["order_qty"],
                    unit_price=line["unit_price"],
                    order_price=line["order_price"],
                    create_by_id=actor_id,
                    update_by_id=actor_id,
                )
                for line in lines
            ]
        )
        order.total_items = sum(line["order_qty"] for line in lines)
        order.total_value = sum((line["order_price"] for line in lines), Decimal("0.00"))
        fields += ["total_items", "total_value"]
    if remarks is not None:
        order.remarks = remarks or None
        fields.append("remarks")

    outcome = order_machine.open_approval(order, catalog, actor_id)
    order.save(update_fields=order_machine.touch(order, actor_id, fields))
    notify_approval_required(order, outcome, actor_id)

    logger.info(
        "purchase_order.resubmitted po_no=%s status=%s actor=%s",
        order.po_number,
        order.status.sub_category_id,
        actor_id,
    )
    return serialize_purchase_order(order)


@transaction.atomic
def issue_purchase_order(
    purchase_order_id: Any,
    actor_id: str,
    company_id: Optional[int] = None,
    expected_version: Optional[int] = None,
    notify_supplier: Optional[bool] = None,
) -> Dict[str, Any]:
    """Issue an approved order to the supplier: APPROVER_COMPLETED → ORDER_ISSUED."""
    order = lock_purchase_order(purchase_order_id, company_id)
    catalog = order_machine.catalog(order.company_id)
    order_machine.ensure_allowed(order, "issue", catalog)
    order_machine.check_version(order, expected_version)

    if order.issued_by or order.issued_on:
        raise ConflictError("Purchase order has already been issued.", code="already_issued")
    if approval_trail.has_outstanding_step(order):
        raise ConflictError(
            "Purchase order still has an open approval step.", code="approval_outstanding"
        )

    order.status = catalog.status(rules.ORDER_ISSUED)
    order.issued_by = actor_id
    order.issued_on = timezone.now()
    order.save(update_fields=order_machine.touch(order, actor_id, ["status", "issued_by", "issued_on"]))

    if notify_supplier is None:
        notify_supplier = rules.notify_supplier_on_issue()
    events.emit(
        events.order_issued,
        sender=PurchaseOrder,
        purchase_order_id=order.purchase_order_id,
        po_number=order.po_number,
        supplier_id=order.supplier_id,
        supplier_email=order.supplier.email_text,
        notify_supplier=bool(notify_supplier),
        actor_id=actor_id,
    )

    logger.info(
        "purchase_order.issued po_no=%s notify_supplier=%s actor=%s",
        order.po_number,
        bool(notify_supplier),
        actor_id,
    )
    return serialize_purchase_order(order)


@transaction.atomic
def cancel_purchase_order(
    purchase_order_id: Any,
    reason: str,
    actor_id: str,
    details: str = "",
    company_id: Optional[int] = None,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """Cancel an order that has not been issued. Cancelling twice is a no-op."""
    order = lock_purchase_order(purchase_order_id, company_id)
    catalog = order_machine.catalog(order.company_id)
    if catalog.symbol_of(order.status) == rules.ORDER_CANCELLED:
        return serialize_purchase_order(order)
    order_machine.ensure_allowed(order, "cancel", catalog)
    order_machine.check_version(order, expected_version)

    reason = str(reason or "").strip()
    details = str(details or "").strip()
    if not reason:
        raise ValidationError("Cancellation reason is required.", errors={"reason": "Reason is required."})
    allowed = {value.strip().upper(): value for value in rules.cancellation_reasons()}
    if reason.upper() not in allowed and not rules.is_other_reason(reason):
        raise ValidationError(
            "Unknown cancellation reason.",
            errors={"reason": "Must be one of: " + ", ".join(rules.cancellation_reasons())},
        )
    if rules.is_other_reason(reason):
        if not details:
            raise ValidationError(
                "Details are required when the reason is Others.",
                errors={"details": "Details are required."},
            )
        stored_reason = details
    else:
        stored_reason = allowed[reason.upper()]

    order.status = catalog.status(rules.ORDER_CANCELLED)
    order.workflow = None
    order.next_level_role_id = None
    order.cancelled_by = actor_id
    order.cancelled_on = timezone.now()
    order.cancellation_reason = stored_reason
    order.save(
        update_fields=order_machine.touch(
            order,
            actor_id,
            [
                "status",
                "workflow",
                "next_level_role_id",
                "cancelled_by",
                "cancelled_on",
                "cancellation_reason",
            ],
        )
    )

    events.emit(
        events.order_cancelled,
        sender=PurchaseOrder,
        purchase_order_id=order.purchase_order_id,
        po_number=order.po_number,
        reason=stored_reason,
        actor_id=actor_id,
    )

    logger.info(
        "purchase_order.cancelled po_no=%s actor=%s reason=%s",
        order.po_number,
        actor_id,
        sanitize_for_log(stored_reason),
    )
    return serialize_purchase_order(order)


@transaction.atomic
def deactivate_purchase_order(
    purchase_order_id: Any,
    actor_id: str,
    company_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Soft-delete an order that never reached issuance."""
    order = lock_purchase_order(purchase_order_id, company_id)
    catalog = order_machine.catalog(order.company_id)
    order_machine.ensure_allowed(order, "deactivate", catalog)

    order.is_active = False
    order.save(update_fields=order_machine.touch(order, actor_id, ["is_active"]))

    logger.info("purchase_order.deactivated po_no=%s actor=%s", order.po_number, actor_id)
    return serialize_purchase_order(order)
