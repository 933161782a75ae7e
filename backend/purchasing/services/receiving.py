"""
Receiving reconciliation: applies received quantities to an issued order and
turns them into inventory.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from django.db import transaction
from django.utils import timezone

from purchasing import events, rules
from purchasing.exceptions import ValidationError
from purchasing.models import InventoryRecord, PurchaseOrder, PurchaseOrderItem
from purchasing.services.purchase_orders import (
    line_unit_price,
    lock_purchase_order,
    order_machine,
    parse_quantity,
    serialize_purchase_order,
)

logger = logging.getLogger("garage.audit")


def _normalize_receipts(lines: List[PurchaseOrderItem], receipts: Any) -> Dict[str, Any]:
    """Key received quantities by line id.

    Accepts {line_id: qty} or a list of {"purchase_order_item_id" | "item_id", "received_qty"}.
    """
    if isinstance(receipts, Mapping):
        return {str(key): value for key, value in receipts.items()}
    line_by_item = {str(line.item_id): str(line.purchase_order_item_id) for line in lines}
    normalized: Dict[str, Any] = {}
    for row in receipts or []:
        key = row.get("purchase_order_item_id")
        if key is None and row.get("item_id") is not None:
            key = line_by_item.get(str(row.get("item_id")), f"item:{row.get('item_id')}")
        normalized[str(key)] = row.get("received_qty")
    return normalized


def validate_receipts(lines: List[PurchaseOrderItem], receipts: Mapping[str, Any]) -> Dict[int, int]:
    """Check every line has 0 <= received <= ordered. Returns qty by line id."""
    if not receipts:
        raise ValidationError(
            "No received quantities provided.", errors={"items": "Enter received quantities."}
        )

    errors: Dict[str, str] = {}
    received: Dict[int, int] = {}
    for line in lines:
        key = str(line.purchase_order_item_id)
        field = f"items[{key}].received_qty"
        if key not in receipts:
            errors[field] = "Received quantity is required."
            continue
        try:
            qty = parse_quantity(receipts[key], field, minimum=0)
        except ValidationError as exc:
            errors.update(exc.errors)
            continue
        if qty > line.order_qty:
            errors[field] = f"Cannot exceed ordered quantity ({line.order_qty})."
            continue
        received[line.purchase_order_item_id] = qty

    known = {str(line.purchase_order_item_id) for line in lines}
    for key in receipts:
        if key not in known:
            errors[f"items[{key}]"] = "Item is not on this purchase order."

    if errors:
        raise ValidationError("Received quantities are invalid.", errors=errors)
    return received


def reconcile_receipt(
    order: PurchaseOrder,
    receipts: Any,
    actor_id: str,
) -> str:
    """Apply a receipt to a locked order. Returns the resulting status symbol."""
    lines = list(
        PurchaseOrderItem.objects.select_for_update()
        .filter(purchase_order=order)
        .select_related("item")
        .order_by("purchase_order_item_id")
    )
    received = validate_receipts(lines, _normalize_receipts(lines, receipts))
    now = timezone.now()

    for line in lines:
        qty = received[line.purchase_order_item_id]
        line.received_qty = qty
        line.update_by_id = actor_id
        line.save(update_fields=["received_qty", "update_by_id", "update_dtime"])
        if qty > 0:
            InventoryRecord.objects.create(
                company_id=order.company_id,
                item=line.item,
                store_id=order.store_id,
                purchase_order=order,
                item_qty=qty,
                unit_price=line_unit_price(line),
                selling_price=line.item.selling_price,
                stock_date=now,
                create_by_id=actor_id,
                update_by_id=actor_id,
            )

    fully_received = all(received[line.purchase_order_item_id] == line.order_qty for line in lines)
    return rules.ORDER_RECEIVED if fully_received else rules.ORDER_PARTIALLY_RECEIVED


@transaction.atomic
def receive_purchase_order(
    purchase_order_id: Any,
    receipts: Any,
    actor_id: str,
    company_id: Optional[int] = None,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """Record the goods received for an issued order and stock them."""
    order = lock_purchase_order(purchase_order_id, company_id)
    catalog = order_machine.catalog(order.company_id)
    order_machine.ensure_allowed(order, "receive", catalog)
    order_machine.check_version(order, expected_version)

    symbol = reconcile_receipt(order, receipts, actor_id)

    order.status = catalog.status(symbol)
    order.received_by = actor_id
    order.received_on = timezone.now()
    order.save(
        update_fields=order_machine.touch(order, actor_id, ["status", "received_by", "received_on"])
    )

    events.emit(
        events.order_received,
        sender=PurchaseOrder,
        purchase_order_id=order.purchase_order_id,
        po_number=order.po_number,
        status=symbol,
        actor_id=actor_id,
    )

    logger.info(
        "purchase_order.received po_no=%s status=%s actor=%s",
        order.po_number,
        symbol,
        actor_id,
    )
    return serialize_purchase_order(order)
