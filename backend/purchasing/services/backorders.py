"""Backorders: a new order for the undelivered remainder of a partially received one."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from django.db import IntegrityError, transaction

from purchasing import events, rules
from purchasing.exceptions import ConflictError
from purchasing.models import PurchaseOrder, PurchaseOrderItem
from purchasing.services.purchase_orders import (
    create_order_record,
    line_unit_price,
    lock_purchase_order,
    order_machine,
    serialize_purchase_order,
)

logger = logging.getLogger("garage.audit")


def outstanding_lines(order: PurchaseOrder) -> List[Dict[str, Any]]:
    """Lines still owed by the supplier, priced at the source order's unit price."""
    lines = []
    for line in (
        PurchaseOrderItem.objects.filter(purchase_order=order)
        .select_related("item")
        .order_by("purchase_order_item_id")
    ):
        received = line.received_qty or 0
        if received >= line.order_qty:
            continue
        qty = line.order_qty - received
        unit_price = line_unit_price(line)
        lines.append(
            {
                "item": line.item,
                "order_qty": qty,
                "unit_price": unit_price,
                "order_price": (unit_price * qty).quantize(Decimal("0.01")),
            }
        )
    return lines


@transaction.atomic
def create_backorder(
    purchase_order_id: Any,
    actor_id: str,
    company_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Spawn the single backorder allowed for a partially received order."""
    source = lock_purchase_order(purchase_order_id, company_id)
    catalog = order_machine.catalog(source.company_id)
    order_machine.ensure_allowed(source, "backorder", catalog)

    # The source row lock serializes concurrent spawns; the one-to-one
    # constraint backs this check up.
    if PurchaseOrder.objects.filter(backorder_reference=source).exists():
        raise ConflictError(
            f"A backorder already exists for {source.po_number}.", code="backorder_exists"
        )

    lines = outstanding_lines(source)
    if not lines:
        raise ConflictError(
            f"{source.po_number} has no outstanding quantities.", code="nothing_outstanding"
        )

    try:
        with transaction.atomic():
            backorder, _ = create_order_record(
                company_id=source.company_id,
                supplier=source.supplier,
                store=source.store,
                lines=lines,
                actor_id=actor_id,
                catalog=catalog,
                prefix=rules.PREFIX_BACKORDER,
                remarks=f"Backorder of {source.po_number}",
                backorder_reference=source,
            )
    except IntegrityError as exc:
        if not PurchaseOrder.objects.filter(backorder_reference=source).exists():
            raise
        raise ConflictError(
            f"A backorder already exists for {source.po_number}.", code="backorder_exists"
        ) from exc

    events.emit(
        events.backorder_created,
        sender=PurchaseOrder,
        purchase_order_id=backorder.purchase_order_id,
        po_number=backorder.po_number,
        source_purchase_order_id=source.purchase_order_id,
        actor_id=actor_id,
    )

    logger.info(
        "purchase_order.backorder_created po_no=%s source=%s actor=%s",
        backorder.po_number,
        source.po_number,
        actor_id,
    )
    return serialize_purchase_order(backorder)
