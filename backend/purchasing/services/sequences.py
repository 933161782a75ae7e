"""
Document numbering: PREFIX-SUPPLIER-DDMMYY-SEQ.

Numbers come from a SequenceCounter row that is locked for update and bumped
inside the caller's transaction, so allocations for the same company,
supplier, prefix and day are serialized, distinct and gap-free.
"""
from __future__ import annotations

import logging
import re
import time
from datetime import date
from typing import Iterable, Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from purchasing import rules
from purchasing.exceptions import ConflictError, ValidationError
from purchasing.models import PurchaseOrder, ReturnRequest, SequenceCounter

logger = logging.getLogger(__name__)


def format_number(prefix: str, supplier_code: str, on_date: date, seq: int) -> str:
    return f"{prefix}-{supplier_code}-{on_date.strftime('%d%m%y')}-{seq:0{rules.sequence_pad()}d}"


def _existing_numbers(company_id: int, stem: str) -> Iterable[str]:
    if stem.startswith(f"{rules.PREFIX_RETURN}-"):
        return ReturnRequest.objects.filter(
            company_id=company_id, return_number__startswith=stem
        ).values_list("return_number", flat=True)
    return PurchaseOrder.objects.filter(
        company_id=company_id, po_number__startswith=stem
    ).values_list("po_number", flat=True)


def _max_existing_sequence(company_id: int, stem: str) -> int:
    """Highest numeric suffix already used for ``stem``, or 0."""
    pattern = re.compile(rf"^{re.escape(stem)}(\d+)$")
    highest = 0
    for number in _existing_numbers(company_id, stem):
        match = pattern.match(number or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return highest


def allocate_number(
    company_id: int,
    supplier_code: str,
    prefix: str,
    on_date: Optional[date] = None,
) -> str:
    """Reserve and return the next number for the key.

    Must run inside the transaction that persists the document; the reserved
    value is released again if that transaction rolls back.
    """
    code = str(supplier_code or "").strip().upper()
    if not code:
        raise ValidationError(
            "Supplier code is required for numbering.",
            errors={"supplier_code": "Supplier code is required."},
        )
    on_date = on_date or timezone.localdate()
    stem = f"{prefix}-{code}-{on_date.strftime('%d%m%y')}-"

    attempts, backoff = rules.sequence_retry_policy()
    for attempt in range(attempts):
        try:
            with transaction.atomic():
                counter = (
                    SequenceCounter.objects.select_for_update()
                    .filter(
                        company_id=company_id,
                        supplier_code=code,
                        prefix=prefix,
                        sequence_date=on_date,
                    )
                    .first()
                )
                if counter is None:
                    # First allocation for the key continues after any
                    # numbers already present for the same stem.
                    counter = SequenceCounter.objects.create(
                        company_id=company_id,
                        supplier_code=code,
                        prefix=prefix,
                        sequence_date=on_date,
                        last_value=_max_existing_sequence(company_id, stem),
                    )
                counter.last_value += 1
                counter.save(update_fields=["last_value", "update_dtime"])
            break
        except IntegrityError as exc:
            if attempt >= attempts - 1:
                raise ConflictError(
                    "Failed to allocate a unique document number. Please retry.",
                    code="duplicate_sequence",
                ) from exc
            logger.warning(
                "sequence counter race prefix=%s supplier=%s attempt=%s", prefix, code, attempt + 1
            )
            time.sleep(backoff * (attempt + 1))

    return format_number(prefix, code, on_date, counter.last_value)
