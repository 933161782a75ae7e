from typing import Dict, List, Tuple

from django.conf import settings

# Workflow process names as stored in WorkflowConfig.process_name.
PROCESS_PURCHASE_ORDER = "Purchase Order"
PROCESS_PURCHASE_RETURN = "Purchase Return Request"

# Status catalog categories.
CATEGORY_PURCHASE_ORDER = "PURCHASE_ORDER"
CATEGORY_PURCHASE_RETURN = "PURCHASE_RETURN"

# Status catalog sub-category symbols.
ORDER_CREATED = "ORDER_CREATED"
APPROVAL_PENDING = "APPROVAL_PENDING"
APPROVER_COMPLETED = "APPROVER_COMPLETED"
ORDER_ISSUED = "ORDER_ISSUED"
ORDER_PARTIALLY_RECEIVED = "ORDER_PARTIALLY_RECEIVED"
ORDER_RECEIVED = "ORDER_RECEIVED"
ORDER_CANCELLED = "ORDER_CANCELLED"
ORDER_RETURN_CREATED = "ORDER_RETURN_CREATED"

REQUIRED_STATUSES: Dict[str, Tuple[str, ...]] = {
    CATEGORY_PURCHASE_ORDER: (
        ORDER_CREATED,
        APPROVAL_PENDING,
        APPROVER_COMPLETED,
        ORDER_ISSUED,
        ORDER_PARTIALLY_RECEIVED,
        ORDER_RECEIVED,
        ORDER_CANCELLED,
    ),
    CATEGORY_PURCHASE_RETURN: (
        ORDER_RETURN_CREATED,
        APPROVAL_PENDING,
        APPROVER_COMPLETED,
    ),
}

# Number prefixes handed to the sequence allocator.
PREFIX_PURCHASE_ORDER = "PO"
PREFIX_BACKORDER = "BO"
PREFIX_RETURN = "RO"

# Approval trail markers.
TRAIL_PENDING = "Pending"
TRAIL_APPROVED = "Approved"
TRAIL_REJECTED = "Rejected"

STEP_PENDING_LABEL = "Level {level} Approval Pending"
STEP_APPROVED_LABEL = "Level {level} Approved"
STEP_REJECTED_LABEL = "Level {level} Approval Rejected"
STEP_CREATED_REJECTED_LABEL = "Created - Rejected"
STEP_NOT_REQUIRED_LABEL = "Approval Not Required"

# Placeholder in status catalog values that is replaced by the workflow level.
LEVEL_PLACEHOLDER = "{@}"

RETURN_ELIGIBLE_STATUSES = (ORDER_RECEIVED, ORDER_PARTIALLY_RECEIVED)
DEACTIVATABLE_STATUSES = (ORDER_CREATED, APPROVAL_PENDING, APPROVER_COMPLETED, ORDER_CANCELLED)

OTHER_REASONS = {"OTHER", "OTHERS"}


def sequence_pad() -> int:
    return int(getattr(settings, "PROCUREMENT_SEQUENCE_PAD", 3) or 3)


def sequence_retry_policy() -> Tuple[int, float]:
    attempts = int(getattr(settings, "PROCUREMENT_SEQUENCE_RETRY_ATTEMPTS", 5) or 1)
    backoff = float(getattr(settings, "PROCUREMENT_SEQUENCE_RETRY_BACKOFF_SECONDS", 0.02) or 0)
    return max(attempts, 1), max(backoff, 0.0)


def cancellation_reasons() -> List[str]:
    return list(getattr(settings, "PROCUREMENT_CANCELLATION_REASONS", []))


def is_other_reason(reason: str) -> bool:
    return str(reason or "").strip().upper() in OTHER_REASONS


def notify_supplier_on_issue() -> bool:
    return bool(getattr(settings, "PROCUREMENT_NOTIFY_SUPPLIER_ON_ISSUE", True))
