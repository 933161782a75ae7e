"""
Approval trail accessors.

A trail is the ordered list of ApprovalStep rows of one document, reached
through its ``approval_steps`` relation. Steps are only ever appended.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from django.db.models import Max

from purchasing import rules


def trail(document) -> List[Any]:
    return list(document.approval_steps.order_by("sequence_no"))


def current_step(document):
    return document.approval_steps.order_by("-sequence_no").first()


def next_sequence_no(document) -> int:
    result = document.approval_steps.aggregate(max_seq=Max("sequence_no"))
    max_seq = result.get("max_seq")
    return 0 if max_seq is None else int(max_seq) + 1


def append_step(
    document,
    *,
    status: str,
    trail_marker: str,
    role_id: Optional[str],
    actor_id: Optional[str] = None,
    comment: Optional[str] = None,
    is_finalized: bool = False,
    routed_to: Optional[str] = None,
):
    return document.approval_steps.create(
        status=status,
        trail=trail_marker,
        role_id=role_id,
        sequence_no=next_sequence_no(document),
        is_finalized=is_finalized,
        acted_by=actor_id,
        routed_to=routed_to,
        comment=comment or None,
    )


def is_finalized(document) -> bool:
    step = current_step(document)
    return bool(step and step.is_finalized)


def has_outstanding_step(document) -> bool:
    """True when the trail exists and its latest step is not the finalized approval."""
    step = current_step(document)
    return step is not None and not step.is_finalized


def latest_approver(document, level: int) -> Optional[str]:
    """Who last approved ``level``; rejections are routed back to them."""
    step = (
        document.approval_steps.filter(
            trail=rules.TRAIL_APPROVED,
            status=rules.STEP_APPROVED_LABEL.format(level=level),
        )
        .order_by("-sequence_no")
        .first()
    )
    return step.acted_by if step else None


def serialize_step(step) -> Dict[str, Any]:
    return {
        "sequence_no": step.sequence_no,
        "status": step.status,
        "trail": step.trail,
        "role_id": step.role_id,
        "is_finalized": step.is_finalized,
        "acted_by": step.acted_by,
        "routed_to": step.routed_to,
        "comment": step.comment,
        "created_at": step.create_dtime.isoformat() if step.create_dtime else None,
    }
