"""
Generic lifecycle for approvable documents (purchase orders and returns).

A Process names the workflow, the status category and the transition table
of one document type. ApprovalStateMachine guards transitions against that
table and drives the multi-level approval through the workflow resolver and
the approval trail. Callers own locking, persistence of the header fields
returned here, and event emission.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from purchasing import rules
from purchasing.exceptions import ConfigurationError, ConflictError, ValidationError
from purchasing.services import approval_trail
from purchasing.services.status_catalog import StatusCatalog
from purchasing.services.workflow import WorkflowResolver, default_resolver


@dataclass(frozen=True)
class Process:
    name: str
    category_id: str
    created_status: str
    transitions: Dict[str, FrozenSet[str]]


PURCHASE_ORDER = Process(
    name=rules.PROCESS_PURCHASE_ORDER,
    category_id=rules.CATEGORY_PURCHASE_ORDER,
    created_status=rules.ORDER_CREATED,
    transitions={
        rules.ORDER_CREATED: frozenset({"resubmit", "deactivate"}),
        rules.APPROVAL_PENDING: frozenset({"approve", "reject", "cancel", "deactivate"}),
        rules.APPROVER_COMPLETED: frozenset({"issue", "cancel", "deactivate"}),
        rules.ORDER_ISSUED: frozenset({"receive"}),
        rules.ORDER_PARTIALLY_RECEIVED: frozenset({"backorder", "return"}),
        rules.ORDER_RECEIVED: frozenset({"return"}),
        rules.ORDER_CANCELLED: frozenset({"deactivate"}),
    },
)

PURCHASE_RETURN = Process(
    name=rules.PROCESS_PURCHASE_RETURN,
    category_id=rules.CATEGORY_PURCHASE_RETURN,
    created_status=rules.ORDER_RETURN_CREATED,
    transitions={
        rules.ORDER_RETURN_CREATED: frozenset({"resubmit", "edit"}),
        rules.APPROVAL_PENDING: frozenset({"approve", "reject", "edit"}),
        rules.APPROVER_COMPLETED: frozenset(),
    },
)


@dataclass
class ApprovalOutcome:
    completed: bool
    level: Optional[int] = None
    next_level: Optional[int] = None
    next_role_id: Optional[str] = None


class ApprovalStateMachine:
    """Transition guard and approval driver for one Process.

    The workflow resolver and the catalog loader are injectable so callers
    and tests can substitute their own configuration sources.
    """

    def __init__(
        self,
        process: Process,
        resolver: Optional[WorkflowResolver] = None,
        catalog_loader: Optional[Callable[[int, str], StatusCatalog]] = None,
    ):
        self.process = process
        self.resolver = resolver or default_resolver
        self.catalog_loader = catalog_loader or StatusCatalog.load

    # ── Guards ─────────────────────────────────────────────────────────────

    def catalog(self, company_id: int) -> StatusCatalog:
        return self.catalog_loader(company_id, self.process.category_id)

    def ensure_allowed(self, document, event: str, catalog: StatusCatalog) -> str:
        """Return the document's current status symbol if ``event`` may fire."""
        if not getattr(document, "is_active", True):
            raise ConflictError(f"{document} is deactivated.", code="inactive")
        current = catalog.symbol_of(document.status)
        allowed = self.process.transitions.get(current, frozenset())
        if event not in allowed:
            if current == rules.ORDER_CANCELLED:
                raise ConflictError(f"{document} is cancelled.", code="order_cancelled")
            raise ConflictError(
                f"Cannot {event} {document} in status {current}.",
                code="invalid_transition",
            )
        return current

    @staticmethod
    def check_version(document, expected_version: Optional[int]) -> None:
        if expected_version is None:
            return
        if int(expected_version) != document.version_nbr:
            raise ConflictError(
                f"{document} was modified by another user. Reload and retry.",
                code="stale_version",
            )

    @staticmethod
    def touch(document, actor_id: str, fields: Iterable[str] = ()) -> List[str]:
        document.update_by_id = actor_id
        document.version_nbr = (document.version_nbr or 0) + 1
        return list(dict.fromkeys([*fields, "update_by_id", "version_nbr", "update_dtime"]))

    # ── Approval ───────────────────────────────────────────────────────────

    def open_approval(self, document, catalog: StatusCatalog, actor_id: str) -> ApprovalOutcome:
        """Enter the workflow: level-1 pending when configured, else completed."""
        config = self.resolver.resolve(document.company_id, self.process.name, 1)
        if config is None:
            # An existing trail must end on a finalized step before issue.
            if approval_trail.has_outstanding_step(document):
                approval_trail.append_step(
                    document,
                    status=rules.STEP_NOT_REQUIRED_LABEL,
                    trail_marker=rules.TRAIL_APPROVED,
                    role_id=None,
                    actor_id=actor_id,
                    is_finalized=True,
                )
            document.status = catalog.status(rules.APPROVER_COMPLETED)
            document.workflow = None
            document.next_level_role_id = None
            return ApprovalOutcome(completed=True)

        approval_trail.append_step(
            document,
            status=catalog.label(rules.APPROVAL_PENDING, config.level),
            trail_marker=rules.TRAIL_PENDING,
            role_id=config.role_id,
            actor_id=actor_id,
        )
        document.status = catalog.status(rules.APPROVAL_PENDING)
        document.workflow = config
        document.next_level_role_id = config.role_id
        return ApprovalOutcome(
            completed=False, next_level=config.level, next_role_id=config.role_id
        )

    def approve(
        self,
        document,
        catalog: StatusCatalog,
        actor_id: str,
        actor_roles: Iterable[str] = (),
        comment: str = "",
        override: bool = False,
    ) -> ApprovalOutcome:
        """Approve the pending level.

        ``override`` approves every remaining level at once, regardless of the
        actor's roles.
        """
        config = document.workflow
        if config is None:
            raise ConflictError(f"{document} has no pending approval level.", code="no_pending_level")

        roles = {str(role).strip().upper() for role in actor_roles or ()}
        if not override and str(config.role_id).strip().upper() not in roles:
            raise ValidationError(
                "You are not the approver for this level.",
                errors={"approval": f"Level {config.level} requires role {config.role_id}."},
                code="approver_role_mismatch",
            )

        max_level = self.resolver.max_level(document.company_id, self.process.name)
        level = config.level
        while True:
            final = level >= max_level
            approval_trail.append_step(
                document,
                status=rules.STEP_APPROVED_LABEL.format(level=level),
                trail_marker=rules.TRAIL_APPROVED,
                role_id=config.role_id,
                actor_id=actor_id,
                comment=comment,
                is_finalized=final,
            )
            if final:
                document.status = catalog.status(rules.APPROVER_COMPLETED)
                document.workflow = None
                document.next_level_role_id = None
                return ApprovalOutcome(completed=True, level=level)

            next_config = self.resolver.resolve(document.company_id, self.process.name, level + 1)
            if next_config is None:
                raise ConfigurationError(
                    f"{self.process.name} workflow has no level {level + 1}.",
                    code="workflow_level_missing",
                )
            approval_trail.append_step(
                document,
                status=catalog.label(rules.APPROVAL_PENDING, next_config.level),
                trail_marker=rules.TRAIL_PENDING,
                role_id=next_config.role_id,
                actor_id=actor_id,
            )
            if not override:
                document.status = catalog.status(rules.APPROVAL_PENDING)
                document.workflow = next_config
                document.next_level_role_id = next_config.role_id
                return ApprovalOutcome(
                    completed=False,
                    level=level,
                    next_level=next_config.level,
                    next_role_id=next_config.role_id,
                )
            config = next_config
            level = next_config.level

    def reject(self, document, catalog: StatusCatalog, actor_id: str, comment: str) -> ApprovalOutcome:
        """Reject the pending level; level 1 returns to created, deeper levels step back one."""
        if not comment or not str(comment).strip():
            raise ValidationError(
                "A comment is required to reject.",
                errors={"comment": "Comment is required."},
                code="comment_required",
            )
        config = document.workflow
        if config is None:
            raise ConflictError(f"{document} has no pending approval level.", code="no_pending_level")

        level = config.level
        if level <= 1:
            approval_trail.append_step(
                document,
                status=rules.STEP_CREATED_REJECTED_LABEL,
                trail_marker=rules.TRAIL_REJECTED,
                role_id=config.role_id,
                actor_id=actor_id,
                comment=comment,
            )
            document.status = catalog.status(self.process.created_status)
            document.workflow = None
            document.next_level_role_id = None
            return ApprovalOutcome(completed=False, level=level)

        previous = self.resolver.resolve(document.company_id, self.process.name, level - 1)
        if previous is None:
            raise ConfigurationError(
                f"{self.process.name} workflow has no level {level - 1}.",
                code="workflow_level_missing",
            )
        approval_trail.append_step(
            document,
            status=rules.STEP_REJECTED_LABEL.format(level=level),
            trail_marker=rules.TRAIL_REJECTED,
            role_id=config.role_id,
            actor_id=actor_id,
            comment=comment,
            routed_to=approval_trail.latest_approver(document, level - 1),
        )
        document.status = catalog.status(rules.APPROVAL_PENDING)
        document.workflow = previous
        document.next_level_role_id = previous.role_id
        return ApprovalOutcome(
            completed=False, level=level, next_level=previous.level, next_role_id=previous.role_id
        )
