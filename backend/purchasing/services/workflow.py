"""Approval level lookups against WorkflowConfig."""
from __future__ import annotations

from typing import Optional

from django.db.models import Max

from purchasing.models import WorkflowConfig


class WorkflowResolver:
    """Reads the configured approval levels of a company's processes.

    A missing level-1 row means the process runs without approval.
    """

    def resolve(self, company_id: int, process_name: str, level: int) -> Optional[WorkflowConfig]:
        return (
            WorkflowConfig.objects.filter(
                company_id=company_id,
                process_name=process_name,
                level=level,
                is_active=True,
            )
            .order_by("workflow_id")
            .first()
        )

    def max_level(self, company_id: int, process_name: str) -> int:
        result = WorkflowConfig.objects.filter(
            company_id=company_id,
            process_name=process_name,
            is_active=True,
        ).aggregate(max_level=Max("level"))
        return int(result.get("max_level") or 0)


default_resolver = WorkflowResolver()
