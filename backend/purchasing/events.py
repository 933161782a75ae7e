"""
Domain events emitted by the purchasing engine.

Receivers (notifications, supplier email, system log) connect to these
signals. Events are queued with transaction.on_commit so a rolled back
operation never announces anything.
"""
from __future__ import annotations

import logging

from django.db import transaction
from django.dispatch import Signal

logger = logging.getLogger(__name__)

order_created = Signal()
approval_required = Signal()
order_approved = Signal()
order_rejected = Signal()
order_issued = Signal()
order_received = Signal()
backorder_created = Signal()
order_cancelled = Signal()
return_created = Signal()
return_resubmitted = Signal()
return_approved = Signal()
return_rejected = Signal()


def emit(signal: Signal, sender: type, **payload) -> None:
    """Send ``signal`` once the surrounding transaction commits."""

    def _dispatch() -> None:
        for receiver, result in signal.send_robust(sender=sender, **payload):
            if isinstance(result, Exception):
                logger.error(
                    "purchasing event receiver %r failed: %s",
                    receiver,
                    result,
                    exc_info=(type(result), result, result.__traceback__),
                )

    transaction.on_commit(_dispatch)
