from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import Mock, patch

from django.db import IntegrityError
from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework.test import APIClient

from purchasing import events, rules
from purchasing.exceptions import ConfigurationError, ConflictError, ValidationError
from purchasing.log_sanitizer import sanitize_for_log
from purchasing.models import (
    InventoryRecord,
    Item,
    PurchaseOrder,
    PurchaseOrderApprovalStep,
    PurchaseOrderItem,
    SequenceCounter,
    StatusCatalogEntry,
    Store,
    Supplier,
    WorkflowConfig,
)
from purchasing.services import (
    approval_trail,
    backorders,
    purchase_orders,
    receiving,
    returns,
)
from purchasing.services.sequences import allocate_number
from purchasing.services.state_machine import PURCHASE_ORDER, ApprovalStateMachine
from purchasing.services.status_catalog import StatusCatalog, render_status_label

COMPANY_ID = 7


def _seed_status_catalog(company_id: int = COMPANY_ID) -> None:
    for category_id, symbols in rules.REQUIRED_STATUSES.items():
        for symbol in symbols:
            if symbol == rules.APPROVAL_PENDING:
                value = "Level {@} Approval Pending"
            else:
                value = symbol.replace("_", " ").title()
            StatusCatalogEntry.objects.create(
                company_id=company_id,
                category_id=category_id,
                sub_category_id=symbol,
                value=value,
            )


class PurchasingTestCase(TestCase):
    def setUp(self) -> None:
        _seed_status_catalog()
        self.supplier = Supplier.objects.create(
            company_id=COMPANY_ID,
            supplier_code="ACME",
            supplier_name="Acme Parts",
            email_text="orders@acme.example",
        )
        self.store = Store.objects.create(company_id=COMPANY_ID, store_name="Main Workshop")
        self.item_a = Item.objects.create(
            company_id=COMPANY_ID,
            item_code="OIL-5W30",
            item_name="Engine oil 5W-30",
            selling_price=Decimal("15.00"),
        )
        self.item_b = Item.objects.create(
            company_id=COMPANY_ID,
            item_code="FLT-001",
            item_name="Oil filter",
            selling_price=Decimal("8.00"),
        )

    def _workflow(self, levels: int, process: str = rules.PROCESS_PURCHASE_ORDER) -> list:
        return [
            WorkflowConfig.objects.create(
                company_id=COMPANY_ID,
                process_name=process,
                level=level,
                role_id=f"LEVEL{level}",
            )
            for level in range(1, levels + 1)
        ]

    def _create(self, lines=None) -> dict:
        if lines is None:
            lines = [(self.item_a, 10, "12.50"), (self.item_b, 5, "4.00")]
        return purchase_orders.create_purchase_order(
            COMPANY_ID,
            supplier_id=self.supplier.supplier_id,
            store_id=self.store.store_id,
            items=[
                {"item_id": item.item_id, "order_qty": qty, "unit_price": price}
                for item, qty, price in lines
            ],
            actor_id="buyer",
        )

    def _issued(self, lines=None) -> dict:
        order = self._create(lines)
        return purchase_orders.issue_purchase_order(order["purchase_order_id"], actor_id="buyer")

    def _receive(self, order: dict, quantities: list) -> dict:
        receipts = {
            str(line["purchase_order_item_id"]): qty
            for line, qty in zip(order["items"], quantities)
        }
        return receiving.receive_purchase_order(
            order["purchase_order_id"], receipts, actor_id="storekeeper"
        )

    def _record(self, signal) -> list:
        calls = []

        def receiver(sender, **kwargs):
            calls.append(kwargs)

        signal.connect(receiver, weak=False)
        self.addCleanup(signal.disconnect, receiver)
        return calls


class SequenceAllocatorTests(PurchasingTestCase):
    def test_first_number_of_the_day(self) -> None:
        number = allocate_number(COMPANY_ID, "acme", rules.PREFIX_PURCHASE_ORDER, date(2024, 3, 5))
        self.assertEqual(number, "PO-ACME-050324-001")

    def test_sequential_allocations_are_distinct_and_gap_free(self) -> None:
        numbers = [
            allocate_number(COMPANY_ID, "ACME", rules.PREFIX_PURCHASE_ORDER, date(2024, 3, 5))
            for _ in range(50)
        ]
        self.assertEqual(numbers, [f"PO-ACME-050324-{seq:03d}" for seq in range(1, 51)])

    def test_keys_are_independent(self) -> None:
        day = date(2024, 3, 5)
        allocate_number(COMPANY_ID, "ACME", rules.PREFIX_PURCHASE_ORDER, day)
        self.assertEqual(
            allocate_number(COMPANY_ID, "ACME", rules.PREFIX_BACKORDER, day), "BO-ACME-050324-001"
        )
        self.assertEqual(
            allocate_number(COMPANY_ID, "ZEN", rules.PREFIX_PURCHASE_ORDER, day), "PO-ZEN-050324-001"
        )
        self.assertEqual(
            allocate_number(COMPANY_ID, "ACME", rules.PREFIX_PURCHASE_ORDER, date(2024, 3, 6)),
            "PO-ACME-060324-001",
        )

    def test_new_counter_continues_after_existing_numbers(self) -> None:
        PurchaseOrder.objects.create(
            po_number="PO-ACME-050324-007",
            company_id=COMPANY_ID,
            order_date=date(2024, 3, 5),
            supplier=self.supplier,
            store=self.store,
            status=StatusCatalogEntry.objects.get(
                company_id=COMPANY_ID,
                category_id=rules.CATEGORY_PURCHASE_ORDER,
                sub_category_id=rules.ORDER_CREATED,
            ),
            create_by_id="tester",
            update_by_id="tester",
        )

        number = allocate_number(COMPANY_ID, "ACME", rules.PREFIX_PURCHASE_ORDER, date(2024, 3, 5))

        self.assertEqual(number, "PO-ACME-050324-008")

    def test_blank_supplier_code_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            allocate_number(COMPANY_ID, "  ", rules.PREFIX_PURCHASE_ORDER)
        self.assertIn("supplier_code", ctx.exception.errors)

    @patch("purchasing.services.sequences.time.sleep", return_value=None)
    def test_counter_race_exhaustion_raises_conflict(self, _mock_sleep) -> None:
        with patch.object(
            SequenceCounter.objects, "create", side_effect=IntegrityError("duplicate key")
        ):
            with self.assertRaises(ConflictError) as ctx:
                allocate_number(COMPANY_ID, "ACME", rules.PREFIX_PURCHASE_ORDER, date(2024, 3, 5))

        self.assertEqual(ctx.exception.code, "duplicate_sequence")


class StatusCatalogTests(PurchasingTestCase):
    def test_incomplete_catalog_blocks_transitions(self) -> None:
        StatusCatalogEntry.objects.filter(
            company_id=COMPANY_ID,
            category_id=rules.CATEGORY_PURCHASE_ORDER,
            sub_category_id=rules.ORDER_ISSUED,
        ).delete()

        with self.assertRaises(ConfigurationError) as ctx:
            StatusCatalog.load(COMPANY_ID, rules.CATEGORY_PURCHASE_ORDER)
        self.assertIn(rules.ORDER_ISSUED, ctx.exception.message)

        with self.assertRaises(ConfigurationError):
            self._create()
        self.assertEqual(PurchaseOrder.objects.count(), 0)

    def test_catalog_is_company_scoped(self) -> None:
        with self.assertRaises(ConfigurationError):
            StatusCatalog.load(COMPANY_ID + 1, rules.CATEGORY_PURCHASE_ORDER)


class StatusLabelTests(SimpleTestCase):
    def test_level_placeholder_is_replaced(self) -> None:
        self.assertEqual(
            render_status_label("Level {@} Approval Pending", 2), "Level 2 Approval Pending"
        )

    def test_label_without_level_is_unchanged(self) -> None:
        self.assertEqual(render_status_label("Order Issued"), "Order Issued")

    def test_sanitize_for_log_neutralizes_line_breaks(self) -> None:
        self.assertEqual(sanitize_for_log("late\nINFO forged"), "late[LF]INFO forged")
        self.assertEqual(sanitize_for_log(None), "[None]")


class _NoWorkflow:
    def resolve(self, company_id, process_name, level):
        return None

    def max_level(self, company_id, process_name):
        return 0


class StateMachineInjectionTests(SimpleTestCase):
    def setUp(self) -> None:
        self.entries = {
            symbol: StatusCatalogEntry(
                status_id=index,
                company_id=1,
                category_id=rules.CATEGORY_PURCHASE_ORDER,
                sub_category_id=symbol,
                value=symbol.title(),
            )
            for index, symbol in enumerate(
                rules.REQUIRED_STATUSES[rules.CATEGORY_PURCHASE_ORDER], start=1
            )
        }
        self.machine = ApprovalStateMachine(
            PURCHASE_ORDER,
            resolver=_NoWorkflow(),
            catalog_loader=lambda company_id, category_id: StatusCatalog(category_id, self.entries),
        )

    def test_missing_level_one_bypasses_approval(self) -> None:
        document = SimpleNamespace(
            company_id=1,
            status=None,
            workflow=None,
            next_level_role_id="LEVEL1",
            is_active=True,
            approval_steps=Mock(**{"order_by.return_value.first.return_value": None}),
        )
        catalog = self.machine.catalog(1)

        outcome = self.machine.open_approval(document, catalog, "buyer")

        self.assertTrue(outcome.completed)
        self.assertIs(document.status, self.entries[rules.APPROVER_COMPLETED])
        self.assertIsNone(document.next_level_role_id)
        self.assertEqual(
            self.machine.ensure_allowed(document, "issue", catalog), rules.APPROVER_COMPLETED
        )
        with self.assertRaises(ConflictError) as ctx:
            self.machine.ensure_allowed(document, "receive", catalog)
        self.assertEqual(ctx.exception.code, "invalid_transition")

    def test_stale_version_is_rejected(self) -> None:
        document = SimpleNamespace(version_nbr=4)

        self.machine.check_version(document, None)
        self.machine.check_version(document, "4")
        with self.assertRaises(ConflictError) as ctx:
            self.machine.check_version(document, 3)
        self.assertEqual(ctx.exception.code, "stale_version")


class WorkflowEntryTests(PurchasingTestCase):
    def test_without_workflow_order_is_approved_immediately(self) -> None:
        order = self._create()

        self.assertEqual(order["status"], rules.APPROVER_COMPLETED)
        self.assertEqual(order["approval_trail"], [])
        self.assertIsNone(order["workflow_level"])
        self.assertTrue(order["po_number"].startswith("PO-ACME-"))
        self.assertEqual(order["total_items"], 15)
        self.assertEqual(order["total_value"], "145.00")

    def test_level_one_workflow_starts_pending_with_first_step(self) -> None:
        self._workflow(1)

        order = self._create()

        self.assertEqual(order["status"], rules.APPROVAL_PENDING)
        self.assertEqual(order["workflow_level"], 1)
        self.assertEqual(order["next_level_role_id"], "LEVEL1")
        self.assertEqual(len(order["approval_trail"]), 1)
        step = order["approval_trail"][0]
        self.assertEqual(step["sequence_no"], 0)
        self.assertEqual(step["trail"], rules.TRAIL_PENDING)
        self.assertEqual(step["status"], "Level 1 Approval Pending")
        self.assertFalse(step["is_finalized"])

    def test_creation_events_fire_after_commit(self) -> None:
        self._workflow(1)
        created = self._record(events.order_created)
        approvals = self._record(events.approval_required)

        with self.captureOnCommitCallbacks(execute=True):
            order = self._create()

        self.assertEqual(len(created), 1)
        self.assertEqual(created[0]["po_number"], order["po_number"])
        self.assertEqual(len(approvals), 1)
        self.assertEqual(approvals[0]["level"], 1)
        self.assertEqual(approvals[0]["role_id"], "LEVEL1")

    def test_invalid_lines_are_rejected_without_writes(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self._create([(self.item_a, 0, "12.50"), (self.item_b, 2, "-1")])

        self.assertIn("items[0].order_qty", ctx.exception.errors)
        self.assertIn("items[1].unit_price", ctx.exception.errors)
        self.assertEqual(PurchaseOrder.objects.count(), 0)
        self.assertEqual(SequenceCounter.objects.count(), 0)

    def test_duplicate_items_are_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self._create([(self.item_a, 1, "1.00"), (self.item_a, 2, "1.00")])
        self.assertIn("items[1].item_id", ctx.exception.errors)

    def test_non_finite_order_quantity_is_rejected(self) -> None:
        for value in ("Infinity", "-Infinity", "NaN"):
            with self.subTest(value=value):
                with self.assertRaises(ValidationError) as ctx:
                    self._create([(self.item_a, value, "12.50")])
                self.assertIn("items[0].order_qty", ctx.exception.errors)
        self.assertEqual(PurchaseOrder.objects.count(), 0)


class ApprovalFlowTests(PurchasingTestCase):
    def test_two_level_approval_completes_on_last_level(self) -> None:
        self._workflow(2)
        order = self._create()
        order_id = order["purchase_order_id"]

        order = purchase_orders.approve_purchase_order(
            order_id, actor_id="approver-1", actor_roles=["LEVEL1"], comment="ok"
        )
        self.assertEqual(order["status"], rules.APPROVAL_PENDING)
        self.assertEqual(order["workflow_level"], 2)
        self.assertEqual(
            [(s["sequence_no"], s["trail"]) for s in order["approval_trail"]],
            [(0, "Pending"), (1, "Approved"), (2, "Pending")],
        )
        self.assertEqual(order["approval_trail"][2]["status"], "Level 2 Approval Pending")

        order = purchase_orders.approve_purchase_order(
            order_id, actor_id="approver-2", actor_roles=["level2"]
        )
        self.assertEqual(order["status"], rules.APPROVER_COMPLETED)
        self.assertIsNone(order["workflow_level"])
        self.assertIsNone(order["next_level_role_id"])
        last = order["approval_trail"][-1]
        self.assertEqual(last["trail"], rules.TRAIL_APPROVED)
        self.assertTrue(last["is_finalized"])
        self.assertEqual(last["acted_by"], "approver-2")

    def test_approver_must_hold_pending_role(self) -> None:
        self._workflow(1)
        order = self._create()

        with self.assertRaises(ValidationError) as ctx:
            purchase_orders.approve_purchase_order(
                order["purchase_order_id"], actor_id="someone", actor_roles=["LEVEL2"]
            )

        self.assertEqual(ctx.exception.code, "approver_role_mismatch")
        self.assertEqual(
            PurchaseOrderApprovalStep.objects.filter(
                purchase_order_id=order["purchase_order_id"]
            ).count(),
            1,
        )

    def test_override_approves_all_remaining_levels(self) -> None:
        self._workflow(3)
        order = self._create()

        order = purchase_orders.approve_purchase_order(
            order["purchase_order_id"], actor_id="admin", override=True
        )

        self.assertEqual(order["status"], rules.APPROVER_COMPLETED)
        self.assertEqual(len(order["approval_trail"]), 6)
        self.assertEqual(
            [s["is_finalized"] for s in order["approval_trail"]],
            [False, False, False, False, False, True],
        )

    def test_reject_requires_comment(self) -> None:
        self._workflow(1)
        order = self._create()

        with self.assertRaises(ValidationError) as ctx:
            purchase_orders.reject_purchase_order(order["purchase_order_id"], "approver-1", "  ")

        self.assertEqual(ctx.exception.code, "comment_required")
        self.assertEqual(
            purchase_orders.get_purchase_order(order["purchase_order_id"])["status"],
            rules.APPROVAL_PENDING,
        )

    def test_level_one_rejection_returns_to_created_and_resubmit_reopens(self) -> None:
        self._workflow(1)
        order = self._create()
        order_id = order["purchase_order_id"]

        order = purchase_orders.reject_purchase_order(order_id, "approver-1", "Wrong supplier")
        self.assertEqual(order["status"], rules.ORDER_CREATED)
        self.assertIsNone(order["workflow_level"])
        self.assertEqual(order["approval_trail"][-1]["status"], "Created - Rejected")
        self.assertEqual(order["approval_trail"][-1]["comment"], "Wrong supplier")

        order = purchase_orders.resubmit_purchase_order(
            order_id,
            actor_id="buyer",
            items=[{"item_id": self.item_a.item_id, "order_qty": 4, "unit_price": "11.00"}],
        )
        self.assertEqual(order["status"], rules.APPROVAL_PENDING)
        self.assertEqual(order["approval_trail"][-1]["sequence_no"], 2)
        self.assertEqual(order["approval_trail"][-1]["trail"], rules.TRAIL_PENDING)
        self.assertEqual(order["total_items"], 4)
        self.assertEqual(order["total_value"], "44.00")
        self.assertEqual(len(order["items"]), 1)

    def test_higher_level_rejection_steps_back_one_level(self) -> None:
        self._workflow(2)
        order = self._create()
        order_id = order["purchase_order_id"]
        purchase_orders.approve_purchase_order(order_id, "approver-1", ["LEVEL1"])

        order = purchase_orders.reject_purchase_order(order_id, "approver-2", "Price too high")

        self.assertEqual(order["status"], rules.APPROVAL_PENDING)
        self.assertEqual(order["workflow_level"], 1)
        self.assertEqual(order["next_level_role_id"], "LEVEL1")
        last = order["approval_trail"][-1]
        self.assertEqual(last["trail"], rules.TRAIL_REJECTED)
        self.assertEqual(last["status"], "Level 2 Approval Rejected")
        self.assertEqual(last["routed_to"], "approver-1")

    def test_resubmit_requires_created_status(self) -> None:
        self._workflow(1)
        order = self._create()

        with self.assertRaises(ConflictError) as ctx:
            purchase_orders.resubmit_purchase_order(order["purchase_order_id"], "buyer")

        self.assertEqual(ctx.exception.code, "invalid_transition")

    def test_resubmit_after_workflow_removed_closes_trail_and_can_issue(self) -> None:
        self._workflow(1)
        order_id = self._create()["purchase_order_id"]
        purchase_orders.reject_purchase_order(order_id, "approver-1", "Wrong supplier")
        WorkflowConfig.objects.filter(
            company_id=COMPANY_ID, process_name=rules.PROCESS_PURCHASE_ORDER
        ).update(is_active=False)

        order = purchase_orders.resubmit_purchase_order(order_id, actor_id="buyer")

        self.assertEqual(order["status"], rules.APPROVER_COMPLETED)
        last = order["approval_trail"][-1]
        self.assertEqual(last["status"], rules.STEP_NOT_REQUIRED_LABEL)
        self.assertEqual(last["trail"], rules.TRAIL_APPROVED)
        self.assertTrue(last["is_finalized"])

        order = purchase_orders.issue_purchase_order(order_id, actor_id="buyer")
        self.assertEqual(order["status"], rules.ORDER_ISSUED)

    def test_approval_steps_are_append_only(self) -> None:
        self._workflow(1)
        order = self._create()
        step = PurchaseOrderApprovalStep.objects.get(
            purchase_order_id=order["purchase_order_id"], sequence_no=0
        )

        step.comment = "rewritten"
        with self.assertRaises(ConflictError):
            step.save()
        with self.assertRaises(ConflictError):
            step.delete()

    def test_version_is_bumped_and_checked(self) -> None:
        self._workflow(2)
        order = self._create()
        order_id = order["purchase_order_id"]

        approved = purchase_orders.approve_purchase_order(
            order_id, "approver-1", ["LEVEL1"], expected_version=order["version_nbr"]
        )
        self.assertEqual(approved["version_nbr"], order["version_nbr"] + 1)

        with self.assertRaises(ConflictError) as ctx:
            purchase_orders.approve_purchase_order(
                order_id, "approver-2", ["LEVEL2"], expected_version=order["version_nbr"]
            )
        self.assertEqual(ctx.exception.code, "stale_version")


class IssueAndCancelTests(PurchasingTestCase):
    def test_issue_stamps_and_notifies(self) -> None:
        order = self._create()
        issued_events = self._record(events.order_issued)

        with self.captureOnCommitCallbacks(execute=True):
            order = purchase_orders.issue_purchase_order(order["purchase_order_id"], actor_id="buyer")

        self.assertEqual(order["status"], rules.ORDER_ISSUED)
        self.assertEqual(order["issued_by"], "buyer")
        self.assertIsNotNone(order["issued_on"])
        self.assertEqual(len(issued_events), 1)
        self.assertTrue(issued_events[0]["notify_supplier"])
        self.assertEqual(issued_events[0]["supplier_email"], "orders@acme.example")

    def test_issue_twice_is_rejected(self) -> None:
        order = self._issued()

        with self.assertRaises(ConflictError):
            purchase_orders.issue_purchase_order(order["purchase_order_id"], actor_id="buyer")

    def test_issue_requires_completed_approval(self) -> None:
        self._workflow(1)
        order = self._create()

        with self.assertRaises(ConflictError) as ctx:
            purchase_orders.issue_purchase_order(order["purchase_order_id"], actor_id="buyer")
        self.assertEqual(ctx.exception.code, "invalid_transition")

    def test_issue_blocked_by_open_approval_step(self) -> None:
        order = self._create()
        model = PurchaseOrder.objects.get(pk=order["purchase_order_id"])
        approval_trail.append_step(
            model, status="Level 1 Approval Pending", trail_marker=rules.TRAIL_PENDING, role_id="LEVEL1"
        )

        with self.assertRaises(ConflictError) as ctx:
            purchase_orders.issue_purchase_order(order["purchase_order_id"], actor_id="buyer")
        self.assertEqual(ctx.exception.code, "approval_outstanding")

    def test_cancel_is_terminal_and_idempotent(self) -> None:
        self._workflow(1)
        order = self._create()
        order_id = order["purchase_order_id"]

        cancelled = purchase_orders.cancel_purchase_order(order_id, "Supplier Delay", "buyer")
        self.assertEqual(cancelled["status"], rules.ORDER_CANCELLED)
        self.assertEqual(cancelled["cancellation_reason"], "Supplier Delay")
        self.assertEqual(cancelled["cancelled_by"], "buyer")
        self.assertIsNone(cancelled["workflow_level"])

        again = purchase_orders.cancel_purchase_order(order_id, "Pricing Issue", "someone-else")
        self.assertEqual(again["version_nbr"], cancelled["version_nbr"])
        self.assertEqual(again["cancellation_reason"], "Supplier Delay")

        with self.assertRaises(ConflictError) as ctx:
            purchase_orders.approve_purchase_order(order_id, "approver-1", ["LEVEL1"])
        self.assertEqual(ctx.exception.code, "order_cancelled")

    def test_other_reason_requires_details(self) -> None:
        order = self._create()
        order_id = order["purchase_order_id"]

        with self.assertRaises(ValidationError) as ctx:
            purchase_orders.cancel_purchase_order(order_id, "Others", "buyer")
        self.assertIn("details", ctx.exception.errors)

        cancelled = purchase_orders.cancel_purchase_order(
            order_id, "Others", "buyer", details="Duplicate order"
        )
        self.assertEqual(cancelled["cancellation_reason"], "Duplicate order")

    def test_unknown_or_missing_reason_is_rejected(self) -> None:
        order = self._create()

        with self.assertRaises(ValidationError):
            purchase_orders.cancel_purchase_order(order["purchase_order_id"], "", "buyer")
        with self.assertRaises(ValidationError):
            purchase_orders.cancel_purchase_order(order["purchase_order_id"], "Bored", "buyer")

    @override_settings(PROCUREMENT_CANCELLATION_REASONS=["Budget Freeze", "Others"])
    def test_cancellation_reasons_come_from_settings(self) -> None:
        order = self._create()

        cancelled = purchase_orders.cancel_purchase_order(
            order["purchase_order_id"], "budget freeze", "buyer"
        )
        self.assertEqual(cancelled["cancellation_reason"], "Budget Freeze")

    def test_issued_order_cannot_be_cancelled(self) -> None:
        order = self._issued()

        with self.assertRaises(ConflictError):
            purchase_orders.cancel_purchase_order(order["purchase_order_id"], "Supplier Delay", "buyer")

    def test_deactivated_order_rejects_transitions(self) -> None:
        order = self._create()

        deactivated = purchase_orders.deactivate_purchase_order(order["purchase_order_id"], "buyer")
        self.assertFalse(deactivated["is_active"])
        self.assertEqual(purchase_orders.list_purchase_orders(COMPANY_ID), [])

        with self.assertRaises(ConflictError) as ctx:
            purchase_orders.issue_purchase_order(order["purchase_order_id"], actor_id="buyer")
        self.assertEqual(ctx.exception.code, "inactive")


class ReceivingTests(PurchasingTestCase):
    def test_partial_receipt_stocks_received_lines(self) -> None:
        order = self._issued()

        order = self._receive(order, [6, 5])

        self.assertEqual(order["status"], rules.ORDER_PARTIALLY_RECEIVED)
        self.assertEqual([line["received_qty"] for line in order["items"]], [6, 5])
        self.assertEqual(order["received_by"], "storekeeper")
        record = InventoryRecord.objects.get(purchase_order_id=order["purchase_order_id"], item=self.item_a)
        self.assertEqual(record.item_qty, 6)
        self.assertEqual(record.unit_price, Decimal("12.50"))
        self.assertEqual(record.selling_price, Decimal("15.00"))
        self.assertEqual(record.store_id, self.store.store_id)
        self.assertEqual(InventoryRecord.objects.count(), 2)

    def test_full_receipt_by_item_id(self) -> None:
        order = self._issued()

        order = receiving.receive_purchase_order(
            order["purchase_order_id"],
            [
                {"item_id": self.item_a.item_id, "received_qty": 10},
                {"item_id": self.item_b.item_id, "received_qty": "5"},
            ],
            actor_id="storekeeper",
        )

        self.assertEqual(order["status"], rules.ORDER_RECEIVED)

    def test_zero_quantity_line_is_not_stocked(self) -> None:
        order = self._issued()

        order = self._receive(order, [10, 0])

        self.assertEqual(order["status"], rules.ORDER_PARTIALLY_RECEIVED)
        self.assertEqual(InventoryRecord.objects.count(), 1)

    def test_over_receipt_rejects_whole_batch(self) -> None:
        order = self._issued()
        line_id = order["items"][0]["purchase_order_item_id"]

        with self.assertRaises(ValidationError) as ctx:
            self._receive(order, [11, 5])

        self.assertEqual(
            ctx.exception.errors[f"items[{line_id}].received_qty"],
            "Cannot exceed ordered quantity (10).",
        )
        self.assertEqual(InventoryRecord.objects.count(), 0)
        self.assertFalse(
            PurchaseOrderItem.objects.filter(
                purchase_order_id=order["purchase_order_id"], received_qty__isnull=False
            ).exists()
        )
        self.assertEqual(
            purchase_orders.get_purchase_order(order["purchase_order_id"])["status"],
            rules.ORDER_ISSUED,
        )

    def test_negative_and_missing_quantities_are_rejected(self) -> None:
        order = self._issued()

        with self.assertRaises(ValidationError):
            self._receive(order, [-1, 5])
        with self.assertRaises(ValidationError):
            self._receive(order, [10])

    def test_non_finite_received_quantity_is_rejected(self) -> None:
        order = self._issued()
        line_id = order["items"][0]["purchase_order_item_id"]

        for value in ("Infinity", "NaN"):
            with self.subTest(value=value):
                with self.assertRaises(ValidationError) as ctx:
                    self._receive(order, [value, 5])
                self.assertIn(f"items[{line_id}].received_qty", ctx.exception.errors)
        self.assertEqual(InventoryRecord.objects.count(), 0)

    def test_receiving_requires_issued_order(self) -> None:
        order = self._create()

        with self.assertRaises(ConflictError):
            self._receive(order, [10, 5])

    def test_second_receipt_is_rejected(self) -> None:
        order = self._issued()
        self._receive(order, [6, 5])

        with self.assertRaises(ConflictError):
            self._receive(order, [10, 5])


class BackorderTests(PurchasingTestCase):
    def test_backorder_covers_outstanding_quantity(self) -> None:
        source = self._receive(self._issued(), [6, 5])

        backorder = backorders.create_backorder(source["purchase_order_id"], actor_id="buyer")

        self.assertTrue(backorder["po_number"].startswith("BO-ACME-"))
        self.assertEqual(backorder["backorder_reference_id"], source["purchase_order_id"])
        self.assertEqual(len(backorder["items"]), 1)
        self.assertEqual(backorder["items"][0]["item_id"], self.item_a.item_id)
        self.assertEqual(backorder["items"][0]["order_qty"], 4)
        self.assertEqual(backorder["items"][0]["unit_price"], "12.50")
        self.assertEqual(backorder["total_value"], "50.00")
        self.assertEqual(backorder["status"], rules.APPROVER_COMPLETED)
        self.assertEqual(
            purchase_orders.get_purchase_order(source["purchase_order_id"])["status"],
            rules.ORDER_PARTIALLY_RECEIVED,
        )

    def test_second_backorder_is_rejected(self) -> None:
        source = self._receive(self._issued(), [6, 5])
        backorders.create_backorder(source["purchase_order_id"], actor_id="buyer")

        with self.assertRaises(ConflictError) as ctx:
            backorders.create_backorder(source["purchase_order_id"], actor_id="buyer")

        self.assertEqual(ctx.exception.code, "backorder_exists")
        self.assertEqual(PurchaseOrder.objects.filter(backorder_reference__isnull=False).count(), 1)

    def test_fully_received_order_has_no_backorder(self) -> None:
        source = self._receive(self._issued(), [10, 5])

        with self.assertRaises(ConflictError):
            backorders.create_backorder(source["purchase_order_id"], actor_id="buyer")

    def test_backorder_enters_configured_workflow(self) -> None:
        source = self._receive(self._issued(), [6, 5])
        self._workflow(1)

        backorder = backorders.create_backorder(source["purchase_order_id"], actor_id="buyer")

        self.assertEqual(backorder["status"], rules.APPROVAL_PENDING)
        self.assertEqual(len(backorder["approval_trail"]), 1)


class ReturnReconcilerTests(PurchasingTestCase):
    def _received_single_line(self) -> dict:
        order = self._issued([(self.item_a, 10, "12.50")])
        return self._receive(order, [10])

    def _return(self, order: dict, qty, reason="Damaged") -> dict:
        return returns.create_return(
            order["purchase_order_id"],
            [{"item_id": self.item_a.item_id, "return_qty": qty, "return_reason": reason}],
            actor_id="clerk",
        )

    def _on_hand(self, order: dict) -> int:
        return InventoryRecord.objects.get(
            purchase_order_id=order["purchase_order_id"], item=self.item_a
        ).item_qty

    def test_returns_cannot_exceed_received_minus_returned(self) -> None:
        order = self._received_single_line()
        first = self._return(order, 3)
        self.assertEqual(first["total_value"], "37.50")
        self.assertTrue(first["return_number"].startswith("RO-ACME-"))

        with self.assertRaises(ValidationError) as ctx:
            self._return(order, 8)
        self.assertEqual(
            ctx.exception.errors["items[0].return_qty"], "Cannot exceed returnable qty (7)"
        )

        self._return(order, 7)
        model = PurchaseOrder.objects.get(pk=order["purchase_order_id"])
        self.assertEqual(returns.already_returned(model, self.item_a.item_id), 10)
        self.assertEqual(returns.returnable_qty(model, self.item_a.item_id), 0)
        self.assertEqual(self._on_hand(order), 0)

    def test_line_validation_messages(self) -> None:
        order = self._receive(self._issued(), [10, 5])

        with self.assertRaises(ValidationError) as ctx:
            returns.create_return(
                order["purchase_order_id"],
                [
                    {"item_id": self.item_a.item_id, "return_qty": None, "return_reason": "Damaged"},
                    {"item_id": self.item_b.item_id, "return_qty": 0, "return_reason": "Damaged"},
                ],
                actor_id="clerk",
            )
        self.assertEqual(ctx.exception.errors["items[0].return_qty"], "Return quantity is required")
        self.assertEqual(ctx.exception.errors["items[1].return_qty"], "Must be at least 1")

        with self.assertRaises(ValidationError) as ctx:
            self._return(order, 2, reason=" ")
        self.assertEqual(ctx.exception.errors["items[0].return_reason"], "Return reason is required")

    def test_non_finite_return_quantity_is_rejected(self) -> None:
        order = self._received_single_line()

        for value in ("Infinity", "NaN"):
            with self.subTest(value=value):
                with self.assertRaises(ValidationError) as ctx:
                    self._return(order, value)
                self.assertEqual(ctx.exception.errors["items[0].return_qty"], "Must be a whole number")
        self.assertEqual(self._on_hand(order), 10)

    def test_unit_price_is_frozen_order_price(self) -> None:
        order = self._received_single_line()
        Item.objects.filter(pk=self.item_a.pk).update(selling_price=Decimal("99.00"))

        ret = self._return(order, 2)

        self.assertEqual(ret["items"][0]["unit_price"], "12.50")
        self.assertEqual(ret["total_value"], "25.00")
        self.assertEqual(ret["total_items"], 2)

    def test_return_requires_received_order(self) -> None:
        order = self._issued([(self.item_a, 10, "12.50")])

        with self.assertRaises(ConflictError):
            self._return(order, 1)

    def test_resubmitting_unchanged_quantity_is_valid_when_fully_returned(self) -> None:
        self._workflow(1, process=rules.PROCESS_PURCHASE_RETURN)
        order = self._received_single_line()
        ret = self._return(order, 10)
        self.assertEqual(ret["status"], rules.APPROVAL_PENDING)
        returns.reject_return(ret["return_request_id"], "approver-1", "Attach photos")
        resubmitted_events = self._record(events.return_resubmitted)

        with self.captureOnCommitCallbacks(execute=True):
            ret = returns.resubmit_return(
                ret["return_request_id"],
                [{"item_id": self.item_a.item_id, "return_qty": 10, "return_reason": "Damaged"}],
                actor_id="clerk",
            )

        self.assertEqual(ret["status"], rules.APPROVAL_PENDING)
        self.assertEqual(ret["approval_trail"][-1]["sequence_no"], 2)
        self.assertEqual(self._on_hand(order), 0)
        self.assertEqual(len(resubmitted_events), 1)

    def test_resubmission_applies_only_the_quantity_change(self) -> None:
        self._workflow(1, process=rules.PROCESS_PURCHASE_RETURN)
        order = self._received_single_line()
        ret = self._return(order, 10)
        returns.reject_return(ret["return_request_id"], "approver-1", "Too many")

        ret = returns.resubmit_return(
            ret["return_request_id"],
            [{"item_id": self.item_a.item_id, "return_qty": 6, "return_reason": "Damaged"}],
            actor_id="clerk",
        )

        self.assertEqual(ret["total_items"], 6)
        self.assertEqual(self._on_hand(order), 4)

    def test_resubmission_still_bounded_by_received(self) -> None:
        self._workflow(1, process=rules.PROCESS_PURCHASE_RETURN)
        order = self._received_single_line()
        ret = self._return(order, 4)
        returns.reject_return(ret["return_request_id"], "approver-1", "Wrong qty")

        with self.assertRaises(ValidationError) as ctx:
            returns.resubmit_return(
                ret["return_request_id"],
                [{"item_id": self.item_a.item_id, "return_qty": 11, "return_reason": "Damaged"}],
                actor_id="clerk",
            )
        self.assertEqual(
            ctx.exception.errors["items[0].return_qty"], "Cannot exceed returnable qty (10)"
        )

    def test_resubmit_requires_rejected_return(self) -> None:
        self._workflow(1, process=rules.PROCESS_PURCHASE_RETURN)
        order = self._received_single_line()
        ret = self._return(order, 2)

        with self.assertRaises(ConflictError):
            returns.resubmit_return(
                ret["return_request_id"],
                [{"item_id": self.item_a.item_id, "return_qty": 2, "return_reason": "Damaged"}],
                actor_id="clerk",
            )

    def test_return_approval_and_details_edit(self) -> None:
        self._workflow(1, process=rules.PROCESS_PURCHASE_RETURN)
        order = self._received_single_line()
        ret = self._return(order, 2)

        ret = returns.update_return_details(
            ret["return_request_id"],
            "clerk",
            remark="Courier pickup Friday",
            attachment={"file_name": "photo.jpg", "content_type": "image/jpeg"},
        )
        self.assertEqual(ret["remark"], "Courier pickup Friday")
        self.assertEqual(ret["attachment"]["file_name"], "photo.jpg")

        ret = returns.approve_return(ret["return_request_id"], "approver-1", ["LEVEL1"])
        self.assertEqual(ret["status"], rules.APPROVER_COMPLETED)
        self.assertTrue(ret["approval_trail"][-1]["is_finalized"])

    def test_returnable_summary_and_eligible_orders(self) -> None:
        order = self._received_single_line()
        self._issued([(self.item_b, 3, "4.00")])
        self._return(order, 3)

        summary = returns.returnable_summary(order["purchase_order_id"], COMPANY_ID)
        self.assertEqual(summary[0]["received_qty"], 10)
        self.assertEqual(summary[0]["already_returned"], 3)
        self.assertEqual(summary[0]["returnable_qty"], 7)

        eligible = returns.list_returnable_orders(COMPANY_ID)
        self.assertEqual([row["purchase_order_id"] for row in eligible], [order["purchase_order_id"]])


class PurchasingApiTests(PurchasingTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.client = APIClient()

    def _payload(self) -> dict:
        return {
            "supplier_id": self.supplier.supplier_id,
            "store_id": self.store.store_id,
            "items": [{"item_id": self.item_a.item_id, "order_qty": 2, "unit_price": "12.50"}],
        }

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="buyer-1",
        DEV_AUTH_ROLES=["PURCHASER"],
        DEV_AUTH_PERMISSIONS=[],
        DEV_AUTH_COMPANY_ID=COMPANY_ID,
    )
    def test_create_and_list_purchase_orders(self) -> None:
        response = self.client.post("/api/v1/purchasing/purchase-orders/", self._payload(), format="json")

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["status"], rules.APPROVER_COMPLETED)
        self.assertTrue(body["po_number"].startswith("PO-ACME-"))

        listing = self.client.get("/api/v1/purchasing/purchase-orders/")
        self.assertEqual(listing.status_code, 200)
        self.assertEqual(listing.json()["count"], 1)

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="store-1",
        DEV_AUTH_ROLES=["STOREKEEPER"],
        DEV_AUTH_PERMISSIONS=[],
        DEV_AUTH_COMPANY_ID=COMPANY_ID,
    )
    def test_create_requires_create_permission(self) -> None:
        response = self.client.post("/api/v1/purchasing/purchase-orders/", self._payload(), format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(PurchaseOrder.objects.count(), 0)

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="buyer-1",
        DEV_AUTH_ROLES=["PURCHASER"],
        DEV_AUTH_PERMISSIONS=[],
        DEV_AUTH_COMPANY_ID=COMPANY_ID,
    )
    def test_validation_error_maps_to_400(self) -> None:
        payload = self._payload()
        payload["items"][0]["order_qty"] = 0

        response = self.client.post("/api/v1/purchasing/purchase-orders/", payload, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("items[0].order_qty", response.json()["errors"])

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="buyer-1",
        DEV_AUTH_ROLES=["PURCHASER"],
        DEV_AUTH_PERMISSIONS=[],
        DEV_AUTH_COMPANY_ID=COMPANY_ID,
    )
    def test_second_backorder_maps_to_409(self) -> None:
        source = self._receive(self._issued(), [6, 5])
        url = f"/api/v1/purchasing/purchase-orders/{source['purchase_order_id']}/backorder/"

        first = self.client.post(url, {}, format="json")
        second = self.client.post(url, {}, format="json")

        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["code"], "backorder_exists")

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="buyer-1",
        DEV_AUTH_ROLES=["PURCHASER"],
        DEV_AUTH_PERMISSIONS=[],
        DEV_AUTH_COMPANY_ID=COMPANY_ID,
    )
    def test_incomplete_catalog_maps_to_503(self) -> None:
        StatusCatalogEntry.objects.filter(
            company_id=COMPANY_ID,
            category_id=rules.CATEGORY_PURCHASE_ORDER,
            sub_category_id=rules.ORDER_CANCELLED,
        ).delete()

        response = self.client.post("/api/v1/purchasing/purchase-orders/", self._payload(), format="json")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["code"], "status_catalog_incomplete")

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="approver-9",
        DEV_AUTH_ROLES=["APPROVER"],
        DEV_AUTH_PERMISSIONS=[],
        DEV_AUTH_COMPANY_ID=COMPANY_ID,
    )
    def test_approve_requires_pending_level_role(self) -> None:
        self._workflow(1)
        order = self._create()
        url = f"/api/v1/purchasing/purchase-orders/{order['purchase_order_id']}/approve/"

        response = self.client.post(url, {"comment": "ok"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "approver_role_mismatch")

        with self.settings(DEV_AUTH_ROLES=["APPROVER", "LEVEL1"]):
            response = self.client.post(url, {"comment": "ok"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], rules.APPROVER_COMPLETED)

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="store-1",
        DEV_AUTH_ROLES=["STOREKEEPER"],
        DEV_AUTH_PERMISSIONS=[],
        DEV_AUTH_COMPANY_ID=COMPANY_ID,
    )
    def test_receive_and_return_over_api(self) -> None:
        order = self._issued([(self.item_a, 10, "12.50")])
        line_id = order["items"][0]["purchase_order_item_id"]

        received = self.client.post(
            f"/api/v1/purchasing/purchase-orders/{order['purchase_order_id']}/receive/",
            {"items": [{"purchase_order_item_id": line_id, "received_qty": 10}]},
            format="json",
        )
        self.assertEqual(received.status_code, 200)
        self.assertEqual(received.json()["status"], rules.ORDER_RECEIVED)

        created = self.client.post(
            "/api/v1/purchasing/returns/",
            {
                "purchase_order_id": order["purchase_order_id"],
                "items": [{"item_id": self.item_a.item_id, "return_qty": 11, "return_reason": "Damaged"}],
            },
            format="json",
        )
        self.assertEqual(created.status_code, 400)
        self.assertEqual(
            created.json()["errors"]["items[0].return_qty"], "Cannot exceed returnable qty (10)"
        )

        returnable = self.client.get(
            f"/api/v1/purchasing/purchase-orders/{order['purchase_order_id']}/returnable/"
        )
        self.assertEqual(returnable.status_code, 200)
        self.assertEqual(returnable.json()["items"][0]["returnable_qty"], 10)
