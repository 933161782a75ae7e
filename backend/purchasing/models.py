"""
Django models for the purchase order lifecycle and reconciliation engine.

Master data (suppliers, stores, items), the status catalog and the workflow
configuration are maintained by the surrounding application; the engine only
reads them. Purchase orders, return requests, approval trails, inventory
records and sequence counters are written by the services in
purchasing.services.
"""

from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models

from purchasing.exceptions import ConflictError


# =============================================================================
# Base Model with Audit Fields
# =============================================================================

class AuditedModel(models.Model):
    """
    Abstract base model providing common audit fields.
    version_nbr is bumped on every lifecycle transition.
    """
    create_by_id = models.CharField(max_length=50)
    create_dtime = models.DateTimeField(auto_now_add=True)
    update_by_id = models.CharField(max_length=50)
    update_dtime = models.DateTimeField(auto_now=True)
    version_nbr = models.IntegerField(default=1)

    class Meta:
        abstract = True


# =============================================================================
# Read-only configuration and master data
# =============================================================================

class StatusCatalogEntry(models.Model):
    """
    Company-scoped status catalog. The engine addresses entries by
    (category_id, sub_category_id); value is the display label and may contain
    a level placeholder.
    """
    status_id = models.AutoField(primary_key=True)
    company_id = models.IntegerField()  # FK to company table
    category_id = models.CharField(max_length=40)
    sub_category_id = models.CharField(max_length=40)
    value = models.CharField(max_length=120)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = 'status_catalog'
        constraints = [
            models.UniqueConstraint(
                fields=['company_id', 'category_id', 'sub_category_id'],
                name='uq_status_catalog_symbol',
            ),
        ]

    def __str__(self):
        return f"{self.category_id}/{self.sub_category_id}"


class WorkflowConfig(models.Model):
    """One approval level of a process; level 1 decides whether approval applies at all."""
    workflow_id = models.AutoField(primary_key=True)
    company_id = models.IntegerField()  # FK to company table
    process_name = models.CharField(max_length=60)
    level = models.PositiveSmallIntegerField(validators=[MinValueValidator(1)])
    role_id = models.CharField(max_length=50)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = 'workflow_config'
        ordering = ['process_name', 'level']
        constraints = [
            models.UniqueConstraint(
                fields=['company_id', 'process_name', 'level'],
                name='uq_workflow_config_level',
            ),
        ]

    def __str__(self):
        return f"{self.process_name} L{self.level} ({self.role_id})"


class Supplier(models.Model):
    STATUS_CHOICES = [
        ('A', 'Active'),
        ('I', 'Inactive'),
    ]

    supplier_id = models.AutoField(primary_key=True)
    company_id = models.IntegerField()  # FK to company table
    supplier_code = models.CharField(max_length=20)
    supplier_name = models.CharField(max_length=120)
    email_text = models.EmailField(max_length=100, null=True, blank=True)
    status_code = models.CharField(max_length=1, choices=STATUS_CHOICES, default='A')

    class Meta:
        db_table = 'supplier'
        ordering = ['supplier_name']
        constraints = [
            models.UniqueConstraint(fields=['company_id', 'supplier_code'], name='uq_supplier_code'),
        ]

    def __str__(self):
        return f"{self.supplier_code} - {self.supplier_name}"


class Store(models.Model):
    store_id = models.AutoField(primary_key=True)
    company_id = models.IntegerField()  # FK to company table
    store_name = models.CharField(max_length=120)

    class Meta:
        db_table = 'store'

    def __str__(self):
        return self.store_name


class Item(models.Model):
    item_id = models.AutoField(primary_key=True)
    company_id = models.IntegerField()  # FK to company table
    item_code = models.CharField(max_length=40)
    item_name = models.CharField(max_length=160)
    selling_price = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))

    class Meta:
        db_table = 'item'

    def __str__(self):
        return f"{self.item_code} - {self.item_name}"


# =============================================================================
# Purchase Orders
# =============================================================================

class PurchaseOrder(AuditedModel):
    purchase_order_id = models.AutoField(primary_key=True)
    po_number = models.CharField(max_length=60, unique=True)
    company_id = models.IntegerField()  # FK to company table
    order_date = models.DateField()
    supplier = models.ForeignKey(Supplier, on_delete=models.PROTECT, related_name='purchase_orders')
    store = models.ForeignKey(Store, on_delete=models.PROTECT, related_name='purchase_orders')
    status = models.ForeignKey(StatusCatalogEntry, on_delete=models.PROTECT, related_name='+')
    total_items = models.PositiveIntegerField(default=0)
    total_value = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))

    # Current pending approval level; null once approval is complete or bypassed.
    workflow = models.ForeignKey(
        WorkflowConfig, on_delete=models.PROTECT, null=True, blank=True, related_name='+'
    )
    next_level_role_id = models.CharField(max_length=50, null=True, blank=True)

    issued_by = models.CharField(max_length=50, null=True, blank=True)
    issued_on = models.DateTimeField(null=True, blank=True)
    received_by = models.CharField(max_length=50, null=True, blank=True)
    received_on = models.DateTimeField(null=True, blank=True)
    cancelled_by = models.CharField(max_length=50, null=True, blank=True)
    cancelled_on = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.TextField(null=True, blank=True)

    # At most one backorder per source order.
    backorder_reference = models.OneToOneField(
        'self', on_delete=models.PROTECT, null=True, blank=True, related_name='backorder'
    )
    remarks = models.TextField(null=True, blank=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = 'purchase_order'
        ordering = ['-create_dtime']
        indexes = [
            models.Index(fields=['company_id', 'order_date']),
            models.Index(fields=['status']),
        ]

    def __str__(self):
        return self.po_number


class PurchaseOrderItem(AuditedModel):
    purchase_order_item_id = models.AutoField(primary_key=True)
    purchase_order = models.ForeignKey(PurchaseOrder, on_delete=models.CASCADE, related_name='items')
    item = models.ForeignKey(Item, on_delete=models.PROTECT, related_name='+')
    order_qty = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    order_price = models.DecimalField(max_digits=15, decimal_places=2)
    received_qty = models.PositiveIntegerField(null=True, blank=True)

    class Meta:
        db_table = 'purchase_order_item'
        ordering = ['purchase_order', 'purchase_order_item_id']
        constraints = [
            models.UniqueConstraint(fields=['purchase_order', 'item'], name='uq_purchase_order_item'),
        ]

    def __str__(self):
        return f"{self.purchase_order_id} - Item {self.item_id}"


# =============================================================================
# Approval Trails (append-only)
# =============================================================================

class ApprovalStepBase(models.Model):
    """
    One entry of a document's approval trail. Rows are never updated or
    deleted; a new state is always a new row with the next sequence_no.
    """
    status = models.CharField(max_length=120)
    trail = models.CharField(max_length=20)
    role_id = models.CharField(max_length=50, null=True, blank=True)
    sequence_no = models.PositiveIntegerField()
    is_finalized = models.BooleanField(default=False)
    acted_by = models.CharField(max_length=50, null=True, blank=True)
    routed_to = models.CharField(max_length=50, null=True, blank=True)
    comment = models.TextField(null=True, blank=True)
    create_dtime = models.DateTimeField(auto_now_add=True)

    class Meta:
        abstract = True
        ordering = ['sequence_no']

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ConflictError("Approval steps are append-only.", code="approval_step_immutable")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ConflictError("Approval steps are append-only.", code="approval_step_immutable")


class PurchaseOrderApprovalStep(ApprovalStepBase):
    step_id = models.AutoField(primary_key=True)
    purchase_order = models.ForeignKey(
        PurchaseOrder, on_delete=models.CASCADE, related_name='approval_steps'
    )

    class Meta(ApprovalStepBase.Meta):
        db_table = 'purchase_order_approval_step'
        constraints = [
            models.UniqueConstraint(
                fields=['purchase_order', 'sequence_no'], name='uq_po_approval_step_seq'
            ),
        ]


# =============================================================================
# Purchase Returns
# =============================================================================

class ReturnRequest(AuditedModel):
    return_request_id = models.AutoField(primary_key=True)
    return_number = models.CharField(max_length=60, unique=True)
    company_id = models.IntegerField()  # FK to company table
    purchase_order = models.ForeignKey(PurchaseOrder, on_delete=models.PROTECT, related_name='returns')
    supplier = models.ForeignKey(Supplier, on_delete=models.PROTECT, related_name='return_requests')
    status = models.ForeignKey(StatusCatalogEntry, on_delete=models.PROTECT, related_name='+')
    workflow = models.ForeignKey(
        WorkflowConfig, on_delete=models.PROTECT, null=True, blank=True, related_name='+'
    )
    next_level_role_id = models.CharField(max_length=50, null=True, blank=True)
    return_date = models.DateField()
    total_items = models.PositiveIntegerField(default=0)
    total_value = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal('0.00'))
    remark = models.TextField(null=True, blank=True)
    attachment = models.JSONField(null=True, blank=True)  # file metadata only
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = 'purchase_return'
        ordering = ['-create_dtime']
        indexes = [
            models.Index(fields=['purchase_order']),
        ]

    def __str__(self):
        return self.return_number


class ReturnRequestItem(AuditedModel):
    return_request_item_id = models.AutoField(primary_key=True)
    return_request = models.ForeignKey(ReturnRequest, on_delete=models.CASCADE, related_name='items')
    item = models.ForeignKey(Item, on_delete=models.PROTECT, related_name='+')
    returned_qty = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    order_price = models.DecimalField(max_digits=15, decimal_places=2)
    return_reason = models.TextField()

    class Meta:
        db_table = 'purchase_return_item'
        ordering = ['return_request', 'return_request_item_id']
        constraints = [
            models.UniqueConstraint(fields=['return_request', 'item'], name='uq_purchase_return_item'),
        ]

    def __str__(self):
        return f"{self.return_request_id} - Item {self.item_id}"


class ReturnRequestApprovalStep(ApprovalStepBase):
    step_id = models.AutoField(primary_key=True)
    return_request = models.ForeignKey(
        ReturnRequest, on_delete=models.CASCADE, related_name='approval_steps'
    )

    class Meta(ApprovalStepBase.Meta):
        db_table = 'purchase_return_approval_step'
        constraints = [
            models.UniqueConstraint(
                fields=['return_request', 'sequence_no'], name='uq_return_approval_step_seq'
            ),
        ]


# =============================================================================
# Inventory and Numbering
# =============================================================================

class InventoryRecord(AuditedModel):
    """On-hand stock created by receiving and reduced by returns."""
    inventory_id = models.AutoField(primary_key=True)
    company_id = models.IntegerField()  # FK to company table
    item = models.ForeignKey(Item, on_delete=models.PROTECT, related_name='inventory_records')
    store = models.ForeignKey(Store, on_delete=models.PROTECT, related_name='inventory_records')
    purchase_order = models.ForeignKey(
        PurchaseOrder, on_delete=models.PROTECT, related_name='inventory_records'
    )
    item_qty = models.IntegerField()
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    selling_price = models.DecimalField(max_digits=12, decimal_places=2)
    stock_date = models.DateTimeField()

    class Meta:
        db_table = 'inventory'
        constraints = [
            models.UniqueConstraint(fields=['purchase_order', 'item'], name='uq_inventory_order_item'),
        ]

    def __str__(self):
        return f"Item {self.item_id} @ {self.store_id}: {self.item_qty}"


class SequenceCounter(models.Model):
    """Last number handed out per company, supplier, prefix and day."""
    sequence_counter_id = models.AutoField(primary_key=True)
    company_id = models.IntegerField()  # FK to company table
    supplier_code = models.CharField(max_length=20)
    prefix = models.CharField(max_length=10)
    sequence_date = models.DateField()
    last_value = models.PositiveIntegerField(default=0)
    update_dtime = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'sequence_counter'
        constraints = [
            models.UniqueConstraint(
                fields=['company_id', 'supplier_code', 'prefix', 'sequence_date'],
                name='uq_sequence_counter_key',
            ),
        ]

    def __str__(self):
        return f"{self.prefix}-{self.supplier_code}-{self.sequence_date}: {self.last_value}"
