"""
Stock — Models

Ledger-based stock tracking. Every change to stock is a StockMovement
(INSERT ONLY, never updated or deleted). StockAggregate is a materialised
per-(product, batch, zone) view of the ledger, kept in step with it by
stock.ledger.UnitOfWork. InboundDelivery holds announced inbound goods.

@file stock/models.py
"""

import uuid

from django.conf import settings
from django.db import models
from django.utils.translation import gettext_lazy as _

from core.models import BaseModel, quantity_field


class StorageZone(models.TextChoices):
    FROZEN = 'TK', _('Frozen (TK)')
    NON_FROZEN = 'NON_TK', _('Non-frozen')


class MovementType(models.TextChoices):
    GOODS_IN = 'GOODS_IN', _('Goods in')
    GOODS_OUT = 'GOODS_OUT', _('Goods out')
    RESERVE = 'RESERVE', _('Reserve')
    UNRESERVE = 'UNRESERVE', _('Unreserve')
    PICK = 'PICK', _('Pick')
    WRITE_OFF = 'WRITE_OFF', _('Write-off')
    STOCK_CORRECTION = 'STOCK_CORRECTION', _('Stock correction')
    TRANSFER_IN = 'TRANSFER_IN', _('Transfer in')
    TRANSFER_OUT = 'TRANSFER_OUT', _('Transfer out')
    RETURN_FROM_CUSTOMER = 'RETURN_FROM_CUSTOMER', _('Return from customer')
    RETURN_TO_SUPPLIER = 'RETURN_TO_SUPPLIER', _('Return to supplier')
    INBOUND_RECORDED = 'INBOUND_RECORDED', _('Inbound recorded')
    INBOUND_COMPLETED = 'INBOUND_COMPLETED', _('Inbound completed')


class WriteOffReason(models.TextChoices):
    # Labels are written into movement notes verbatim.
    EXPIRED = 'EXPIRED', 'Expired'
    DAMAGED = 'DAMAGED', 'Damaged'
    SPOILAGE = 'SPOILAGE', 'Spoilage'
    CUSTOMER_REJECTION = 'CUSTOMER_REJECTION', 'Customer rejection'
    OTHER = 'OTHER', 'Other'


AVAILABLE = 'available'
RESERVED = 'reserved'
IN_TRANSIT = 'in_transit'
AGGREGATE_FIELDS = (AVAILABLE, RESERVED, IN_TRANSIT)

# movement type -> (aggregate field, sign). Sign 0 means either sign is allowed.
MOVEMENT_EFFECTS = {
    MovementType.GOODS_IN: (AVAILABLE, 1),
    MovementType.TRANSFER_IN: (AVAILABLE, 1),
    MovementType.RETURN_FROM_CUSTOMER: (AVAILABLE, 1),
    MovementType.GOODS_OUT: (AVAILABLE, -1),
    MovementType.PICK: (AVAILABLE, -1),
    MovementType.WRITE_OFF: (AVAILABLE, -1),
    MovementType.TRANSFER_OUT: (AVAILABLE, -1),
    MovementType.RETURN_TO_SUPPLIER: (AVAILABLE, -1),
    MovementType.STOCK_CORRECTION: (AVAILABLE, 0),
    MovementType.RESERVE: (RESERVED, 1),
    MovementType.UNRESERVE: (RESERVED, -1),
    MovementType.INBOUND_RECORDED: (IN_TRANSIT, 1),
    MovementType.INBOUND_COMPLETED: (IN_TRANSIT, -1),
}


def types_feeding(field: str) -> list[str]:
    return [t for t, (f, _sign) in MOVEMENT_EFFECTS.items() if f == field]


class StockMovement(models.Model):
    """
    A single immutable stock movement (insert only).

    ``quantity`` is signed: its sign follows MOVEMENT_EFFECTS for the type.
    Product display fields and batch attributes are snapshots taken when
    the movement was written.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    timestamp = models.DateTimeField(_('timestamp'), auto_now_add=True, db_index=True)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True, blank=True,
        on_delete=models.SET_NULL,
        related_name='+',
        verbose_name=_('actor'),
    )
    movement_type = models.CharField(
        _('movement type'), max_length=24,
        choices=MovementType.choices, db_index=True,
    )
    product_id = models.UUIDField(_('product ID'), db_index=True)
    product_name = models.CharField(_('product name'), max_length=255, blank=True)
    product_code = models.CharField(_('product code'), max_length=100, blank=True)
    batch = models.ForeignKey(
        'batches.Batch',
        null=True, blank=True,
        on_delete=models.PROTECT,
        related_name='movements',
        verbose_name=_('batch'),
    )
    zone = models.CharField(_('zone'), max_length=8, choices=StorageZone.choices)
    quantity = quantity_field(_('quantity'))
    order_id = models.UUIDField(_('order ID'), null=True, blank=True, db_index=True)
    note = models.TextField(_('note'), blank=True)
    expiry_date = models.DateField(_('expiry date'), null=True, blank=True)
    slaughter_date = models.DateField(_('slaughter date'), null=True, blank=True)
    is_frozen = models.BooleanField(_('frozen'), null=True, blank=True)
    reference_movement = models.ForeignKey(
        'self',
        null=True, blank=True,
        on_delete=models.PROTECT,
        related_name='compensations',
        verbose_name=_('reverses movement'),
    )
    # No updated_at: immutable record.

    class Meta:
        verbose_name = _('stock movement')
        verbose_name_plural = _('stock movements')
        ordering = ['-timestamp']
        indexes = [
            models.Index(fields=['product_id', 'timestamp'], name='movement_product_ts_idx'),
            models.Index(fields=['product_id', 'batch', 'zone'], name='movement_key_idx'),
            models.Index(fields=['movement_type', 'timestamp'], name='movement_type_ts_idx'),
        ]

    def __str__(self):
        return f'{self.movement_type} {self.quantity} product={self.product_id} batch={self.batch_id} zone={self.zone}'

    @property
    def aggregate_field(self) -> str:
        return MOVEMENT_EFFECTS[self.movement_type][0]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise NotImplementedError('StockMovement is insert-only; updates are not allowed.')
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise NotImplementedError('StockMovement records cannot be deleted.')


class StockAggregate(models.Model):
    """
    Materialised totals per (product_id, batch, zone). Only written through
    AggregateService.apply_delta; never deleted.
    """

    product_id = models.UUIDField(_('product ID'), db_index=True)
    product_name = models.CharField(_('product name'), max_length=255, blank=True)
    product_code = models.CharField(_('product code'), max_length=100, blank=True)
    batch = models.ForeignKey(
        'batches.Batch',
        null=True, blank=True,
        on_delete=models.PROTECT,
        related_name='aggregates',
        verbose_name=_('batch'),
    )
    zone = models.CharField(_('zone'), max_length=8, choices=StorageZone.choices)
    available = quantity_field(_('available'), default=0)
    reserved = quantity_field(_('reserved'), default=0)
    in_transit = quantity_field(_('in transit'), default=0)
    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('stock aggregate')
        verbose_name_plural = _('stock aggregates')
        ordering = ['product_id', 'zone']
        constraints = [
            models.UniqueConstraint(
                fields=['product_id', 'batch', 'zone'],
                condition=models.Q(batch__isnull=False),
                name='aggregate_unique_batched_key',
            ),
            models.UniqueConstraint(
                fields=['product_id', 'zone'],
                condition=models.Q(batch__isnull=True),
                name='aggregate_unique_unbatched_key',
            ),
        ]

    def __str__(self):
        return (
            f'{self.product_code or self.product_id} batch={self.batch_id} {self.zone}: '
            f'available={self.available} reserved={self.reserved} in_transit={self.in_transit}'
        )

    @property
    def key(self) -> tuple:
        return (self.product_id, self.batch_id, self.zone)

    def totals(self) -> dict:
        return {field: getattr(self, field) for field in AGGREGATE_FIELDS}


class InboundDelivery(BaseModel):
    """Goods announced by a supplier but not yet (fully) received."""

    class Status(models.TextChoices):
        ANNOUNCED = 'ANNOUNCED', _('Announced')
        PARTIALLY_RECEIVED = 'PARTIALLY_RECEIVED', _('Partially received')
        COMPLETED = 'COMPLETED', _('Completed')
        CANCELLED = 'CANCELLED', _('Cancelled')

    OPEN_STATUSES = (Status.ANNOUNCED, Status.PARTIALLY_RECEIVED)

    product_id = models.UUIDField(_('product ID'), db_index=True)
    product_name = models.CharField(_('product name'), max_length=255, blank=True)
    product_code = models.CharField(_('product code'), max_length=100, blank=True)
    supplier_id = models.UUIDField(_('supplier ID'), null=True, blank=True)
    supplier_name = models.CharField(_('supplier name'), max_length=255, blank=True)
    batch = models.ForeignKey(
        'batches.Batch',
        null=True, blank=True,
        on_delete=models.PROTECT,
        related_name='inbound_deliveries',
        verbose_name=_('batch'),
    )
    zone = models.CharField(_('zone'), max_length=8, choices=StorageZone.choices)
    expected_on = models.DateField(_('expected on'), db_index=True)
    quantity = quantity_field(_('announced quantity'))
    quantity_received = quantity_field(_('received quantity'), default=0)
    status = models.CharField(
        _('status'), max_length=20,
        choices=Status.choices, default=Status.ANNOUNCED, db_index=True,
    )

    class Meta:
        verbose_name = _('inbound delivery')
        verbose_name_plural = _('inbound deliveries')
        ordering = ['expected_on', 'created_at']
        indexes = [
            models.Index(fields=['product_id', 'status'], name='inbound_product_status_idx'),
        ]

    def __str__(self):
        return f'Inbound {self.product_code or self.product_id} {self.quantity} on {self.expected_on} ({self.status})'

    @property
    def remaining(self):
        return max(self.quantity - self.quantity_received, 0)

    @property
    def is_open(self) -> bool:
        return self.status in self.OPEN_STATUSES
