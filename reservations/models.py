"""
Reservations — Models

Demand holds for a product against a future delivery date and order.
Reservations are the source of truth for demand; they never touch the
movement ledger or the stock aggregate.

@file reservations/models.py
"""

from django.db import models
from django.utils.translation import gettext_lazy as _

from core.models import BaseModel, quantity_field


class Reservation(BaseModel):
    """
    State machine: ACTIVE → FULFILLED (remaining reaches zero) or
    ACTIVE → CANCELLED. Terminal states are final.
    """

    class Status(models.TextChoices):
        ACTIVE = 'ACTIVE', _('Active')
        FULFILLED = 'FULFILLED', _('Fulfilled')
        CANCELLED = 'CANCELLED', _('Cancelled')

    product_id = models.UUIDField(_('product ID'), db_index=True)
    product_name = models.CharField(_('product name'), max_length=255, blank=True)
    product_code = models.CharField(_('product code'), max_length=100, blank=True)
    batch = models.ForeignKey(
        'batches.Batch',
        null=True, blank=True,
        on_delete=models.PROTECT,
        related_name='reservations',
        verbose_name=_('batch'),
    )
    order_id = models.UUIDField(_('order ID'), db_index=True)
    delivery_date = models.DateField(_('delivery date'))
    quantity = quantity_field(_('remaining quantity'))
    original_quantity = quantity_field(_('original quantity'))
    status = models.CharField(
        _('status'), max_length=12,
        choices=Status.choices, default=Status.ACTIVE,
    )

    class Meta:
        verbose_name = _('reservation')
        verbose_name_plural = _('reservations')
        ordering = ['delivery_date', 'created_at']
        indexes = [
            models.Index(fields=['delivery_date', 'status'], name='reservation_delivery_idx'),
            models.Index(
                fields=['product_id', 'delivery_date', 'status'],
                name='reservation_product_idx',
            ),
        ]

    def __str__(self):
        return f'Reservation {self.product_code or self.product_id} x{self.quantity} for {self.delivery_date} ({self.status})'

    @property
    def is_terminal(self) -> bool:
        return self.status != self.Status.ACTIVE

    @property
    def fulfilled_quantity(self):
        return self.original_quantity - self.quantity
