"""
Batches — Models

Batch ("Charge") registry: a lot of one product sharing an expiry date and
origin. Product and supplier live in external master data; their display
fields are stored here as snapshots taken when the batch is created.

@file batches/models.py
"""

from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from core.models import BaseModel


class Batch(BaseModel):
    """
    A batch of a single product. ``product_id`` never changes after
    creation; expiry, slaughter date, frozen flag and supplier may be
    corrected administratively (changes are audited via signals).
    """

    product_id = models.UUIDField(
        _('product ID'),
        help_text=_('UUID of the product in master data; resolved in application layer'),
        db_index=True,
    )
    product_name = models.CharField(_('product name'), max_length=255, blank=True)
    product_code = models.CharField(_('product code'), max_length=100, blank=True)
    supplier_id = models.UUIDField(_('supplier ID'), null=True, blank=True, db_index=True)
    supplier_name = models.CharField(_('supplier name'), max_length=255, blank=True)
    expiry_date = models.DateField(_('expiry date'), db_index=True)
    slaughter_date = models.DateField(_('slaughter date'), null=True, blank=True)
    is_frozen = models.BooleanField(_('frozen'), default=False)

    class Meta:
        verbose_name = _('batch')
        verbose_name_plural = _('batches')
        ordering = ['expiry_date', 'created_at']
        indexes = [
            models.Index(fields=['product_id', 'expiry_date'], name='batch_product_expiry_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    models.Q(slaughter_date__isnull=True)
                    | models.Q(expiry_date__gte=models.F('slaughter_date'))
                ),
                name='batch_expiry_not_before_slaughter',
            ),
        ]

    def __str__(self):
        label = self.product_code or self.product_name or self.product_id
        return f'Batch {label} exp. {self.expiry_date}'

    @property
    def is_expired(self) -> bool:
        return self.expiry_date <= timezone.localdate()

    @property
    def days_to_expiry(self) -> int:
        return (self.expiry_date - timezone.localdate()).days

    def clean(self):
        super().clean()
        if self.expiry_date and self.slaughter_date:
            if self.slaughter_date > self.expiry_date:
                raise ValidationError({
                    'slaughter_date': _('Slaughter date must not be after the expiry date.'),
                })
