"""
Batches — Signals

Audit logging for Batch creation and administrative corrections.

@file batches/signals.py
"""

from django.db.models.signals import post_save, pre_save
from django.dispatch import receiver

from core.constants import AUDIT_ACTION_CREATE, AUDIT_ACTION_UPDATE
from core.services import AuditService

from .models import Batch

AUDITED_FIELDS = (
    'product_id', 'supplier_id', 'supplier_name',
    'expiry_date', 'slaughter_date', 'is_frozen',
)

_batch_pre: dict = {}


@receiver(pre_save, sender=Batch)
def batch_pre_save(sender, instance, **kwargs):
    if instance._state.adding:
        return
    try:
        old = Batch.objects.get(pk=instance.pk)
    except Batch.DoesNotExist:
        return
    _batch_pre[str(instance.pk)] = AuditService.snapshot(old, fields=AUDITED_FIELDS)


@receiver(post_save, sender=Batch)
def batch_post_save(sender, instance, created, **kwargs):
    action = AUDIT_ACTION_CREATE if created else AUDIT_ACTION_UPDATE
    old = _batch_pre.pop(str(instance.pk), None)
    new = AuditService.snapshot(instance, fields=AUDITED_FIELDS)
    if not created and old == new:
        return
    AuditService.log(
        actor=getattr(instance, '_current_user', None),
        action=action,
        model_name='Batch',
        object_id=str(instance.pk),
        old_values=old,
        new_values=new,
    )
