"""
Batches — Service Layer

Batch registry: creation with master-data snapshots, lookup with
product cross-checks, administrative correction of descriptive fields,
filtered listing and the batch drill-down view.

Batches are never deleted here; movements, aggregates and reservations
reference them with on_delete=PROTECT.

@file batches/services.py
"""

import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import Q

from core.exceptions import BusinessRuleViolation, CrossReferenceError, ResourceNotFoundError
from core.masterdata import get_product, get_supplier
from core.pagination import paginate
from core.parsing import to_date, to_flag, to_uuid

from .models import Batch

logger = logging.getLogger('freshstock')

CORRECTABLE_FIELDS = {'expiry_date', 'slaughter_date', 'is_frozen', 'supplier_id'}


def _full_clean(batch: Batch) -> None:
    try:
        batch.full_clean()
    except DjangoValidationError as exc:
        raise BusinessRuleViolation(
            detail=exc.message_dict, context={'batch_id': str(batch.pk)},
        ) from exc


class BatchService:
    """Batch (Charge) lifecycle."""

    @staticmethod
    @transaction.atomic
    def create_batch(
        *,
        product_id,
        expiry_date,
        is_frozen: bool = False,
        slaughter_date=None,
        supplier_id=None,
        actor=None,
        product: dict | None = None,
    ) -> Batch:
        """
        Create a batch. ``product`` may carry display fields already
        resolved by the caller's unit of work; otherwise master data is
        read here.
        """
        product_id = to_uuid(product_id, field_name='product_id')
        if expiry_date is None:
            raise BusinessRuleViolation(
                detail='expiry_date is required.', context={'product_id': str(product_id)},
            )
        if product is None:
            product = get_product(product_id)
        if supplier_id:
            supplier_id = to_uuid(supplier_id, field_name='supplier_id')
        supplier = get_supplier(supplier_id)

        batch = Batch(
            product_id=product_id,
            product_name=product['name'],
            product_code=product['code'],
            supplier_id=supplier_id or None,
            supplier_name=supplier['name'],
            expiry_date=to_date(expiry_date, field_name='expiry_date'),
            slaughter_date=(
                to_date(slaughter_date, field_name='slaughter_date') if slaughter_date else None
            ),
            is_frozen=to_flag(is_frozen, field_name='is_frozen'),
            created_by=actor,
        )
        _full_clean(batch)
        batch._current_user = actor
        batch.save()
        logger.info(
            'Batch %s created for product %s (expiry=%s frozen=%s)',
            batch.pk, product_id, batch.expiry_date, batch.is_frozen,
        )
        return batch

    @staticmethod
    def get_batch(batch_id, *, lock: bool = False) -> Batch:
        batch_id = to_uuid(batch_id, field_name='batch_id')
        qs = Batch.objects.select_for_update() if lock else Batch.objects.all()
        try:
            return qs.get(pk=batch_id)
        except Batch.DoesNotExist:
            raise ResourceNotFoundError(
                detail='Batch not found.', context={'batch_id': str(batch_id)},
            )

    @staticmethod
    def get_batch_for_product(batch_id, product_id, *, role: str = 'batch') -> Batch:
        """Load a batch and check that it belongs to ``product_id``."""
        batch = BatchService.get_batch(batch_id)
        product_id = to_uuid(product_id, field_name='product_id')
        if batch.product_id != product_id:
            raise CrossReferenceError(
                detail=f'The {role} belongs to a different product.',
                context={
                    'batch_id': str(batch.pk),
                    'batch_product_id': str(batch.product_id),
                    'product_id': str(product_id),
                },
            )
        return batch

    @staticmethod
    @transaction.atomic
    def update_batch(*, batch_id, actor=None, **fields) -> Batch:
        """Correct descriptive fields. The owning product is immutable."""
        batch = BatchService.get_batch(batch_id, lock=True)

        if 'product_id' in fields and to_uuid(fields['product_id']) != batch.product_id:
            raise BusinessRuleViolation(
                detail='A batch cannot be moved to another product.',
                context={'batch_id': str(batch.pk), 'product_id': str(fields['product_id'])},
            )
        fields.pop('product_id', None)
        unknown = set(fields) - CORRECTABLE_FIELDS
        if unknown:
            raise BusinessRuleViolation(
                detail=f'Cannot modify batch field(s): {", ".join(sorted(unknown))}.',
                context={'batch_id': str(batch.pk)},
            )

        if 'expiry_date' in fields:
            batch.expiry_date = to_date(fields['expiry_date'], field_name='expiry_date')
        if 'slaughter_date' in fields:
            value = fields['slaughter_date']
            batch.slaughter_date = to_date(value, field_name='slaughter_date') if value else None
        if 'is_frozen' in fields:
            batch.is_frozen = to_flag(fields['is_frozen'], field_name='is_frozen')
        if 'supplier_id' in fields:
            supplier_id = fields['supplier_id']
            supplier_id = to_uuid(supplier_id, field_name='supplier_id') if supplier_id else None
            batch.supplier_id = supplier_id
            batch.supplier_name = get_supplier(supplier_id)['name']

        batch.updated_by = actor
        _full_clean(batch)
        batch._current_user = actor
        batch.save()
        logger.info('Batch %s corrected by %s: %s', batch.pk, actor, sorted(fields))
        return batch

    @staticmethod
    def list_batches(
        *,
        product_id=None,
        is_frozen: bool | None = None,
        expiry_from=None,
        expiry_to=None,
        q: str | None = None,
        page=1,
        page_size: int | None = None,
    ):
        qs = Batch.objects.all()
        if product_id:
            qs = qs.filter(product_id=to_uuid(product_id, field_name='product_id'))
        if is_frozen is not None:
            qs = qs.filter(is_frozen=is_frozen)
        if expiry_from:
            qs = qs.filter(expiry_date__gte=to_date(expiry_from, field_name='expiry_from'))
        if expiry_to:
            qs = qs.filter(expiry_date__lte=to_date(expiry_to, field_name='expiry_to'))
        if q:
            q = q.strip()
            qs = qs.filter(
                Q(product_name__icontains=q)
                | Q(product_code__icontains=q)
                | Q(supplier_name__icontains=q)
            )
        return paginate(qs.order_by('expiry_date', 'created_at'), page=page, page_size=page_size)

    @staticmethod
    def get_batch_view(batch_id) -> dict:
        """Batch master record with its movements (newest first) and reservations."""
        from reservations.models import Reservation
        from stock.models import StockMovement

        batch = BatchService.get_batch(batch_id)
        return {
            'batch': batch,
            'movements': list(
                StockMovement.objects.filter(batch=batch).order_by('-timestamp', '-id')
            ),
            'reservations': list(
                Reservation.objects.filter(batch=batch).order_by('delivery_date', 'created_at')
            ),
        }
