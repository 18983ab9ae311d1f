"""
Stock — Ledger & Aggregate

LedgerService appends immutable movements and recomputes totals from them.
AggregateService keeps the materialised StockAggregate rows. UnitOfWork
binds the two: every movement recorded through it applies its aggregate
delta in the same transaction, so an aggregate field always equals the
signed ledger sum of the movement types feeding it.

@file stock/ledger.py
"""

import csv
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal

from django.conf import settings
from django.db import OperationalError, connection, transaction
from django.db.transaction import TransactionManagementError
from django.db.models import Case, DecimalField, F, Q, Sum, Value, When
from django.utils import timezone

from core.constants import QUANTITY_DECIMAL_PLACES, QUANTITY_MAX_DIGITS
from core.exceptions import (
    BusinessRuleViolation,
    ConcurrencyError,
    CrossReferenceError,
    ResourceNotFoundError,
)
from core.masterdata import get_product
from core.pagination import paginate
from core.parsing import to_date, to_quantity, to_uuid

from .models import (
    AGGREGATE_FIELDS,
    MOVEMENT_EFFECTS,
    StockAggregate,
    StockMovement,
    StorageZone,
    types_feeding,
)

logger = logging.getLogger('freshstock')

EXPORT_COLUMNS = (
    'id',
    'timestamp',
    'movement_type',
    'product_id',
    'product_name',
    'product_code',
    'batch_id',
    'zone',
    'quantity',
    'order_id',
    'expiry_date',
    'slaughter_date',
    'is_frozen',
    'note',
)

ZERO = Decimal('0.000')


def _require_transaction(what: str) -> None:
    if not connection.in_atomic_block:
        raise TransactionManagementError(f'{what} must run inside transaction.atomic().')


def _signed_sum(movement_types) -> Sum:
    """SUM(quantity) over the given movement types, 0 for all others."""
    return Sum(
        Case(
            When(movement_type__in=list(movement_types), then='quantity'),
            default=Value(ZERO),
            output_field=DecimalField(
                max_digits=QUANTITY_MAX_DIGITS, decimal_places=QUANTITY_DECIMAL_PLACES,
            ),
        ),
    )


def _totals_annotations() -> dict:
    return {field: _signed_sum(types_feeding(field)) for field in AGGREGATE_FIELDS}


def _clean_totals(row: dict) -> dict:
    return {field: row.get(field) or ZERO for field in AGGREGATE_FIELDS}


def filter_timestamp_range(qs, date_from=None, date_to=None, field: str = 'timestamp'):
    """
    Inclusive range filter. Plain dates cover the whole calendar day;
    datetimes are compared exactly.
    """
    if date_from:
        if isinstance(date_from, datetime):
            qs = qs.filter(**{f'{field}__gte': date_from})
        else:
            qs = qs.filter(**{f'{field}__date__gte': to_date(date_from, field_name='date_from')})
    if date_to:
        if isinstance(date_to, datetime):
            qs = qs.filter(**{f'{field}__lte': date_to})
        else:
            qs = qs.filter(**{f'{field}__date__lte': to_date(date_to, field_name='date_to')})
    return qs


def validate_zone(zone) -> str:
    if zone not in StorageZone.values:
        raise BusinessRuleViolation(
            detail=f'Unknown storage zone: {zone}.',
            context={'zone': zone, 'allowed': list(StorageZone.values)},
        )
    return zone


# ---------------------------------------------------------------------------
# Movement ledger
# ---------------------------------------------------------------------------

class LedgerService:
    """Append-only movement ledger; the source of truth for all stock."""

    @staticmethod
    def append(
        *,
        movement_type: str,
        product_id,
        zone: str,
        quantity,
        batch=None,
        actor=None,
        order_id=None,
        note: str = '',
        product: dict | None = None,
        reference_movement: StockMovement | None = None,
    ) -> StockMovement:
        """
        Insert one movement. ``quantity`` is signed and must match the sign
        the movement type implies. Use UnitOfWork.record to keep the
        aggregate in step; calling this directly leaves the aggregate behind.
        """
        _require_transaction('LedgerService.append')
        if movement_type not in MOVEMENT_EFFECTS:
            raise BusinessRuleViolation(
                detail=f'Unknown movement type: {movement_type}.',
                context={'movement_type': movement_type},
            )
        validate_zone(zone)
        product_id = to_uuid(product_id, field_name='product_id')
        quantity = to_quantity(quantity, allow_negative=True)

        _field, sign = MOVEMENT_EFFECTS[movement_type]
        if sign and (quantity > 0) != (sign > 0):
            raise BusinessRuleViolation(
                detail=f'{movement_type} requires a {"positive" if sign > 0 else "negative"} quantity.',
                context={'movement_type': movement_type, 'quantity': str(quantity)},
            )
        if batch is not None and batch.product_id != product_id:
            raise CrossReferenceError(
                detail='The batch belongs to a different product.',
                context={
                    'batch_id': str(batch.pk),
                    'batch_product_id': str(batch.product_id),
                    'product_id': str(product_id),
                },
            )
        if product is None:
            product = get_product(product_id)

        movement = StockMovement(
            movement_type=movement_type,
            product_id=product_id,
            product_name=product['name'],
            product_code=product['code'],
            batch=batch,
            zone=zone,
            quantity=quantity,
            order_id=to_uuid(order_id, field_name='order_id') if order_id else None,
            note=note or '',
            expiry_date=batch.expiry_date if batch else None,
            slaughter_date=batch.slaughter_date if batch else None,
            is_frozen=batch.is_frozen if batch else None,
            actor=actor,
            reference_movement=reference_movement,
        )
        movement.save()
        logger.debug(
            'Movement %s %s qty=%s product=%s batch=%s zone=%s',
            movement.pk, movement_type, quantity, product_id, movement.batch_id, zone,
        )
        return movement

    @staticmethod
    def sum_by_key(product_id, batch_id, zone, movement_types=None) -> Decimal:
        """Signed sum of ledger quantities for one key, optionally by type."""
        qs = StockMovement.objects.filter(product_id=product_id, batch_id=batch_id, zone=zone)
        if movement_types is not None:
            qs = qs.filter(movement_type__in=list(movement_types))
        total = qs.aggregate(total=Sum('quantity'))['total']
        return total if total is not None else ZERO

    @staticmethod
    def derived_totals(product_id, batch_id, zone) -> dict:
        """Recompute available / reserved / in_transit of one key from the ledger."""
        row = StockMovement.objects.filter(
            product_id=product_id, batch_id=batch_id, zone=zone,
        ).aggregate(**_totals_annotations())
        return _clean_totals(row)

    @staticmethod
    def balance_as_of(until=None, *, product_id=None, batch_id=None) -> list[dict]:
        """
        Per-key totals reconstructed from movements up to and including
        ``until`` (a date covers the whole day). None means now.
        """
        qs = StockMovement.objects.all()
        if until is not None:
            qs = filter_timestamp_range(qs, date_to=until)
        if product_id:
            qs = qs.filter(product_id=to_uuid(product_id, field_name='product_id'))
        if batch_id:
            qs = qs.filter(batch_id=to_uuid(batch_id, field_name='batch_id'))
        rows = (
            qs.order_by()
            .values('product_id', 'batch_id', 'zone')
            .annotate(**_totals_annotations())
            .order_by('product_id', 'batch_id', 'zone')
        )
        return [
            {
                'product_id': row['product_id'],
                'batch_id': row['batch_id'],
                'zone': row['zone'],
                **_clean_totals(row),
            }
            for row in rows
        ]

    @staticmethod
    def get_movement(movement_id, *, lock: bool = False) -> StockMovement:
        movement_id = to_uuid(movement_id, field_name='movement_id')
        qs = StockMovement.objects.select_for_update() if lock else StockMovement.objects.all()
        try:
            return qs.get(pk=movement_id)
        except StockMovement.DoesNotExist:
            raise ResourceNotFoundError(
                detail='Movement not found.', context={'movement_id': str(movement_id)},
            )

    @staticmethod
    def list_movements(
        *,
        date_from=None,
        date_to=None,
        movement_types=None,
        product_id=None,
        batch_id=None,
        zone: str | None = None,
        order_id=None,
        q: str | None = None,
        page=1,
        page_size: int | None = None,
    ):
        """Filtered movement history, newest first."""
        qs = LedgerService._filtered_movements(
            date_from=date_from,
            date_to=date_to,
            movement_types=movement_types,
            product_id=product_id,
            batch_id=batch_id,
            zone=zone,
            order_id=order_id,
            q=q,
        )
        return paginate(qs, page=page, page_size=page_size)

    @staticmethod
    def export_movements_csv(stream, **filters) -> int:
        """
        Write the filtered movement history to ``stream`` as ``;``-separated
        CSV with a header row. Accepts the filters of ``list_movements``
        without pagination. Returns the number of data rows written.
        """
        qs = LedgerService._filtered_movements(**filters)
        writer = csv.writer(stream, delimiter=';', lineterminator='\n')
        writer.writerow(EXPORT_COLUMNS)
        rows = 0
        for movement in qs.iterator():
            writer.writerow([
                movement.id,
                movement.timestamp.isoformat(),
                movement.movement_type,
                movement.product_id,
                movement.product_name,
                movement.product_code,
                movement.batch_id or '',
                movement.zone,
                movement.quantity,
                movement.order_id or '',
                movement.expiry_date.isoformat() if movement.expiry_date else '',
                movement.slaughter_date.isoformat() if movement.slaughter_date else '',
                '' if movement.is_frozen is None else str(movement.is_frozen).lower(),
                movement.note,
            ])
            rows += 1
        logger.info('Exported %d movement(s) to CSV', rows)
        return rows

    @staticmethod
    def _filtered_movements(
        *,
        date_from=None,
        date_to=None,
        movement_types=None,
        product_id=None,
        batch_id=None,
        zone: str | None = None,
        order_id=None,
        q: str | None = None,
    ):
        qs = filter_timestamp_range(StockMovement.objects.all(), date_from, date_to)
        if movement_types:
            if isinstance(movement_types, str):
                movement_types = [movement_types]
            qs = qs.filter(movement_type__in=list(movement_types))
        if product_id:
            qs = qs.filter(product_id=to_uuid(product_id, field_name='product_id'))
        if batch_id:
            qs = qs.filter(batch_id=to_uuid(batch_id, field_name='batch_id'))
        if zone:
            qs = qs.filter(zone=validate_zone(zone))
        if order_id:
            qs = qs.filter(order_id=to_uuid(order_id, field_name='order_id'))
        if q:
            q = q.strip()
            qs = qs.filter(
                Q(product_name__icontains=q)
                | Q(product_code__icontains=q)
                | Q(note__icontains=q)
            )
        return qs.select_related('batch', 'actor').order_by('-timestamp', '-id')


# ---------------------------------------------------------------------------
# Stock aggregate
# ---------------------------------------------------------------------------

class AggregateService:
    """Materialised per-key totals."""

    @staticmethod
    def apply_delta(
        *,
        product_id,
        batch_id,
        zone: str,
        available=0,
        reserved=0,
        in_transit=0,
        product: dict | None = None,
    ) -> StockAggregate:
        """
        Upsert the key with zero defaults, then add the deltas with a single
        UPDATE ... SET f = f + delta. Increments commute under concurrency.
        """
        _require_transaction('AggregateService.apply_delta')
        validate_zone(zone)
        product_id = to_uuid(product_id, field_name='product_id')
        if product is None:
            product = get_product(product_id)

        aggregate, created = StockAggregate.objects.get_or_create(
            product_id=product_id,
            batch_id=batch_id,
            zone=zone,
            defaults={'product_name': product['name'], 'product_code': product['code']},
        )
        deltas = {
            field: Decimal(str(value))
            for field, value in zip(AGGREGATE_FIELDS, (available, reserved, in_transit))
            if value
        }
        if deltas:
            StockAggregate.objects.filter(pk=aggregate.pk).update(
                updated_at=timezone.now(),
                **{field: F(field) + delta for field, delta in deltas.items()},
            )
            aggregate.refresh_from_db()
        if created:
            logger.debug('Aggregate created for %s/%s/%s', product_id, batch_id, zone)
        return aggregate

    @staticmethod
    def get_aggregate(product_id, batch_id, zone) -> StockAggregate | None:
        return StockAggregate.objects.filter(
            product_id=product_id, batch_id=batch_id, zone=zone,
        ).first()

    @staticmethod
    def list_stock(
        *,
        product_id=None,
        batch_id=None,
        zone: str | None = None,
        q: str | None = None,
        critical_only: bool = False,
        threshold_days: int | None = None,
        today=None,
        include_empty: bool = False,
        page=1,
        page_size: int | None = None,
    ):
        """
        Stock overview, one row per aggregate key, soonest expiry first.
        Rows carry ``warning``: EXPIRED, NEAR or None. ``critical_only``
        keeps batches expiring within ``threshold_days``.
        """
        today = to_date(today) if today else timezone.localdate()
        if threshold_days is None:
            threshold_days = settings.INVENTORY_EXPIRY_THRESHOLD_DAYS
        horizon = today + timedelta(days=int(threshold_days))

        qs = StockAggregate.objects.select_related('batch')
        if product_id:
            qs = qs.filter(product_id=to_uuid(product_id, field_name='product_id'))
        if batch_id:
            qs = qs.filter(batch_id=to_uuid(batch_id, field_name='batch_id'))
        if zone:
            qs = qs.filter(zone=validate_zone(zone))
        if q:
            q = q.strip()
            qs = qs.filter(Q(product_name__icontains=q) | Q(product_code__icontains=q))
        if critical_only:
            qs = qs.filter(batch__expiry_date__lte=horizon)
        if not include_empty:
            qs = qs.exclude(available=0, reserved=0, in_transit=0)
        qs = qs.order_by(F('batch__expiry_date').asc(nulls_last=True), 'product_name', 'zone', 'id')

        result = paginate(qs, page=page, page_size=page_size)
        result.object_list = [_stock_row(agg, today, horizon) for agg in result.object_list]
        return result

    @staticmethod
    def find_drift(product_id=None) -> list[dict]:
        """Keys whose aggregate differs from the totals derived from the ledger."""
        ledger = {
            (row['product_id'], row['batch_id'], row['zone']): _clean_totals(row)
            for row in LedgerService.balance_as_of(None, product_id=product_id)
        }
        aggregates = StockAggregate.objects.all()
        if product_id:
            aggregates = aggregates.filter(product_id=to_uuid(product_id, field_name='product_id'))
        stored = {agg.key: agg.totals() for agg in aggregates}

        zero = dict.fromkeys(AGGREGATE_FIELDS, ZERO)
        drift = []
        for key in sorted(set(ledger) | set(stored), key=lambda k: (str(k[0]), str(k[1]), k[2])):
            expected = ledger.get(key, zero)
            actual = stored.get(key, zero)
            if expected != actual:
                drift.append({
                    'product_id': key[0],
                    'batch_id': key[1],
                    'zone': key[2],
                    'ledger': expected,
                    'aggregate': actual,
                })
        return drift


def _stock_row(aggregate: StockAggregate, today, horizon) -> dict:
    batch = aggregate.batch
    warning = None
    if batch is not None:
        if batch.expiry_date <= today:
            warning = 'EXPIRED'
        elif batch.expiry_date <= horizon:
            warning = 'NEAR'
    return {
        'product_id': aggregate.product_id,
        'product_name': aggregate.product_name,
        'product_code': aggregate.product_code,
        'batch_id': aggregate.batch_id,
        'zone': aggregate.zone,
        'available': aggregate.available,
        'reserved': aggregate.reserved,
        'in_transit': aggregate.in_transit,
        'expiry_date': batch.expiry_date if batch else None,
        'is_frozen': batch.is_frozen if batch else None,
        'warning': warning,
    }


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------

class UnitOfWork:
    """
    Collects the movements of one operation. ``record`` appends a movement
    and applies its aggregate delta; both land in the same transaction.
    """

    def __init__(self, operation: str, actor=None):
        self.operation = operation
        self.actor = actor
        self.movements: list[StockMovement] = []
        self._products: dict = {}

    def product(self, product_id) -> dict:
        """Product display fields, resolved once per unit."""
        product_id = to_uuid(product_id, field_name='product_id')
        if product_id not in self._products:
            self._products[product_id] = get_product(product_id)
        return self._products[product_id]

    def use_snapshot(self, product_id, *, name: str, code: str) -> None:
        """Reuse display fields already stored on a record instead of a lookup."""
        self._products.setdefault(to_uuid(product_id), {'name': name, 'code': code})

    def record(
        self,
        movement_type: str,
        *,
        product_id,
        zone: str,
        quantity,
        batch=None,
        order_id=None,
        note: str = '',
        reference_movement: StockMovement | None = None,
    ) -> StockMovement:
        product = self.product(product_id)
        movement = LedgerService.append(
            movement_type=movement_type,
            product_id=product_id,
            zone=zone,
            quantity=quantity,
            batch=batch,
            actor=self.actor,
            order_id=order_id,
            note=note,
            product=product,
            reference_movement=reference_movement,
        )
        AggregateService.apply_delta(
            product_id=movement.product_id,
            batch_id=movement.batch_id,
            zone=movement.zone,
            product=product,
            **{movement.aggregate_field: movement.quantity},
        )
        self.movements.append(movement)
        return movement

    def locked_aggregate(self, product_id, batch_id, zone) -> StockAggregate | None:
        """Read one aggregate row under SELECT ... FOR UPDATE."""
        return (
            StockAggregate.objects.select_for_update()
            .filter(product_id=product_id, batch_id=batch_id, zone=zone)
            .first()
        )


@contextmanager
def unit_of_work(operation: str, actor=None):
    """
    Run one inventory operation atomically. Contention failures from the
    database surface as ConcurrencyError; the whole unit is rolled back.
    """
    uow = UnitOfWork(operation, actor=actor)
    try:
        with transaction.atomic():
            yield uow
    except OperationalError as exc:
        logger.warning('%s rolled back under contention: %s', operation, exc)
        raise ConcurrencyError(
            detail=f'{operation} could not be committed, please retry.',
            context={'operation': operation},
        ) from exc
    except Exception as exc:
        logger.info('%s rolled back: %s', operation, exc.__class__.__name__)
        raise
    logger.info(
        '%s committed by %s: %s movement(s) %s',
        operation, actor, len(uow.movements), [str(m.pk) for m in uow.movements],
    )
