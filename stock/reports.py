"""
Stock — Warning Reports

Read-only reports over batches, aggregates, reservations and the ledger:
expiring batches, demand exceeding availability and zone/frozen-flag
mismatches. Each report runs in its own transaction with a statement
timeout on PostgreSQL; an exceeded budget raises ReportTimeoutError.

These rules are never enforced on the write path.

@file stock/reports.py
"""

import logging
from contextlib import contextmanager
from datetime import timedelta

from django.conf import settings
from django.db import OperationalError, connection, transaction
from django.db.models import DecimalField, Q, Sum, Value
from django.db.models.functions import Coalesce
from django.utils import timezone
from psycopg import errors as pg_errors

from batches.models import Batch
from core.constants import QUANTITY_DECIMAL_PLACES, QUANTITY_MAX_DIGITS
from core.exceptions import ReportTimeoutError
from core.pagination import paginate
from core.parsing import to_date, to_uuid
from reservations.models import Reservation

from .ledger import ZERO, filter_timestamp_range
from .models import StockAggregate, StockMovement, StorageZone

logger = logging.getLogger('freshstock')

EXPIRED = 'EXPIRED'
NEAR = 'NEAR'


def _quantity_sum(field: str):
    return Coalesce(
        Sum(field),
        Value(ZERO),
        output_field=DecimalField(max_digits=QUANTITY_MAX_DIGITS, decimal_places=QUANTITY_DECIMAL_PLACES),
    )


@contextmanager
def time_boxed(report: str, timeout_ms: int | None = None):
    """
    Read transaction with SET LOCAL statement_timeout (PostgreSQL only).
    Only a cancelled query becomes ReportTimeoutError; other database
    errors propagate.
    """
    if timeout_ms is None:
        timeout_ms = settings.INVENTORY_REPORT_TIMEOUT_MS
    try:
        with transaction.atomic():
            if connection.vendor == 'postgresql' and timeout_ms:
                with connection.cursor() as cursor:
                    cursor.execute(f'SET LOCAL statement_timeout = {int(timeout_ms)}')
            yield
    except OperationalError as exc:
        if not isinstance(exc.__cause__, pg_errors.QueryCanceled):
            raise
        logger.warning('Report %s aborted after %sms: %s', report, timeout_ms, exc)
        raise ReportTimeoutError(
            detail=f'{report} exceeded its time budget of {timeout_ms} ms.',
            context={'report': report, 'timeout_ms': timeout_ms},
        ) from exc


class WarningReportService:
    """Soft-rule reports; none of them block any operation."""

    @staticmethod
    def expiry_report(
        *,
        threshold_days: int | None = None,
        today=None,
        product_id=None,
        expired_only: bool = False,
        page=1,
        page_size: int | None = None,
    ):
        """
        Batches expiring on or before today + threshold_days, soonest first.
        Status is EXPIRED when the expiry date is today or earlier, NEAR
        otherwise. Stock totals are summed across zones.
        """
        today = to_date(today, field_name='today') if today else timezone.localdate()
        if threshold_days is None:
            threshold_days = settings.INVENTORY_EXPIRY_THRESHOLD_DAYS
        horizon = today if expired_only else today + timedelta(days=max(0, int(threshold_days)))

        qs = Batch.objects.filter(expiry_date__lte=horizon)
        if product_id:
            qs = qs.filter(product_id=to_uuid(product_id, field_name='product_id'))
        qs = qs.annotate(
            available=_quantity_sum('aggregates__available'),
            reserved=_quantity_sum('aggregates__reserved'),
            in_transit=_quantity_sum('aggregates__in_transit'),
        ).order_by('expiry_date', 'created_at')

        with time_boxed('expiry_report'):
            result = paginate(qs, page=page, page_size=page_size)
            result.object_list = [
                {
                    'batch_id': batch.pk,
                    'product_id': batch.product_id,
                    'product_name': batch.product_name,
                    'product_code': batch.product_code,
                    'expiry_date': batch.expiry_date,
                    'slaughter_date': batch.slaughter_date,
                    'is_frozen': batch.is_frozen,
                    'days_to_expiry': (batch.expiry_date - today).days,
                    'available': batch.available,
                    'reserved': batch.reserved,
                    'in_transit': batch.in_transit,
                    'status': EXPIRED if batch.expiry_date <= today else NEAR,
                }
                for batch in result.object_list
            ]
        return result

    @staticmethod
    def over_reservation_report(*, as_of=None, product_id=None) -> list[dict]:
        """
        Products whose ACTIVE reservations (delivery on or before ``as_of``;
        all of them when None) exceed the available stock summed over all
        batches and zones. Largest excess first.
        """
        reservations = Reservation.objects.filter(status=Reservation.Status.ACTIVE)
        if as_of is not None:
            reservations = reservations.filter(
                delivery_date__lte=to_date(as_of, field_name='as_of'),
            )
        if product_id:
            reservations = reservations.filter(
                product_id=to_uuid(product_id, field_name='product_id'),
            )

        with time_boxed('over_reservation_report'):
            demand = {
                row['product_id']: row
                for row in reservations.order_by()
                .values('product_id')
                .annotate(reserved=_quantity_sum('quantity'))
            }
            if not demand:
                return []
            names = {}
            for row in reservations.order_by('-created_at').values(
                'product_id', 'product_name', 'product_code',
            ):
                names.setdefault(row['product_id'], (row['product_name'], row['product_code']))
            supply = {
                row['product_id']: row['available']
                for row in StockAggregate.objects.filter(product_id__in=list(demand))
                .order_by()
                .values('product_id')
                .annotate(available=_quantity_sum('available'))
            }

        rows = []
        for pid, row in demand.items():
            available = supply.get(pid, ZERO)
            excess = row['reserved'] - available
            if excess > 0:
                name, code = names.get(pid, ('', ''))
                rows.append({
                    'product_id': pid,
                    'product_name': name,
                    'product_code': code,
                    'reserved': row['reserved'],
                    'available': available,
                    'excess': excess,
                })
        rows.sort(key=lambda r: r['excess'], reverse=True)
        return rows

    @staticmethod
    def zone_mismatch_report(
        *,
        date_from=None,
        date_to=None,
        lookback_days: int | None = None,
        product_id=None,
        today=None,
        page=1,
        page_size: int | None = None,
    ):
        """
        Movements whose recorded frozen flag disagrees with their zone:
        frozen goods booked into NON_TK or non-frozen goods into TK.
        Without ``date_from`` the window starts ``lookback_days`` ago.
        """
        if date_from is None:
            if lookback_days is None:
                lookback_days = settings.INVENTORY_ZONE_MISMATCH_LOOKBACK_DAYS
            today = to_date(today, field_name='today') if today else timezone.localdate()
            date_from = today - timedelta(days=int(lookback_days))

        qs = filter_timestamp_range(StockMovement.objects.all(), date_from, date_to)
        qs = qs.filter(
            Q(is_frozen=True, zone=StorageZone.NON_FROZEN)
            | Q(is_frozen=False, zone=StorageZone.FROZEN)
        )
        if product_id:
            qs = qs.filter(product_id=to_uuid(product_id, field_name='product_id'))
        qs = qs.order_by('-timestamp', '-id')

        with time_boxed('zone_mismatch_report'):
            result = paginate(qs, page=page, page_size=page_size)
            result.object_list = [
                {
                    'movement_id': movement.pk,
                    'timestamp': movement.timestamp,
                    'movement_type': movement.movement_type,
                    'product_id': movement.product_id,
                    'product_name': movement.product_name,
                    'product_code': movement.product_code,
                    'batch_id': movement.batch_id,
                    'zone': movement.zone,
                    'is_frozen': movement.is_frozen,
                    'quantity': movement.quantity,
                    'note': movement.note,
                }
                for movement in result.object_list
            ]
        return result
