"""
Tests — LedgerService, AggregateService and the unit of work:
validation on append, F()-based deltas, ledger recomputation, drift
detection and contention handling.

@file stock/tests/test_ledger.py
"""

import csv
import io
import itertools
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from django.db import OperationalError, transaction
from django.db.transaction import TransactionManagementError
from django.utils import timezone

from core.exceptions import (
    BusinessRuleViolation,
    ConcurrencyError,
    CrossReferenceError,
    ResourceNotFoundError,
)
from stock.ledger import EXPORT_COLUMNS, AggregateService, LedgerService, unit_of_work
from stock.models import MovementType, StockAggregate, StockMovement, StorageZone
from tests.factories import BatchFactory, StockMovementFactory


pytestmark = pytest.mark.django_db

NON_TK = StorageZone.NON_FROZEN.value
TK = StorageZone.FROZEN.value


def _batch(product_id, **kwargs):
    return BatchFactory(product_id=product_id, **kwargs)


class TestAppend:

    def test_append_snapshots_product_and_batch(self, product_id, user):
        batch = _batch(product_id, is_frozen=True)
        movement = LedgerService.append(
            movement_type=MovementType.GOODS_IN,
            product_id=product_id,
            zone=TK,
            quantity='12.5',
            batch=batch,
            actor=user,
            note='Lieferschein 4711',
        )
        assert movement.quantity == Decimal('12.500')
        assert movement.product_name == 'Rinderhack'
        assert movement.product_code == 'ART-100'
        assert movement.is_frozen is True
        assert movement.expiry_date == batch.expiry_date
        assert movement.actor == user

    def test_sign_must_match_type(self, product_id):
        with pytest.raises(BusinessRuleViolation) as exc_info:
            LedgerService.append(
                movement_type=MovementType.WRITE_OFF, product_id=product_id, zone=NON_TK, quantity=5,
            )
        assert exc_info.value.context['movement_type'] == 'WRITE_OFF'

    def test_stock_correction_accepts_both_signs(self, product_id):
        for qty in (5, -5):
            LedgerService.append(
                movement_type=MovementType.STOCK_CORRECTION, product_id=product_id, zone=NON_TK, quantity=qty,
            )
        assert StockMovement.objects.count() == 2

    @pytest.mark.parametrize('kwargs', [
        {'movement_type': 'TELEPORT', 'zone': NON_TK, 'quantity': 1},
        {'movement_type': MovementType.GOODS_IN, 'zone': 'COOLER', 'quantity': 1},
        {'movement_type': MovementType.GOODS_IN, 'zone': NON_TK, 'quantity': 0},
    ])
    def test_invalid_input(self, product_id, kwargs):
        with pytest.raises(BusinessRuleViolation):
            LedgerService.append(product_id=product_id, **kwargs)
        assert not StockMovement.objects.exists()

    def test_batch_of_other_product(self, product_id):
        batch = BatchFactory()
        with pytest.raises(CrossReferenceError):
            LedgerService.append(
                movement_type=MovementType.GOODS_IN, product_id=product_id, zone=NON_TK,
                quantity=1, batch=batch,
            )


@pytest.mark.django_db(transaction=True)
class TestOutsideTransaction:

    def test_append_requires_transaction(self, product_id):
        with pytest.raises(TransactionManagementError):
            LedgerService.append(
                movement_type=MovementType.GOODS_IN, product_id=product_id, zone=NON_TK, quantity=1,
            )

    def test_apply_delta_requires_transaction(self, product_id):
        with pytest.raises(TransactionManagementError):
            AggregateService.apply_delta(product_id=product_id, batch_id=None, zone=NON_TK, available=1)


class TestApplyDelta:

    def test_first_delta_creates_key(self, product_id):
        batch = _batch(product_id)
        with transaction.atomic():
            agg = AggregateService.apply_delta(
                product_id=product_id, batch_id=batch.pk, zone=NON_TK, available=Decimal('7.250'),
            )
        assert agg.available == Decimal('7.25')
        assert agg.reserved == 0
        assert agg.product_name == 'Rinderhack'

    def test_unbatched_key(self, product_id):
        with transaction.atomic():
            AggregateService.apply_delta(product_id=product_id, batch_id=None, zone=TK, in_transit=30)
            AggregateService.apply_delta(product_id=product_id, batch_id=None, zone=TK, in_transit=-10)
        agg = AggregateService.get_aggregate(product_id, None, TK)
        assert agg.in_transit == Decimal('20')
        assert StockAggregate.objects.count() == 1

    def test_deltas_commute(self, product_id):
        batch = _batch(product_id)
        deltas = [
            {'available': Decimal('10')},
            {'available': Decimal('-3.5')},
            {'reserved': Decimal('4')},
            {'available': Decimal('0.125'), 'in_transit': Decimal('2')},
        ]
        results = set()
        for zone, order in zip((NON_TK, TK), (deltas, list(reversed(deltas)))):
            with transaction.atomic():
                for delta in order:
                    AggregateService.apply_delta(
                        product_id=product_id, batch_id=batch.pk, zone=zone, **delta,
                    )
            agg = AggregateService.get_aggregate(product_id, batch.pk, zone)
            results.add((agg.available, agg.reserved, agg.in_transit))
        assert results == {(Decimal('6.625'), Decimal('4'), Decimal('2'))}

    def test_every_permutation_yields_same_totals(self, product_id):
        deltas = [Decimal('5'), Decimal('-2'), Decimal('1.5')]
        finals = set()
        for order in itertools.permutations(deltas):
            pid = uuid.uuid4()
            with transaction.atomic():
                for delta in order:
                    AggregateService.apply_delta(
                        product_id=pid, batch_id=None, zone=NON_TK, available=delta,
                        product={'name': '', 'code': ''},
                    )
            finals.add(AggregateService.get_aggregate(pid, None, NON_TK).available)
        assert finals == {Decimal('4.5')}


class TestLedgerQueries:

    def _record(self, product_id, batch, movement_type, qty, zone=NON_TK):
        with unit_of_work('test') as uow:
            return uow.record(movement_type, product_id=product_id, zone=zone, quantity=qty, batch=batch)

    def test_derived_totals_match_aggregate(self, product_id):
        batch = _batch(product_id)
        self._record(product_id, batch, MovementType.GOODS_IN, 100)
        self._record(product_id, batch, MovementType.PICK, -30)
        self._record(product_id, batch, MovementType.RESERVE, 20)
        self._record(product_id, batch, MovementType.UNRESERVE, -5)

        derived = LedgerService.derived_totals(product_id, batch.pk, NON_TK)
        agg = AggregateService.get_aggregate(product_id, batch.pk, NON_TK)
        assert derived == agg.totals()
        assert derived['available'] == Decimal('70')
        assert derived['reserved'] == Decimal('15')
        assert derived['in_transit'] == 0

    def test_sum_by_key(self, product_id):
        batch = _batch(product_id)
        self._record(product_id, batch, MovementType.GOODS_IN, 10)
        self._record(product_id, batch, MovementType.WRITE_OFF, -4)
        assert LedgerService.sum_by_key(product_id, batch.pk, NON_TK) == Decimal('6')
        assert LedgerService.sum_by_key(
            product_id, batch.pk, NON_TK, [MovementType.WRITE_OFF],
        ) == Decimal('-4')
        assert LedgerService.sum_by_key(product_id, batch.pk, TK) == 0

    def test_balance_as_of(self, product_id):
        batch = _batch(product_id)
        self._record(product_id, batch, MovementType.GOODS_IN, 10)
        self._record(product_id, batch, MovementType.GOODS_IN, 5, zone=TK)

        rows = LedgerService.balance_as_of(product_id=product_id)
        assert {(r['zone'], r['available']) for r in rows} == {(NON_TK, Decimal('10')), (TK, Decimal('5'))}

        yesterday = timezone.localdate() - timedelta(days=1)
        assert LedgerService.balance_as_of(yesterday, product_id=product_id) == []
        assert len(LedgerService.balance_as_of(timezone.localdate(), product_id=product_id)) == 2

    def test_list_movements_filters(self, product_id):
        batch = _batch(product_id)
        self._record(product_id, batch, MovementType.GOODS_IN, 10)
        write_off = self._record(product_id, batch, MovementType.WRITE_OFF, -2)
        StockMovementFactory()

        page = LedgerService.list_movements(product_id=product_id)
        assert page.paginator.count == 2
        assert page.object_list[0] == write_off

        page = LedgerService.list_movements(movement_types=MovementType.WRITE_OFF)
        assert list(page.object_list) == [write_off]

        page = LedgerService.list_movements(q='rinder', date_from=timezone.localdate())
        assert page.paginator.count == 2

        page = LedgerService.list_movements(date_to=timezone.localdate() - timedelta(days=1))
        assert page.paginator.count == 0

    def test_export_movements_csv(self, product_id):
        batch = _batch(product_id, is_frozen=True)
        self._record(product_id, batch, MovementType.GOODS_IN, 10, zone=TK)
        write_off = self._record(product_id, batch, MovementType.WRITE_OFF, '-2.5', zone=TK)
        unbatched = self._record(product_id, None, MovementType.INBOUND_RECORDED, 7)
        StockMovementFactory()

        stream = io.StringIO()
        written = LedgerService.export_movements_csv(stream, product_id=product_id)
        assert written == 3

        rows = list(csv.reader(io.StringIO(stream.getvalue()), delimiter=';'))
        assert rows[0] == list(EXPORT_COLUMNS)
        assert len(rows) == 4
        by_id = {row[0]: dict(zip(rows[0], row)) for row in rows[1:]}

        row = by_id[str(write_off.pk)]
        assert row['movement_type'] == MovementType.WRITE_OFF
        assert row['product_name'] == 'Rinderhack'
        assert row['product_code'] == 'ART-100'
        assert row['batch_id'] == str(batch.pk)
        assert row['zone'] == TK
        assert Decimal(row['quantity']) == Decimal('-2.5')
        assert row['expiry_date'] == batch.expiry_date.isoformat()
        assert row['slaughter_date'] == ''
        assert row['is_frozen'] == 'true'

        row = by_id[str(unbatched.pk)]
        assert row['batch_id'] == ''
        assert row['is_frozen'] == ''

    def test_export_applies_filters_without_paging(self, product_id, monkeypatch):
        monkeypatch.setattr('core.pagination.DEFAULT_PAGE_SIZE', 2)
        batch = _batch(product_id)
        for _ in range(5):
            self._record(product_id, batch, MovementType.GOODS_IN, 1)
        self._record(product_id, batch, MovementType.WRITE_OFF, -1)
        assert len(LedgerService.list_movements().object_list) == 2

        stream = io.StringIO()
        assert LedgerService.export_movements_csv(stream) == 6

        stream = io.StringIO()
        assert LedgerService.export_movements_csv(stream, movement_types=[MovementType.WRITE_OFF]) == 1
        assert stream.getvalue().splitlines()[0] == ';'.join(EXPORT_COLUMNS)

    def test_export_with_no_matches_writes_header_only(self):
        stream = io.StringIO()
        assert LedgerService.export_movements_csv(stream, q='nichts') == 0
        assert stream.getvalue() == ';'.join(EXPORT_COLUMNS) + '\n'

    def test_get_movement_not_found(self):
        with pytest.raises(ResourceNotFoundError):
            LedgerService.get_movement(uuid.uuid4())


class TestFindDrift:

    def test_no_drift_through_unit_of_work(self, product_id):
        batch = _batch(product_id)
        with unit_of_work('test') as uow:
            uow.record(MovementType.GOODS_IN, product_id=product_id, zone=NON_TK, quantity=10, batch=batch)
            uow.record(MovementType.INBOUND_RECORDED, product_id=product_id, zone=TK, quantity=8)
        assert AggregateService.find_drift() == []

    def test_movement_without_delta_is_reported(self):
        movement = StockMovementFactory(quantity=Decimal('3'))
        drift = AggregateService.find_drift()
        assert len(drift) == 1
        assert drift[0]['batch_id'] == movement.batch_id
        assert drift[0]['ledger']['available'] == Decimal('3')
        assert drift[0]['aggregate']['available'] == 0

    def test_aggregate_without_movement_is_reported(self, product_id):
        StockAggregate.objects.create(product_id=product_id, zone=NON_TK, available=Decimal('1'))
        drift = AggregateService.find_drift(product_id=product_id)
        assert [d['zone'] for d in drift] == [NON_TK]


class TestUnitOfWork:

    def test_record_applies_delta(self, product_id, user):
        batch = _batch(product_id)
        with unit_of_work('test', actor=user) as uow:
            movement = uow.record(
                MovementType.GOODS_IN, product_id=product_id, zone=NON_TK, quantity=4, batch=batch,
            )
            locked = uow.locked_aggregate(product_id, batch.pk, NON_TK)
        assert movement.actor == user
        assert uow.movements == [movement]
        assert locked.available == Decimal('4')

    def test_product_is_resolved_once(self, product_id, product_registry):
        batch = _batch(product_id)
        with unit_of_work('test') as uow:
            uow.record(MovementType.GOODS_IN, product_id=product_id, zone=NON_TK, quantity=1, batch=batch)
            product_registry.PRODUCTS.clear()
            movement = uow.record(
                MovementType.GOODS_IN, product_id=product_id, zone=TK, quantity=1, batch=batch,
            )
        assert movement.product_name == 'Rinderhack'

    def test_error_rolls_back_everything(self, product_id):
        batch = _batch(product_id)
        with pytest.raises(RuntimeError):
            with unit_of_work('test') as uow:
                uow.record(MovementType.GOODS_IN, product_id=product_id, zone=NON_TK, quantity=4, batch=batch)
                raise RuntimeError('boom')
        assert not StockMovement.objects.exists()
        assert AggregateService.get_aggregate(product_id, batch.pk, NON_TK) is None

    def test_operational_error_becomes_concurrency_error(self):
        with pytest.raises(ConcurrencyError) as exc_info:
            with unit_of_work('receive'):
                raise OperationalError('deadlock detected')
        assert exc_info.value.context == {'operation': 'receive'}
        assert exc_info.value.status_code == 409


class TestListStock:

    def _stock(self, product_id, days, qty=10, zone=NON_TK):
        batch = _batch(product_id, expiry_date=timezone.localdate() + timedelta(days=days))
        with unit_of_work('test') as uow:
            uow.record(MovementType.GOODS_IN, product_id=product_id, zone=zone, quantity=qty, batch=batch)
        return batch

    def test_rows_carry_expiry_warning(self, product_id):
        expired = self._stock(product_id, 0)
        near = self._stock(product_id, 4)
        fine = self._stock(product_id, 30)
        rows = list(AggregateService.list_stock(product_id=product_id, threshold_days=5).object_list)
        assert [(row['batch_id'], row['warning']) for row in rows] == [
            (expired.pk, 'EXPIRED'), (near.pk, 'NEAR'), (fine.pk, None),
        ]
        assert rows[0]['product_name'] == 'Rinderhack'

    def test_critical_only(self, product_id):
        self._stock(product_id, 2)
        self._stock(product_id, 30)
        page = AggregateService.list_stock(critical_only=True, threshold_days=5)
        assert page.paginator.count == 1

    def test_empty_keys_hidden(self, product_id):
        batch = self._stock(product_id, 10, qty=5)
        with unit_of_work('test') as uow:
            uow.record(MovementType.PICK, product_id=product_id, zone=NON_TK, quantity=-5, batch=batch)
        assert AggregateService.list_stock().paginator.count == 0
        assert AggregateService.list_stock(include_empty=True).paginator.count == 1

    def test_zone_and_search_filters(self, product_id):
        self._stock(product_id, 10, zone=TK)
        assert AggregateService.list_stock(zone=NON_TK).paginator.count == 0
        assert AggregateService.list_stock(q='art-100').paginator.count == 1
        with pytest.raises(BusinessRuleViolation):
            AggregateService.list_stock(zone='ATTIC')
