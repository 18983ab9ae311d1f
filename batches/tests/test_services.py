"""
Tests — BatchService: create with master-data snapshots, product checks,
administrative corrections, listing and the batch view.

@file batches/tests/test_services.py
"""

import uuid
from datetime import date, timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from batches.models import Batch
from batches.services import BatchService
from core.exceptions import BusinessRuleViolation, CrossReferenceError, ResourceNotFoundError
from core.models import AuditLog
from stock.models import StorageZone
from stock.services import StockService
from tests.factories import BatchFactory, ReservationFactory


pytestmark = pytest.mark.django_db


class TestCreateBatch:

    def test_snapshots_product_and_supplier(self, product_id, supplier_id, user):
        batch = BatchService.create_batch(
            product_id=product_id,
            expiry_date='2026-12-01',
            slaughter_date='2026-11-20',
            supplier_id=supplier_id,
            is_frozen=True,
            actor=user,
        )
        assert batch.product_name == 'Rinderhack'
        assert batch.product_code == 'ART-100'
        assert batch.supplier_name == 'Schlachthof Nord'
        assert batch.expiry_date == date(2026, 12, 1)
        assert batch.is_frozen is True
        assert batch.created_by == user
        entry = AuditLog.objects.get(model_name='Batch', object_id=str(batch.pk))
        assert entry.action == 'CREATE'
        assert entry.actor == user

    def test_unknown_product_raises_not_found(self):
        with pytest.raises(ResourceNotFoundError):
            BatchService.create_batch(product_id=uuid.uuid4(), expiry_date='2026-12-01')

    def test_expiry_required(self, product_id):
        with pytest.raises(BusinessRuleViolation):
            BatchService.create_batch(product_id=product_id, expiry_date=None)

    def test_slaughter_after_expiry_rejected(self, product_id):
        with pytest.raises(BusinessRuleViolation) as exc_info:
            BatchService.create_batch(
                product_id=product_id, expiry_date='2026-12-01', slaughter_date='2026-12-05',
            )
        assert 'slaughter_date' in exc_info.value.detail
        assert not Batch.objects.exists()

    @pytest.mark.parametrize('value', ['false', 'true', 1, 0, None])
    def test_frozen_flag_must_be_boolean(self, product_id, value):
        with pytest.raises(BusinessRuleViolation) as exc_info:
            BatchService.create_batch(product_id=product_id, expiry_date='2026-12-01', is_frozen=value)
        assert exc_info.value.context == {'is_frozen': value}
        assert not Batch.objects.exists()


class TestGetBatch:

    def test_missing_batch(self):
        with pytest.raises(ResourceNotFoundError) as exc_info:
            BatchService.get_batch(uuid.uuid4())
        assert 'batch_id' in exc_info.value.context

    def test_malformed_id(self):
        with pytest.raises(BusinessRuleViolation):
            BatchService.get_batch('nope')

    def test_wrong_product(self):
        batch = BatchFactory()
        with pytest.raises(CrossReferenceError) as exc_info:
            BatchService.get_batch_for_product(batch.pk, uuid.uuid4())
        assert exc_info.value.context['batch_product_id'] == str(batch.product_id)


class TestUpdateBatch:

    def test_corrects_descriptive_fields(self, supplier_id, user):
        batch = BatchFactory(is_frozen=False)
        updated = BatchService.update_batch(
            batch_id=batch.pk,
            expiry_date='2027-01-15',
            is_frozen=True,
            supplier_id=supplier_id,
            actor=user,
        )
        assert updated.expiry_date == date(2027, 1, 15)
        assert updated.is_frozen is True
        assert updated.supplier_name == 'Schlachthof Nord'
        assert updated.updated_by == user
        entry = AuditLog.objects.get(model_name='Batch', object_id=str(batch.pk), action='UPDATE')
        assert entry.actor == user
        assert entry.new_values['expiry_date'] == '2027-01-15'

    def test_product_is_immutable(self):
        batch = BatchFactory()
        with pytest.raises(BusinessRuleViolation):
            BatchService.update_batch(batch_id=batch.pk, product_id=uuid.uuid4())

    def test_same_product_id_is_accepted(self):
        batch = BatchFactory()
        BatchService.update_batch(batch_id=batch.pk, product_id=str(batch.product_id), is_frozen=True)
        batch.refresh_from_db()
        assert batch.is_frozen is True

    def test_frozen_flag_string_rejected(self):
        batch = BatchFactory(is_frozen=False)
        with pytest.raises(BusinessRuleViolation):
            BatchService.update_batch(batch_id=batch.pk, is_frozen='false')
        batch.refresh_from_db()
        assert batch.is_frozen is False

    def test_unknown_field_rejected(self):
        batch = BatchFactory()
        with pytest.raises(BusinessRuleViolation):
            BatchService.update_batch(batch_id=batch.pk, product_name='Other')

    def test_invalid_dates_rejected(self):
        batch = BatchFactory(expiry_date=date(2026, 6, 1))
        with pytest.raises(BusinessRuleViolation):
            BatchService.update_batch(batch_id=batch.pk, slaughter_date='2026-06-10')
        batch.refresh_from_db()
        assert batch.slaughter_date is None


class TestListBatches:

    def test_filters_and_order(self):
        today = timezone.localdate()
        pid = uuid.uuid4()
        late = BatchFactory(product_id=pid, expiry_date=today + timedelta(days=9))
        early = BatchFactory(product_id=pid, expiry_date=today + timedelta(days=2), is_frozen=True)
        BatchFactory()

        page = BatchService.list_batches(product_id=pid)
        assert [b.pk for b in page.object_list] == [early.pk, late.pk]

        page = BatchService.list_batches(product_id=pid, is_frozen=True)
        assert [b.pk for b in page.object_list] == [early.pk]

        page = BatchService.list_batches(expiry_to=today + timedelta(days=5))
        assert early in page.object_list
        assert late not in page.object_list

    def test_free_text(self):
        match = BatchFactory(product_name='Lammkeule')
        BatchFactory(product_name='Putenbrust')
        page = BatchService.list_batches(q='lamm')
        assert list(page.object_list) == [match]


class TestBatchView:

    def test_movements_and_reservations(self, product_id):
        movement = StockService.receive(
            product_id=product_id,
            quantity=10,
            zone=StorageZone.NON_FROZEN,
            new_batch={'expiry_date': timezone.localdate() + timedelta(days=7)},
        )
        reservation = ReservationFactory(product_id=product_id, batch=movement.batch)

        view = BatchService.get_batch_view(movement.batch_id)
        assert view['batch'] == movement.batch
        assert view['movements'] == [movement]
        assert view['reservations'] == [reservation]
        assert view['movements'][0].quantity == Decimal('10')
