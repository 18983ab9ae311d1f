"""
Stock — Service Layer

Transactional inventory operations: goods receipt, transfers between
batches and zones, batch merge, write-off and its undo, manual stock
correction, picking, collaborator movements and inbound announcements.

Every operation runs in one stock.ledger.unit_of_work; each recorded
movement applies its aggregate delta in the same transaction. Stock
limits are never enforced here: negative availability and zone/frozen
mismatches are surfaced by stock.reports instead.

@file stock/services.py
"""

import logging
from typing import NamedTuple

from batches.models import Batch
from batches.services import BatchService
from core.constants import AUDIT_ACTION_CREATE, AUDIT_ACTION_REVERSAL, AUDIT_ACTION_STATUS_CHANGE
from core.exceptions import (
    BusinessRuleViolation,
    CrossReferenceError,
    InvalidStateTransition,
    ResourceNotFoundError,
)
from core.masterdata import get_supplier
from core.pagination import paginate
from core.parsing import to_date, to_quantity, to_uuid
from core.services import AuditService
from reservations.models import Reservation
from reservations.services import ReservationService

from .ledger import ZERO, LedgerService, UnitOfWork, unit_of_work, validate_zone
from .models import MOVEMENT_EFFECTS, InboundDelivery, MovementType, StockMovement, StorageZone, WriteOffReason

logger = logging.getLogger('freshstock')

NEW_BATCH_FIELDS = {'expiry_date', 'slaughter_date', 'is_frozen', 'supplier_id'}

COLLABORATOR_TYPES = {
    MovementType.GOODS_OUT,
    MovementType.RETURN_FROM_CUSTOMER,
    MovementType.RETURN_TO_SUPPLIER,
    MovementType.RESERVE,
    MovementType.UNRESERVE,
}


class TransferResult(NamedTuple):
    out_movement: StockMovement
    in_movement: StockMovement
    to_batch: Batch


def _tagged(tag: str, note: str = '') -> str:
    note = (note or '').strip()
    return f'{tag} {note}' if note else tag


def _new_batch_fields(new_batch: dict) -> dict:
    if not isinstance(new_batch, dict):
        raise BusinessRuleViolation(detail='new_batch must be a mapping of batch fields.')
    unknown = set(new_batch) - NEW_BATCH_FIELDS
    if unknown:
        raise BusinessRuleViolation(
            detail=f'Unknown new_batch field(s): {", ".join(sorted(unknown))}.',
            context={'allowed': sorted(NEW_BATCH_FIELDS)},
        )
    return dict(new_batch)


def _create_batch(uow: UnitOfWork, product_id, fields: dict) -> Batch:
    return BatchService.create_batch(
        product_id=product_id,
        actor=uow.actor,
        product=uow.product(product_id),
        **fields,
    )


def _warn_zone_mismatch(batch: Batch, zone: str, operation: str) -> None:
    if batch.is_frozen != (zone == StorageZone.FROZEN):
        logger.warning(
            '%s: batch %s (frozen=%s) booked into zone %s',
            operation, batch.pk, batch.is_frozen, zone,
        )


class StockService:
    """Ledger-recorded stock operations."""

    @staticmethod
    def receive(
        *,
        product_id,
        quantity,
        zone: str,
        batch_id=None,
        new_batch: dict | None = None,
        note: str = '',
        inbound_delivery_id=None,
        actor=None,
    ) -> StockMovement:
        """
        Book goods in (GOODS_IN) into an existing batch or a batch created
        on the spot. With ``inbound_delivery_id`` the announced in-transit
        quantity is released in the same unit.
        """
        product_id = to_uuid(product_id, field_name='product_id')
        quantity = to_quantity(quantity)
        validate_zone(zone)
        if (batch_id is None) == (new_batch is None):
            raise BusinessRuleViolation(
                detail='Provide exactly one of batch_id or new_batch.',
                context={'product_id': str(product_id)},
            )

        with unit_of_work('receive', actor=actor) as uow:
            if batch_id is not None:
                batch = BatchService.get_batch_for_product(batch_id, product_id)
            else:
                batch = _create_batch(uow, product_id, _new_batch_fields(new_batch))
            movement = uow.record(
                MovementType.GOODS_IN,
                product_id=product_id,
                zone=zone,
                quantity=quantity,
                batch=batch,
                note=note,
            )
            if inbound_delivery_id:
                InboundService.register_receipt(
                    uow,
                    inbound_delivery_id=inbound_delivery_id,
                    product_id=product_id,
                    quantity=quantity,
                    batch=batch,
                )
        _warn_zone_mismatch(batch, zone, 'receive')
        return movement

    @staticmethod
    def transfer(
        *,
        product_id,
        from_batch_id,
        from_zone: str,
        to_zone: str,
        quantity,
        to_batch_id=None,
        new_batch: dict | None = None,
        note: str = '',
        actor=None,
    ) -> TransferResult:
        """
        Move stock out of (source batch, from_zone) into (destination batch,
        to_zone). The destination is ``to_batch_id``, a new batch derived from
        the source with ``new_batch`` overrides, or the source batch itself.
        """
        product_id = to_uuid(product_id, field_name='product_id')
        quantity = to_quantity(quantity)
        validate_zone(from_zone)
        validate_zone(to_zone)
        if to_batch_id is not None and new_batch is not None:
            raise BusinessRuleViolation(
                detail='Provide at most one of to_batch_id or new_batch.',
                context={'product_id': str(product_id)},
            )

        with unit_of_work('transfer', actor=actor) as uow:
            source = BatchService.get_batch_for_product(from_batch_id, product_id, role='source batch')
            if to_batch_id is not None:
                target = BatchService.get_batch_for_product(to_batch_id, product_id, role='target batch')
            elif new_batch is not None:
                fields = {
                    'expiry_date': source.expiry_date,
                    'slaughter_date': source.slaughter_date,
                    'is_frozen': source.is_frozen,
                    'supplier_id': source.supplier_id,
                }
                fields.update(_new_batch_fields(new_batch))
                target = _create_batch(uow, product_id, fields)
            else:
                target = source

            if target.pk == source.pk and from_zone == to_zone:
                raise BusinessRuleViolation(
                    detail='A transfer must change the batch or the zone.',
                    context={'batch_id': str(source.pk), 'zone': from_zone},
                )
            out_movement = uow.record(
                MovementType.TRANSFER_OUT,
                product_id=product_id, zone=from_zone, quantity=-quantity, batch=source, note=note,
            )
            in_movement = uow.record(
                MovementType.TRANSFER_IN,
                product_id=product_id, zone=to_zone, quantity=quantity, batch=target, note=note,
            )
        _warn_zone_mismatch(target, to_zone, 'transfer')
        return TransferResult(out_movement, in_movement, target)

    @staticmethod
    def merge_batches(
        *,
        product_id,
        source_batch_id,
        target_batch_id,
        zone: str,
        target_zone: str | None = None,
        quantity=None,
        note: str = '',
        actor=None,
    ) -> TransferResult:
        """
        Relocate stock of one batch into another batch of the same product.
        ``quantity=None`` moves everything available for the source batch in
        ``zone``, read under a row lock. The source batch is kept.
        """
        product_id = to_uuid(product_id, field_name='product_id')
        validate_zone(zone)
        target_zone = target_zone or zone
        validate_zone(target_zone)
        if quantity is not None:
            quantity = to_quantity(quantity)
        if to_uuid(source_batch_id, field_name='source_batch_id') == to_uuid(
            target_batch_id, field_name='target_batch_id',
        ):
            raise BusinessRuleViolation(
                detail='Cannot merge a batch into itself.',
                context={'batch_id': str(source_batch_id)},
            )

        with unit_of_work('merge_batches', actor=actor) as uow:
            source = BatchService.get_batch_for_product(source_batch_id, product_id, role='source batch')
            target = BatchService.get_batch_for_product(target_batch_id, product_id, role='target batch')
            if quantity is None:
                aggregate = uow.locked_aggregate(product_id, source.pk, zone)
                quantity = aggregate.available if aggregate else ZERO
                if quantity <= 0:
                    raise BusinessRuleViolation(
                        detail='The source batch has no available stock in this zone.',
                        context={
                            'product_id': str(product_id),
                            'batch_id': str(source.pk),
                            'zone': zone,
                            'available': str(quantity),
                        },
                    )
            out_movement = uow.record(
                MovementType.TRANSFER_OUT,
                product_id=product_id, zone=zone, quantity=-quantity, batch=source,
                note=_tagged(f'[MERGE->{target.pk}]', note),
            )
            in_movement = uow.record(
                MovementType.TRANSFER_IN,
                product_id=product_id, zone=target_zone, quantity=quantity, batch=target,
                note=_tagged(f'[MERGE_FROM:{source.pk}]', note),
            )
        _warn_zone_mismatch(target, target_zone, 'merge_batches')
        return TransferResult(out_movement, in_movement, target)

    @staticmethod
    def write_off(
        *,
        product_id,
        batch_id,
        quantity,
        zone: str,
        reason: str,
        note: str = '',
        actor=None,
    ) -> StockMovement:
        """Remove spoiled or rejected goods (WRITE_OFF) with a labelled reason."""
        product_id = to_uuid(product_id, field_name='product_id')
        quantity = to_quantity(quantity)
        validate_zone(zone)
        if reason not in WriteOffReason.values:
            raise BusinessRuleViolation(
                detail=f'Unknown write-off reason: {reason}.',
                context={'reason': reason, 'allowed': list(WriteOffReason.values)},
            )

        with unit_of_work('write_off', actor=actor) as uow:
            batch = BatchService.get_batch_for_product(batch_id, product_id)
            movement = uow.record(
                MovementType.WRITE_OFF,
                product_id=product_id,
                zone=zone,
                quantity=-quantity,
                batch=batch,
                note=_tagged(f'[{WriteOffReason(reason).label}]', note),
            )
        return movement

    @staticmethod
    def undo_write_off(*, movement_id, reason: str = '', actor=None) -> StockMovement:
        """
        Reverse a write-off with a compensating STOCK_CORRECTION at the same
        key. A write-off can be reversed once.
        """
        with unit_of_work('undo_write_off', actor=actor) as uow:
            original = LedgerService.get_movement(movement_id, lock=True)
            if original.movement_type != MovementType.WRITE_OFF:
                raise BusinessRuleViolation(
                    detail='Only write-off movements can be undone.',
                    context={'movement_id': str(original.pk), 'movement_type': original.movement_type},
                )
            if original.compensations.exists():
                raise BusinessRuleViolation(
                    detail='This write-off has already been undone.',
                    context={'movement_id': str(original.pk)},
                )
            uow.use_snapshot(
                original.product_id, name=original.product_name, code=original.product_code,
            )
            correction = uow.record(
                MovementType.STOCK_CORRECTION,
                product_id=original.product_id,
                zone=original.zone,
                quantity=abs(original.quantity),
                batch=original.batch,
                note=_tagged(f'[UNDO_WRITE_OFF {original.pk}]', reason),
                reference_movement=original,
            )
            AuditService.log(
                actor=actor,
                action=AUDIT_ACTION_REVERSAL,
                model_name='StockMovement',
                object_id=str(original.pk),
                new_values={'reversed_by': str(correction.pk), 'reason': reason or ''},
            )
        return correction

    @staticmethod
    def correct_stock(
        *,
        product_id,
        zone: str,
        quantity,
        batch_id=None,
        new_batch: dict | None = None,
        note: str = '',
        actor=None,
    ) -> StockMovement:
        """Manual inventory correction; ``quantity`` is signed and non-zero."""
        product_id = to_uuid(product_id, field_name='product_id')
        quantity = to_quantity(quantity, allow_negative=True)
        validate_zone(zone)
        if batch_id is not None and new_batch is not None:
            raise BusinessRuleViolation(
                detail='Provide at most one of batch_id or new_batch.',
                context={'product_id': str(product_id)},
            )

        with unit_of_work('correct_stock', actor=actor) as uow:
            batch = None
            if batch_id is not None:
                batch = BatchService.get_batch_for_product(batch_id, product_id)
            elif new_batch is not None:
                batch = _create_batch(uow, product_id, _new_batch_fields(new_batch))
            movement = uow.record(
                MovementType.STOCK_CORRECTION,
                product_id=product_id, zone=zone, quantity=quantity, batch=batch, note=note,
            )
        return movement

    @staticmethod
    def pick(
        *,
        product_id,
        batch_id,
        zone: str,
        quantity,
        order_id=None,
        reservation_id=None,
        note: str = '',
        actor=None,
    ) -> StockMovement:
        """
        Pick goods for an order (PICK). With ``reservation_id`` the same
        unit fulfils min(quantity, remaining) of that reservation.
        """
        product_id = to_uuid(product_id, field_name='product_id')
        quantity = to_quantity(quantity)
        validate_zone(zone)

        with unit_of_work('pick', actor=actor) as uow:
            batch = BatchService.get_batch_for_product(batch_id, product_id)
            reservation = None
            if reservation_id:
                reservation = ReservationService.get(reservation_id, lock=True)
                if reservation.product_id != product_id:
                    raise CrossReferenceError(
                        detail='The reservation belongs to a different product.',
                        context={
                            'reservation_id': str(reservation.pk),
                            'reservation_product_id': str(reservation.product_id),
                            'product_id': str(product_id),
                        },
                    )
                order_id = order_id or reservation.order_id
            movement = uow.record(
                MovementType.PICK,
                product_id=product_id,
                zone=zone,
                quantity=-quantity,
                batch=batch,
                order_id=order_id,
                note=note,
            )
            if reservation is not None and reservation.status == Reservation.Status.ACTIVE:
                ReservationService.partial_fulfill(
                    reservation_id=reservation.pk,
                    quantity=min(quantity, reservation.quantity),
                    actor=actor,
                )
        return movement

    @staticmethod
    def record_movement(
        *,
        movement_type: str,
        product_id,
        zone: str,
        quantity,
        batch_id=None,
        order_id=None,
        note: str = '',
        actor=None,
    ) -> StockMovement:
        """
        Single movement on behalf of an order or returns process. ``quantity``
        is a positive magnitude; the sign follows the movement type.
        """
        if movement_type not in COLLABORATOR_TYPES:
            raise BusinessRuleViolation(
                detail=f'{movement_type} cannot be recorded directly.',
                context={'movement_type': movement_type, 'allowed': sorted(COLLABORATOR_TYPES)},
            )
        product_id = to_uuid(product_id, field_name='product_id')
        quantity = to_quantity(quantity)
        validate_zone(zone)
        _field, sign = MOVEMENT_EFFECTS[movement_type]

        with unit_of_work('record_movement', actor=actor) as uow:
            batch = None
            if batch_id is not None:
                batch = BatchService.get_batch_for_product(batch_id, product_id)
            movement = uow.record(
                movement_type,
                product_id=product_id,
                zone=zone,
                quantity=quantity * sign,
                batch=batch,
                order_id=order_id,
                note=note,
            )
        return movement

    @staticmethod
    def list_write_offs(
        *,
        date_from=None,
        date_to=None,
        product_id=None,
        batch_id=None,
        q: str | None = None,
        page=1,
        page_size: int | None = None,
    ):
        return LedgerService.list_movements(
            movement_types=[MovementType.WRITE_OFF],
            date_from=date_from,
            date_to=date_to,
            product_id=product_id,
            batch_id=batch_id,
            q=q,
            page=page,
            page_size=page_size,
        )


class InboundService:
    """Announced inbound deliveries (in-transit stock)."""

    @staticmethod
    def announce(
        *,
        product_id,
        quantity,
        zone: str,
        expected_on,
        supplier_id=None,
        batch_id=None,
        note: str = '',
        actor=None,
    ) -> InboundDelivery:
        """Announce goods on the way; records INBOUND_RECORDED at (product, no batch, zone)."""
        product_id = to_uuid(product_id, field_name='product_id')
        quantity = to_quantity(quantity)
        validate_zone(zone)
        expected_on = to_date(expected_on, field_name='expected_on')
        supplier_id = to_uuid(supplier_id, field_name='supplier_id') if supplier_id else None

        with unit_of_work('announce_inbound', actor=actor) as uow:
            batch = None
            if batch_id is not None:
                batch = BatchService.get_batch_for_product(batch_id, product_id)
            product = uow.product(product_id)
            inbound = InboundDelivery.objects.create(
                product_id=product_id,
                product_name=product['name'],
                product_code=product['code'],
                supplier_id=supplier_id,
                supplier_name=get_supplier(supplier_id)['name'],
                batch=batch,
                zone=zone,
                expected_on=expected_on,
                quantity=quantity,
                created_by=actor,
            )
            uow.record(
                MovementType.INBOUND_RECORDED,
                product_id=product_id,
                zone=zone,
                quantity=quantity,
                note=_tagged(f'[INBOUND {inbound.pk}]', note),
            )
            AuditService.log(
                actor=actor,
                action=AUDIT_ACTION_CREATE,
                model_name='InboundDelivery',
                object_id=str(inbound.pk),
                new_values=AuditService.snapshot(
                    inbound, fields=['product_id', 'zone', 'expected_on', 'quantity', 'status'],
                ),
            )
        return inbound

    @staticmethod
    def register_receipt(
        uow: UnitOfWork,
        *,
        inbound_delivery_id,
        product_id,
        quantity,
        batch: Batch,
    ) -> InboundDelivery:
        """Release in-transit stock for goods received against an announcement."""
        inbound = InboundService.get(inbound_delivery_id, lock=True)
        if inbound.product_id != product_id:
            raise CrossReferenceError(
                detail='The inbound delivery belongs to a different product.',
                context={
                    'inbound_delivery_id': str(inbound.pk),
                    'inbound_product_id': str(inbound.product_id),
                    'product_id': str(product_id),
                },
            )
        if not inbound.is_open:
            raise InvalidStateTransition(
                detail=f'Inbound delivery is {inbound.status}.',
                context={'inbound_delivery_id': str(inbound.pk), 'status': inbound.status},
            )

        released = min(quantity, inbound.remaining)
        if released > 0:
            uow.record(
                MovementType.INBOUND_COMPLETED,
                product_id=product_id,
                zone=inbound.zone,
                quantity=-released,
                note=f'[INBOUND {inbound.pk}]',
            )
        old_status = inbound.status
        inbound.quantity_received += quantity
        inbound.status = (
            InboundDelivery.Status.COMPLETED
            if inbound.quantity_received >= inbound.quantity
            else InboundDelivery.Status.PARTIALLY_RECEIVED
        )
        if inbound.batch_id is None:
            inbound.batch = batch
        inbound.updated_by = uow.actor
        inbound.save(update_fields=['quantity_received', 'status', 'batch', 'updated_by', 'updated_at'])
        InboundService._log_status(inbound, old_status, uow.actor)
        return inbound

    @staticmethod
    def cancel(*, inbound_delivery_id, reason: str = '', actor=None) -> InboundDelivery:
        """Cancel an open announcement; the remaining in-transit quantity is released."""
        with unit_of_work('cancel_inbound', actor=actor) as uow:
            inbound = InboundService.get(inbound_delivery_id, lock=True)
            if not inbound.is_open:
                return inbound
            remaining = inbound.remaining
            if remaining > 0:
                uow.use_snapshot(
                    inbound.product_id, name=inbound.product_name, code=inbound.product_code,
                )
                uow.record(
                    MovementType.INBOUND_COMPLETED,
                    product_id=inbound.product_id,
                    zone=inbound.zone,
                    quantity=-remaining,
                    note=_tagged(f'[INBOUND_CANCELLED {inbound.pk}]', reason),
                )
            old_status = inbound.status
            inbound.status = InboundDelivery.Status.CANCELLED
            inbound.updated_by = actor
            inbound.save(update_fields=['status', 'updated_by', 'updated_at'])
            InboundService._log_status(inbound, old_status, actor, reason=reason)
        return inbound

    @staticmethod
    def get(inbound_delivery_id, *, lock: bool = False) -> InboundDelivery:
        inbound_delivery_id = to_uuid(inbound_delivery_id, field_name='inbound_delivery_id')
        qs = InboundDelivery.objects.select_for_update() if lock else InboundDelivery.objects.all()
        try:
            return qs.get(pk=inbound_delivery_id)
        except InboundDelivery.DoesNotExist:
            raise ResourceNotFoundError(
                detail='Inbound delivery not found.',
                context={'inbound_delivery_id': str(inbound_delivery_id)},
            )

    @staticmethod
    def list_inbound(
        *,
        product_id=None,
        status: str | None = None,
        expected_from=None,
        expected_to=None,
        page=1,
        page_size: int | None = None,
    ):
        qs = InboundDelivery.objects.all()
        if product_id:
            qs = qs.filter(product_id=to_uuid(product_id, field_name='product_id'))
        if status:
            qs = qs.filter(status=status)
        if expected_from:
            qs = qs.filter(expected_on__gte=to_date(expected_from, field_name='expected_from'))
        if expected_to:
            qs = qs.filter(expected_on__lte=to_date(expected_to, field_name='expected_to'))
        return paginate(qs.order_by('expected_on', 'created_at'), page=page, page_size=page_size)

    @staticmethod
    def _log_status(inbound: InboundDelivery, old_status: str, actor, reason: str = '') -> None:
        if old_status == inbound.status:
            return
        new_values = {'status': inbound.status, 'quantity_received': str(inbound.quantity_received)}
        if reason:
            new_values['reason'] = reason
        AuditService.log(
            actor=actor,
            action=AUDIT_ACTION_STATUS_CHANGE,
            model_name='InboundDelivery',
            object_id=str(inbound.pk),
            old_values={'status': old_status},
            new_values=new_values,
        )
        logger.info('InboundDelivery %s: %s -> %s', inbound.pk, old_status, inbound.status)
