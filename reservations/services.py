"""
Reservations — Service Layer

create, partial_fulfill, cancel, update_reservation, get and
list_reservations. Every status change is written to the audit log.
Reservations never record movements or touch the stock aggregate.

@file reservations/services.py
"""

import logging

from django.db import transaction
from django.db.models import Q

from batches.services import BatchService
from core.constants import AUDIT_ACTION_CREATE, AUDIT_ACTION_STATUS_CHANGE, AUDIT_ACTION_UPDATE
from core.exceptions import BusinessRuleViolation, InvalidStateTransition, ResourceNotFoundError
from core.masterdata import get_product
from core.pagination import paginate
from core.parsing import to_date, to_quantity, to_uuid
from core.services import AuditService

from .models import Reservation

logger = logging.getLogger('freshstock')

RESERVATION_TRANSITIONS = {
    Reservation.Status.ACTIVE: {
        Reservation.Status.FULFILLED,
        Reservation.Status.CANCELLED,
    },
    Reservation.Status.FULFILLED: set(),
    Reservation.Status.CANCELLED: set(),
}


def _assert_transition(reservation: Reservation, new_status: str) -> None:
    allowed = RESERVATION_TRANSITIONS.get(reservation.status, set())
    if new_status not in allowed:
        raise InvalidStateTransition(
            detail=f'Cannot transition reservation from {reservation.status} to {new_status}.',
            context={'reservation_id': str(reservation.pk), 'status': reservation.status},
        )


def _log_status(reservation: Reservation, old_status: str, actor, **extra) -> None:
    AuditService.log(
        actor=actor,
        action=AUDIT_ACTION_STATUS_CHANGE,
        model_name='Reservation',
        object_id=str(reservation.pk),
        old_values={'status': old_status},
        new_values={'status': reservation.status, **extra},
    )
    logger.info('Reservation %s: %s -> %s', reservation.pk, old_status, reservation.status)


class ReservationService:
    """Reservation lifecycle: ACTIVE → FULFILLED | CANCELLED."""

    @staticmethod
    @transaction.atomic
    def create(
        *,
        product_id,
        order_id,
        delivery_date,
        quantity,
        batch_id=None,
        actor=None,
    ) -> Reservation:
        product_id = to_uuid(product_id, field_name='product_id')
        order_id = to_uuid(order_id, field_name='order_id')
        delivery_date = to_date(delivery_date, field_name='delivery_date')
        quantity = to_quantity(quantity)

        batch = None
        if batch_id is not None:
            batch = BatchService.get_batch_for_product(batch_id, product_id)
        product = get_product(product_id)

        reservation = Reservation.objects.create(
            product_id=product_id,
            product_name=product['name'],
            product_code=product['code'],
            batch=batch,
            order_id=order_id,
            delivery_date=delivery_date,
            quantity=quantity,
            original_quantity=quantity,
            created_by=actor,
        )
        AuditService.log(
            actor=actor,
            action=AUDIT_ACTION_CREATE,
            model_name='Reservation',
            object_id=str(reservation.pk),
            new_values=AuditService.snapshot(
                reservation,
                fields=['product_id', 'order_id', 'delivery_date', 'quantity', 'status'],
            ),
        )
        logger.info(
            'Reservation %s created: product=%s order=%s qty=%s delivery=%s',
            reservation.pk, product_id, order_id, quantity, delivery_date,
        )
        return reservation

    @staticmethod
    @transaction.atomic
    def partial_fulfill(*, reservation_id, quantity, actor=None) -> Reservation:
        """
        Reduce the remaining quantity. At zero the reservation becomes
        FULFILLED. A terminal reservation is returned unchanged.
        """
        quantity = to_quantity(quantity)
        reservation = ReservationService.get(reservation_id, lock=True)
        if reservation.is_terminal:
            return reservation
        if quantity > reservation.quantity:
            raise BusinessRuleViolation(
                detail='Fulfilled quantity exceeds the remaining reservation.',
                context={
                    'reservation_id': str(reservation.pk),
                    'remaining': str(reservation.quantity),
                    'quantity': str(quantity),
                },
            )

        old_status = reservation.status
        old_quantity = reservation.quantity
        reservation.quantity -= quantity
        if reservation.quantity == 0:
            _assert_transition(reservation, Reservation.Status.FULFILLED)
            reservation.status = Reservation.Status.FULFILLED
        reservation.updated_by = actor
        reservation.save(update_fields=['quantity', 'status', 'updated_by', 'updated_at'])

        if reservation.status != old_status:
            _log_status(reservation, old_status, actor, quantity=str(reservation.quantity))
        else:
            AuditService.log(
                actor=actor,
                action=AUDIT_ACTION_UPDATE,
                model_name='Reservation',
                object_id=str(reservation.pk),
                old_values={'quantity': str(old_quantity)},
                new_values={'quantity': str(reservation.quantity)},
            )
        return reservation

    @staticmethod
    @transaction.atomic
    def cancel(*, reservation_id, reason: str = '', actor=None) -> Reservation:
        """ACTIVE → CANCELLED. Cancelling a terminal reservation is a no-op."""
        reservation = ReservationService.get(reservation_id, lock=True)
        if reservation.is_terminal:
            return reservation
        _assert_transition(reservation, Reservation.Status.CANCELLED)
        old_status = reservation.status
        reservation.status = Reservation.Status.CANCELLED
        reservation.updated_by = actor
        reservation.save(update_fields=['status', 'updated_by', 'updated_at'])
        _log_status(reservation, old_status, actor, reason=reason or '')
        return reservation

    @staticmethod
    @transaction.atomic
    def update_reservation(
        *,
        reservation_id,
        delivery_date=None,
        quantity=None,
        actor=None,
    ) -> Reservation:
        """Move the delivery date or change the remaining quantity of an ACTIVE reservation."""
        reservation = ReservationService.get(reservation_id, lock=True)
        if reservation.is_terminal:
            raise InvalidStateTransition(
                detail='Only ACTIVE reservations can be updated.',
                context={'reservation_id': str(reservation.pk), 'status': reservation.status},
            )
        old = AuditService.snapshot(reservation, fields=['delivery_date', 'quantity', 'original_quantity'])
        if delivery_date is not None:
            reservation.delivery_date = to_date(delivery_date, field_name='delivery_date')
        if quantity is not None:
            quantity = to_quantity(quantity)
            reservation.original_quantity = reservation.fulfilled_quantity + quantity
            reservation.quantity = quantity
        reservation.updated_by = actor
        reservation.save(
            update_fields=['delivery_date', 'quantity', 'original_quantity', 'updated_by', 'updated_at'],
        )
        new = AuditService.snapshot(reservation, fields=['delivery_date', 'quantity', 'original_quantity'])
        if new != old:
            AuditService.log(
                actor=actor,
                action=AUDIT_ACTION_UPDATE,
                model_name='Reservation',
                object_id=str(reservation.pk),
                old_values=old,
                new_values=new,
            )
        return reservation

    @staticmethod
    def get(reservation_id, *, lock: bool = False) -> Reservation:
        reservation_id = to_uuid(reservation_id, field_name='reservation_id')
        qs = Reservation.objects.select_for_update() if lock else Reservation.objects.all()
        try:
            return qs.get(pk=reservation_id)
        except Reservation.DoesNotExist:
            raise ResourceNotFoundError(
                detail='Reservation not found.', context={'reservation_id': str(reservation_id)},
            )

    @staticmethod
    def list_reservations(
        *,
        product_id=None,
        order_id=None,
        status: str | None = None,
        delivery_from=None,
        delivery_to=None,
        q: str | None = None,
        page=1,
        page_size: int | None = None,
    ):
        qs = Reservation.objects.all()
        if product_id:
            qs = qs.filter(product_id=to_uuid(product_id, field_name='product_id'))
        if order_id:
            qs = qs.filter(order_id=to_uuid(order_id, field_name='order_id'))
        if status:
            qs = qs.filter(status=status)
        if delivery_from:
            qs = qs.filter(delivery_date__gte=to_date(delivery_from, field_name='delivery_from'))
        if delivery_to:
            qs = qs.filter(delivery_date__lte=to_date(delivery_to, field_name='delivery_to'))
        if q:
            q = q.strip()
            qs = qs.filter(Q(product_name__icontains=q) | Q(product_code__icontains=q))
        return paginate(qs.order_by('delivery_date', 'created_at'), page=page, page_size=page_size)
