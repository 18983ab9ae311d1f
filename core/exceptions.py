"""
Core — Exception Handling

Domain exceptions raised by the service layer. Every exception is a DRF
APIException so an API layer can render it with the right status code,
and carries a ``context`` dict (entity ids, aggregate key, attempted
delta) so the caller can reconstruct what was being attempted.

@file core/exceptions.py
"""

from rest_framework import status
from rest_framework.exceptions import APIException


class InventoryError(APIException):
    """Base for all inventory domain exceptions."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Inventory operation failed.'
    default_code = 'INVENTORY_ERROR'

    def __init__(self, detail=None, code=None, *, context=None):
        super().__init__(detail=detail, code=code)
        self.context = dict(context or {})


# ---------------------------------------------------------------------------
# Domain exceptions
# ---------------------------------------------------------------------------

class BusinessRuleViolation(InventoryError):
    """Malformed or out-of-range input. A caller defect, never retried."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Business rule violation.'
    default_code = 'VALIDATION_ERROR'


class CrossReferenceError(BusinessRuleViolation):
    """A batch (or reservation) belongs to a different product than stated."""
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Referenced records do not belong together.'
    default_code = 'CROSS_REFERENCE_MISMATCH'


class InvalidStateTransition(BusinessRuleViolation):
    """Raised when a state machine transition is not allowed."""
    default_detail = 'Invalid state transition.'
    default_code = 'INVALID_STATE_TRANSITION'


class ResourceNotFoundError(InventoryError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Resource not found.'
    default_code = 'RESOURCE_NOT_FOUND'


class ConcurrencyError(InventoryError):
    """The atomic unit could not commit under contention. Safe to retry."""
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Concurrent modification, please retry.'
    default_code = 'CONCURRENT_MODIFICATION'


class ReportTimeoutError(InventoryError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = 'Report exceeded its time budget.'
    default_code = 'REPORT_TIMEOUT'
