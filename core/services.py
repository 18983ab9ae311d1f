"""
Core — Audit Service

Provides methods for writing audit log entries from any app.

@file core/services.py
"""

import logging
from decimal import Decimal
from typing import Any

from django.forms.models import model_to_dict

from core.models import AuditLog

logger = logging.getLogger('freshstock')


class AuditService:
    """Centralised audit logging for administrative writes."""

    @staticmethod
    def log(
        *,
        actor,
        action: str,
        model_name: str,
        object_id: str,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
    ) -> AuditLog:
        entry = AuditLog.objects.create(
            actor=actor,
            action=action,
            model_name=model_name,
            object_id=str(object_id),
            old_values=AuditService.clean(old_values),
            new_values=AuditService.clean(new_values),
        )
        logger.debug('Audit %s %s:%s', action, model_name, object_id)
        return entry

    @staticmethod
    def snapshot(instance, fields=None) -> dict[str, Any]:
        """
        Serialise a model instance to a plain dict suitable for JSON
        storage. Dates are ISO-formatted, UUIDs and Decimals stringified.
        """
        return AuditService.clean(model_to_dict(instance, fields=fields))

    @staticmethod
    def clean(values: dict[str, Any] | None) -> dict[str, Any] | None:
        if values is None:
            return None
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if value is None or isinstance(value, (bool, int, str)):
                cleaned[key] = value
            elif isinstance(value, Decimal):
                cleaned[key] = str(value)
            elif hasattr(value, 'isoformat'):
                cleaned[key] = value.isoformat()
            elif hasattr(value, 'pk'):
                cleaned[key] = str(value.pk)
            else:
                cleaned[key] = str(value)
        return cleaned
