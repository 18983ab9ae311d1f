"""
Core — Shared Constants

Audit action codes, pagination limits and inventory defaults used across
apps.

@file core/constants.py
"""

# ---------------------------------------------------------------------------
# Audit actions (mirror AuditLog.ActionChoices)
# ---------------------------------------------------------------------------

AUDIT_ACTION_CREATE = 'CREATE'
AUDIT_ACTION_UPDATE = 'UPDATE'
AUDIT_ACTION_STATUS_CHANGE = 'STATUS_CHANGE'
AUDIT_ACTION_REVERSAL = 'REVERSAL'


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


# ---------------------------------------------------------------------------
# Quantities
# ---------------------------------------------------------------------------

QUANTITY_MAX_DIGITS = 14
QUANTITY_DECIMAL_PLACES = 3
