"""
Core — Master Data Lookups

Product and supplier master data live outside the inventory core. Their
display fields are read once at write time through the callables named
by INVENTORY_PRODUCT_LOOKUP / INVENTORY_SUPPLIER_LOOKUP and stored on the
inventory records as snapshots.

A lookup returns a dict (``{'name', 'code'}`` for products,
``{'name'}`` for suppliers) or None when the entity does not exist.

@file core/masterdata.py
"""

from django.conf import settings
from django.utils.module_loading import import_string

from core.exceptions import ResourceNotFoundError


def blank_product_lookup(product_id) -> dict:
    """Default lookup: every product exists, display fields unknown."""
    return {'name': '', 'code': ''}


def blank_supplier_lookup(supplier_id) -> dict:
    return {'name': ''}


def get_product(product_id) -> dict:
    """Resolve product display fields or raise ResourceNotFoundError."""
    lookup = import_string(settings.INVENTORY_PRODUCT_LOOKUP)
    product = lookup(product_id)
    if product is None:
        raise ResourceNotFoundError(
            detail='Product not found.', context={'product_id': str(product_id)},
        )
    return {
        'name': product.get('name') or '',
        'code': product.get('code') or '',
    }


def get_supplier(supplier_id) -> dict:
    """Resolve supplier display fields; an empty id resolves to blanks."""
    if not supplier_id:
        return {'name': ''}
    lookup = import_string(settings.INVENTORY_SUPPLIER_LOOKUP)
    supplier = lookup(supplier_id)
    if supplier is None:
        raise ResourceNotFoundError(
            detail='Supplier not found.', context={'supplier_id': str(supplier_id)},
        )
    return {'name': supplier.get('name') or ''}
