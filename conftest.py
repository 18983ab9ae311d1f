"""
FreshStock — Root conftest for pytest

Shared fixtures available to all test modules.

@file conftest.py
"""

import uuid

import pytest

from tests import masterdata
from tests.factories import UserFactory


@pytest.fixture(autouse=True)
def product_registry():
    """Empty product/supplier master data for every test."""
    masterdata.reset()
    yield masterdata
    masterdata.reset()


@pytest.fixture
def user(db):
    """Active warehouse user with default password TestPass2026!"""
    return UserFactory()


@pytest.fixture
def product_id(product_registry):
    """A product known to master data ("Rinderhack", ART-100)."""
    pid = uuid.uuid4()
    product_registry.register_product(pid, name='Rinderhack', code='ART-100')
    return pid


@pytest.fixture
def other_product_id(product_registry):
    pid = uuid.uuid4()
    product_registry.register_product(pid, name='Hähnchenbrust', code='ART-200')
    return pid


@pytest.fixture
def supplier_id(product_registry):
    sid = uuid.uuid4()
    product_registry.register_supplier(sid, name='Schlachthof Nord')
    return sid
