"""
FreshStock — Test Settings

In-memory SQLite and deterministic master data. Activated by pytest
(see [tool.pytest.ini_options] in pyproject.toml).

@file config/settings/test.py
"""

from .base import *  # noqa: F401, F403

DEBUG = False

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    },
}

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

INVENTORY_PRODUCT_LOOKUP = 'tests.masterdata.lookup_product'
INVENTORY_SUPPLIER_LOOKUP = 'tests.masterdata.lookup_supplier'

LOGGING['loggers']['freshstock']['level'] = 'WARNING'  # noqa: F405
