import os

_defaults = {
    "DATABASE_URL": "sqlite:///:memory:",
    "API_KEY": "test-key",
    "CATALOG_SERVICE_URL": "http://fake-catalog",
    "CATALOG_API_KEY": "catalog-test-key",
    "LOG_LEVEL": "DEBUG",
}

for k, v in _defaults.items():
    os.environ.setdefault(k, v)
