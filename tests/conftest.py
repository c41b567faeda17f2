import pytest

from astralis_api.api.dependencies import reset_backends
from astralis_api.billing.ingestor import webhook_store_failures


@pytest.fixture(autouse=True)
def _fresh_backends():
    reset_backends()
    webhook_store_failures.reset()
    yield
    reset_backends()
    webhook_store_failures.reset()
