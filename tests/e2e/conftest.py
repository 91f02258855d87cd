"""
E2E test fixtures for pgpitr.

These tests require a running pgpitr server attached to a real PostgreSQL
instance and storage backend. Point PGPITR_E2E_URL at its HTTP trigger API.
"""

import os
import socket
import time
from urllib.parse import urlparse

import pytest

# Skip E2E tests if not in E2E mode
E2E_ENABLED = os.environ.get("PGPITR_E2E_TESTS", "0") == "1"

pytestmark = pytest.mark.skipif(
    not E2E_ENABLED,
    reason="E2E tests disabled. Set PGPITR_E2E_TESTS=1 to enable."
)


def wait_for_service(host: str, port: int, timeout: int = 60) -> bool:
    """Wait for a service to become available."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1):
                return True
        except OSError:
            time.sleep(1)
    return False


@pytest.fixture(scope="session")
def http_base_url() -> str:
    """HTTP base URL of the trigger API."""
    url = os.environ.get("PGPITR_E2E_URL", "http://127.0.0.1:8085")
    parsed = urlparse(url)
    assert wait_for_service(parsed.hostname, parsed.port or 80), "pgpitr HTTP API not ready"
    return url


@pytest.fixture
def restore_point_name() -> str:
    """Unique restore point name for test isolation."""
    import uuid
    return f"e2e-{uuid.uuid4().hex[:8]}"
