"""
Shared fixtures for the pgpitr test suite.

Everything here runs in-process: SQLite catalog in a temporary directory,
in-memory engine and storage, and a retry policy with millisecond backoff.
"""

import tempfile
from pathlib import Path

import pytest

from pgpitr.pitr_server.archive import WalArchiver
from pgpitr.pitr_server.catalog import BackupCatalog
from pgpitr.pitr_server.engine import InMemoryEngine
from pgpitr.pitr_server.notify import InMemoryNotifier, NotificationHub
from pgpitr.pitr_server.retry import RetryPolicy
from pgpitr.pitr_server.storage import InMemoryStorageBackend


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
async def catalog(data_dir):
    """Create an initialized catalog."""
    catalog = BackupCatalog(Path(data_dir) / "catalog.db")
    await catalog.initialize()
    return catalog


@pytest.fixture
def storage():
    return InMemoryStorageBackend()


@pytest.fixture
def engine():
    return InMemoryEngine(instance_id="primary", segment_size=16)


@pytest.fixture
def fast_retry():
    """Retry policy that retries quickly."""
    return RetryPolicy(max_attempts=3, base_delay=0.001, max_delay=0.01, timeout=5.0, jitter=0.0)


@pytest.fixture
def events():
    return InMemoryNotifier()


@pytest.fixture
def notifier(events):
    return NotificationHub([events])


@pytest.fixture
def archiver(engine, storage, catalog, fast_retry, notifier):
    return WalArchiver(engine, storage, catalog, fast_retry, notifier)


@pytest.fixture
def archive_all():
    """Archive every segment an engine has completed so far.

    Closing the in-memory engine queues an end-of-stream marker behind the
    pending notices, so run() archives them all, drains and returns. The
    engine keeps producing notices afterwards.
    """

    async def _archive_all(engine, archiver):
        await engine.close()
        await archiver.run()

    return _archive_all
