"""
Shared pytest fixtures for offsite tests.

This module provides fixtures for:
- Flask app, database and CLI runner (in-memory SQLite)
- A controllable clock
- An in-memory provider adapter and destinations built on it
- Stores wired to the test database
"""

from typing import Dict, List, Optional

import pytest

from offsite import create_app, db as _db
from offsite.destinations.chunking import Chunk
from offsite.destinations.engine import Destination
from offsite.destinations.errors import TransferError
from offsite.destinations.providers.base import Provider
from offsite.destinations.registry import DestinationRegistry
from offsite.destinations.types import RemoteObject, StorageUsage
from offsite.events import EventBus
from offsite.persistence import OptionStore, TaskLockManager
from offsite.purge.forecast import SlaForecaster
from offsite.purge.manifest import ManifestStore


class FakeClock:
    """Callable clock returning a settable epoch time."""

    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int):
        self.now += seconds


class FakeProvider(Provider):
    """
    In-memory provider adapter.

    Deletes fail with a TransferError while `delete_failures` is positive;
    chunk uploads fail for the indexes listed in `chunk_failures` (each
    listed once per failure).
    """

    provider_id = 'fake'
    label = 'Fake'

    def __init__(self, settings=None, clock=None, chunk_size: int = 0,
                 delete_failures: int = 0, usage: Optional[StorageUsage] = None,
                 configured: bool = True):
        super().__init__(settings or {}, clock=clock)
        self.objects: Dict[str, RemoteObject] = {}
        self.delete_calls: List[str] = []
        self.delete_failures = delete_failures
        self.chunk_failures: List[int] = []
        self.uploaded_chunks: List[Chunk] = []
        self.committed: List[List] = []
        self.aborted: List = []
        self.usage = usage
        self.configured = configured
        self._chunk_size = chunk_size

    def add(self, name: str, size_bytes: int = 100, modified_at: int = 0) -> RemoteObject:
        obj = RemoteObject(name=name, size_bytes=size_bytes, modified_at=modified_at, key=name)
        self.objects[name] = obj
        return obj

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    def is_configured(self) -> bool:
        return self.configured

    def should_chunk(self, size: int) -> bool:
        return bool(self._chunk_size) and size > self._chunk_size

    def upload_single(self, local_path, remote_name, size):
        self.add(remote_name, size, self.now())

    def begin_chunked(self, remote_name, size):
        return {'name': remote_name, 'size': size}

    def upload_chunk(self, handle, chunk, data, total_size):
        if chunk.index in self.chunk_failures:
            self.chunk_failures.remove(chunk.index)
            raise TransferError(500, f"chunk {chunk.index} rejected")
        assert len(data) == chunk.length
        self.uploaded_chunks.append(chunk)
        return f"token-{chunk.index}"

    def commit_chunked(self, handle, tokens):
        self.committed.append(list(tokens))
        self.add(handle['name'], handle['size'], self.now())

    def abort_chunked(self, handle):
        self.aborted.append(handle)

    def list_objects(self):
        return list(self.objects.values())

    def delete_object(self, obj):
        self.delete_calls.append(obj.name)
        if self.delete_failures > 0:
            self.delete_failures -= 1
            raise TransferError(500, 'fail')
        self.objects.pop(obj.name, None)

    def fetch_usage(self):
        return self.usage


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing')
    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def clock():
    """Deterministic clock starting at a fixed epoch."""
    return FakeClock()


@pytest.fixture
def options(db):
    """OptionStore bound to the test database."""
    return OptionStore()


@pytest.fixture
def locks(db, clock):
    return TaskLockManager(clock=clock)


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def manifest_store(options, clock):
    return ManifestStore(options, clock=clock, max_incrementals=3)


@pytest.fixture
def forecaster(options, clock):
    return SlaForecaster(options, clock=clock)


@pytest.fixture
def make_destination(clock):
    """
    Factory for Destinations backed by a FakeProvider.

    Usage: destination = make_destination('fake', delete_failures=1)
    The provider is available as destination.provider.
    """
    def _make(destination_id: str = 'fake', **provider_kwargs) -> Destination:
        provider = FakeProvider(clock=clock, **provider_kwargs)
        return Destination(destination_id, destination_id.title(), provider, clock=clock)

    return _make


@pytest.fixture
def registry():
    """Empty registry; tests register fakes on it."""
    return DestinationRegistry()


@pytest.fixture
def backup_file(tmp_path):
    """Write a backup archive of the given size and return its path."""
    def _write(name: str = 'site-backup.zip', size: int = 1000) -> str:
        path = tmp_path / name
        path.write_bytes(bytes(index % 251 for index in range(size)))
        return str(path)

    return _write
