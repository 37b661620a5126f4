"""Shared pytest fixtures."""
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from PyQt6.QtCore import QCoreApplication

from wfo_client.connectivity import ConnectivityMonitor
from wfo_client.sync_service import SyncService
from wfo_shared.local_store import LocalStore
from wfo_shared.models import ApiResponse, SyncConfig


class FakeRemote:
    """Records every remote call in order and replays canned responses.

    ``errors`` and ``data`` are keyed by (method, table). An error entry may be
    a message, an exception instance to raise, or a list consumed one call at a
    time (None in the list means success).
    """

    def __init__(self):
        self.calls = []
        self.errors = {}
        self.data = {}
        self.healthy = True

    def _respond(self, method, table, payload, **kwargs):
        self.calls.append((method, table, payload, kwargs))
        key = (method, table)

        error = self.errors.get(key)
        if isinstance(error, list):
            error = error.pop(0) if error else None
        if isinstance(error, Exception):
            raise error
        if error:
            return ApiResponse(error=error, status_code=400)
        return ApiResponse(data=self.data.get(key), status_code=200)

    def calls_to(self, method, table=None):
        return [c for c in self.calls if c[0] == method and (table is None or c[1] == table)]

    def health(self):
        return self.healthy

    def insert(self, table, rows, returning=False):
        return self._respond('insert', table, rows, returning=returning)

    def update(self, table, values, filters):
        return self._respond('update', table, values, filters=filters)

    def upsert(self, table, row, on_conflict=None):
        return self._respond('upsert', table, row, on_conflict=on_conflict)

    def select(self, table, columns='*', filters=None, in_filters=None, order=None):
        return self._respond('select', table, None, columns=columns, filters=filters,
                             in_filters=in_filters, order=order)

    def select_single(self, table, columns='*', filters=None):
        return self._respond('select_single', table, None, columns=columns, filters=filters)


class FixedClock:
    """Deterministic clock that only moves when told to"""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture(scope="session", autouse=True)
def qapp():
    """One QCoreApplication for the whole run"""
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app


@pytest.fixture
def store(tmp_path: Path) -> LocalStore:
    return LocalStore(tmp_path / "test_offline.db")


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def config() -> SyncConfig:
    return SyncConfig(supabase_url="https://example.supabase.co", api_key="anon-key")


@pytest.fixture
def monitor() -> ConnectivityMonitor:
    return ConnectivityMonitor(initial_online=True)


@pytest.fixture
def service(store, remote, monitor, config, clock) -> SyncService:
    """Sync service whose background triggers run inline"""
    svc = SyncService(
        store,
        api=remote,
        monitor=monitor,
        config=config,
        clock=clock,
        background_runner=lambda fn: fn()
    )
    yield svc
    svc.stop()
