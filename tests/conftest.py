"""
Shared fixtures and fakes for the accounting_sync tests.

FakeClock gives every component the same controllable "now"; FakeProvider
is an in-memory stand-in for the accounting REST API; FakeOAuth stands in
for the provider's OAuth2 endpoints.
"""

import itertools
import logging
import threading
from datetime import datetime, timedelta, timezone

import pytest

from accounting_sync.api.accounting_api import ValidationError
from accounting_sync.auth.connection import IntegrationConnection
from accounting_sync.auth.oauth import Tenant, TokenResponse
from accounting_sync.auth.token_manager import TokenManager
from accounting_sync.storage.db import SyncDatabase
from accounting_sync.sync.error_log import SyncErrorLog
from accounting_sync.utils.dates import to_iso
from accounting_sync.utils.logging import ROOT_LOGGER_NAME

START = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeOAuth:
    """Records calls and returns scripted token responses."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.refresh_calls = 0
        self.refresh_errors: list[Exception] = []
        self.refresh_delay: threading.Event | None = None
        self.lifetime = timedelta(minutes=30)
        self.tenants = [Tenant("tenant-1", "Acme Ltd", "ORGANISATION")]
        self._lock = threading.Lock()

    def authorization_url(self, state: str) -> str:
        return f"https://login.example.com/authorize?state={state}"

    def exchange_code(self, code: str) -> TokenResponse:
        return TokenResponse(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expires_at=self.clock() + self.lifetime,
            scopes=["offline_access"],
        )

    def fetch_tenants(self, access_token: str) -> list[Tenant]:
        return list(self.tenants)

    def refresh(self, refresh_token: str) -> TokenResponse:
        with self._lock:
            self.refresh_calls += 1
            number = self.refresh_calls
            error = self.refresh_errors.pop(0) if self.refresh_errors else None
        if self.refresh_delay is not None:
            self.refresh_delay.wait(timeout=5)
        if error is not None:
            raise error
        return TokenResponse(
            access_token=f"access-{number}",
            refresh_token=f"refresh-{number}",
            expires_at=self.clock() + self.lifetime,
        )


class FakeProvider:
    """
    In-memory accounting API with the AccountingAPI call signatures.

    Records are payload dicts keyed by resource and id; every write stamps
    UpdatedDateUTC with the fake clock.
    """

    def __init__(self, clock: FakeClock, page_size: int = 100):
        self.clock = clock
        self.page_size = page_size
        self.records: dict[str, dict[str, dict]] = {}
        self.calls: list[tuple[str, str]] = []
        self.tokens_seen: list[str] = []
        # Exceptions raised by the next write calls, in order
        self.write_errors: list[Exception] = []
        self.list_errors: list[Exception] = []
        self.reject: dict[str, str] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def add(self, resource: str, payload: dict, updated_at: datetime | None = None) -> str:
        id_key = resource[:-1] + "ID"
        record_id = payload.get(id_key) or f"{resource[:-1].lower()}-{next(self._ids)}"
        stored = dict(payload)
        stored[id_key] = record_id
        stored["UpdatedDateUTC"] = to_iso(updated_at or self.clock())
        self.records.setdefault(resource, {})[record_id] = stored
        return record_id

    def get(self, resource: str, record_id: str) -> dict:
        return self.records[resource][record_id]

    def count(self, resource: str) -> int:
        return len(self.records.get(resource, {}))

    def writes(self) -> int:
        return sum(1 for op, _ in self.calls if op in ("create", "update"))

    def list_records(self, resource, access_token, tenant_id, page=1):
        with self._lock:
            self.calls.append(("list", resource))
            self.tokens_seen.append(access_token)
            if self.list_errors:
                raise self.list_errors.pop(0)
        items = list(self.records.get(resource, {}).values())
        start = (page - 1) * self.page_size
        return [dict(item) for item in items[start : start + self.page_size]]

    def get_record(self, resource, record_id, access_token, tenant_id):
        self.calls.append(("get", resource))
        return dict(self.records[resource][record_id])

    def create_record(self, resource, record, access_token, tenant_id):
        self._before_write("create", resource, record)
        with self._lock:
            record_id = self.add(resource, record)
        return dict(self.get(resource, record_id))

    def update_record(self, resource, record_id, record, access_token, tenant_id):
        self._before_write("update", resource, record)
        with self._lock:
            self.add(resource, {**record, resource[:-1] + "ID": record_id})
        return dict(self.get(resource, record_id))

    def _before_write(self, op: str, resource: str, record: dict) -> None:
        with self._lock:
            self.calls.append((op, resource))
            if self.write_errors:
                raise self.write_errors.pop(0)
        name = record.get("Name")
        if name in self.reject:
            raise ValidationError(self.reject[name], status_code=400)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    database = SyncDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def oauth(clock):
    return FakeOAuth(clock)


@pytest.fixture
def provider(clock):
    return FakeProvider(clock)


@pytest.fixture
def token_manager(db, oauth, clock):
    return TokenManager(db, oauth, clock=clock, sleep=lambda _: None)


@pytest.fixture
def error_log(db, clock):
    return SyncErrorLog(db, clock=clock)


@pytest.fixture
def connection(db, clock):
    """An active connection whose token is valid for another hour."""
    connection_id = db.insert_active_connection(
        tenant_id="tenant-1",
        tenant_name="Acme Ltd",
        access_token="access-0",
        refresh_token="refresh-0",
        expires_at=clock() + timedelta(hours=1),
        connected_at=clock() - timedelta(days=1),
    )
    return IntegrationConnection.from_row(db.get_connection_by_id(connection_id))


def add_contact(db, clock, name, **values):
    """Insert a local contact created at the current fake time."""
    return db.insert_entity(
        "contacts", {"name": name, **values}, created_at=clock()
    )


@pytest.fixture(autouse=True)
def reset_package_logger():
    """setup_logging() detaches the package logger; undo it between tests."""
    yield
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
