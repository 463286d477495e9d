from contextlib import asynccontextmanager
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from dal.connection_record import ConnectionStatus
from dal.connection_store import ConnectionInUseError, ConnectionStore
from dal.connection_validation import ConnectionValidationError


def _row(**overrides):
    row = {
        "id": uuid4(),
        "name": "local",
        "type": "postgresql",
        "host": "localhost",
        "port": 5432,
        "database": "db1",
        "username": "u",
        "password": "p",
        "ssl": False,
        "options": {},
        "status": "inactive",
        "last_tested_at": None,
        "created_by": "owner",
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "updated_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    row.update(overrides)
    return row


class _FakeConn:
    def __init__(self, fetchrow_result=None, fetchval_results=None):
        self.fetchrow_result = fetchrow_result
        self.fetchval_results = list(fetchval_results or [])
        self.calls = []

    async def fetchrow(self, sql, *args):
        self.calls.append(("fetchrow", sql, args))
        return self.fetchrow_result

    async def fetch(self, sql, *args):
        self.calls.append(("fetch", sql, args))
        return [self.fetchrow_result] if self.fetchrow_result else []

    async def fetchval(self, sql, *args):
        self.calls.append(("fetchval", sql, args))
        return self.fetchval_results.pop(0)

    async def execute(self, sql, *args):
        self.calls.append(("execute", sql, args))
        return "DELETE 1"


@pytest.fixture
def fake_control_plane(monkeypatch):
    conn = _FakeConn()

    @asynccontextmanager
    async def fake_conn_ctx():
        yield conn

    monkeypatch.setattr("dal.connection_store.ControlPlaneDatabase.get_connection", fake_conn_ctx)
    return conn


@pytest.mark.asyncio
async def test_create_persists_inactive_record(fake_control_plane):
    """A created connection starts inactive and keeps the secret internal."""
    fake_control_plane.fetchrow_result = _row(password="hunter2")
    record = await ConnectionStore.create(
        "owner",
        {
            "name": "local",
            "host": "localhost",
            "port": 5432,
            "database": "db1",
            "username": "u",
            "password": "hunter2",
        },
    )

    _, sql, args = fake_control_plane.calls[0]
    assert "INSERT INTO database_connections" in sql
    assert args[-2:] == ("inactive", "owner")
    assert record.status == ConnectionStatus.INACTIVE
    assert "secret" not in record.to_public()
    assert "hunter2" not in repr(record)


@pytest.mark.asyncio
async def test_create_missing_fields_writes_nothing(fake_control_plane):
    """Validation happens before any statement is issued."""
    with pytest.raises(ConnectionValidationError):
        await ConnectionStore.create("owner", {"name": "local"})
    assert fake_control_plane.calls == []


@pytest.mark.asyncio
async def test_update_builds_partial_set_clause(fake_control_plane):
    """Only provided columns are updated; secret maps to the password column."""
    fake_control_plane.fetchrow_result = _row(host="db.internal")
    record = await ConnectionStore.update(uuid4(), {"host": "db.internal", "secret": "s3"})

    _, sql, args = fake_control_plane.calls[0]
    assert "host = $2" in sql
    assert "password = $3" in sql
    assert "status" not in sql
    assert args[1:] == ("db.internal", "s3")
    assert record.host == "db.internal"


@pytest.mark.asyncio
async def test_update_rejects_status(fake_control_plane):
    """Status is not writable through update."""
    with pytest.raises(ValueError, match="not updatable"):
        await ConnectionStore.update(uuid4(), {"status": "active"})


@pytest.mark.asyncio
async def test_delete_blocked_by_tiles(fake_control_plane):
    """Referenced connections cannot be deleted."""
    fake_control_plane.fetchval_results = [1, 2]
    with pytest.raises(ConnectionInUseError) as excinfo:
        await ConnectionStore.delete(uuid4())
    assert excinfo.value.tile_count == 2
    assert not [call for call in fake_control_plane.calls if call[0] == "execute"]


@pytest.mark.asyncio
async def test_delete_missing_returns_false(fake_control_plane):
    """Unknown ids report False."""
    fake_control_plane.fetchval_results = [None]
    assert await ConnectionStore.delete(uuid4()) is False


@pytest.mark.asyncio
async def test_delete_unreferenced(fake_control_plane):
    """Unreferenced connections are deleted in the same transaction as the check."""
    fake_control_plane.fetchval_results = [1, 0]
    assert await ConnectionStore.delete(uuid4()) is True
    assert fake_control_plane.calls[-1][0] == "execute"


@pytest.mark.asyncio
async def test_record_failed_test_keeps_last_tested_at(fake_control_plane):
    """A failed test passes None so COALESCE keeps the previous timestamp."""
    previous = datetime(2024, 2, 1, tzinfo=timezone.utc)
    fake_control_plane.fetchrow_result = _row(status="inactive", last_tested_at=previous)
    record = await ConnectionStore.record_test_result(uuid4(), ConnectionStatus.INACTIVE, None)

    _, sql, args = fake_control_plane.calls[0]
    assert "COALESCE($3, last_tested_at)" in sql
    assert args[1:] == ("inactive", None)
    assert record.last_tested_at == previous
