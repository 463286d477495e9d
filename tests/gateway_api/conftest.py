"""Wires the API app to in-memory stores and fake pools."""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from dal.pool_manager import PoolManager
from gateway.facade import DataSourceGateway
from gateway_api import app as gateway_app
from tests._support.fakes import FakePoolFactory, InMemoryCatalog, InMemoryConnectionStore

FIXED_NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def api():
    """Return the test client plus the fakes behind it."""
    catalog = InMemoryCatalog()
    store = InMemoryConnectionStore(catalog, clock=lambda: FIXED_NOW)
    factory = FakePoolFactory()
    gateway = DataSourceGateway(
        store=store,
        catalog=catalog,
        pool_manager=PoolManager(pool_factory=factory),
        clock=lambda: FIXED_NOW,
    )
    gateway_app.app.dependency_overrides[gateway_app.get_gateway] = lambda: gateway
    client = TestClient(gateway_app.app, raise_server_exceptions=False)
    yield SimpleNamespace(
        client=client, gateway=gateway, store=store, catalog=catalog, factory=factory
    )
    gateway_app.app.dependency_overrides.clear()


def as_user(user_id: str) -> dict:
    return {"X-User-Id": user_id}
