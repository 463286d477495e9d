"""Unit test environment helpers."""

import pytest


@pytest.fixture(autouse=True)
def _minimal_env(monkeypatch):
    """Keep unit tests off any real control-plane database."""
    for name in ("CONTROL_DB_HOST", "DAL_CLASSIFIED_ERROR_TELEMETRY"):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture(autouse=True)
def _reset_control_plane_state():
    """Reset global ControlPlaneDatabase state after each test."""
    from dal.control_plane import ControlPlaneDatabase

    original_pool = ControlPlaneDatabase._pool

    yield

    ControlPlaneDatabase._pool = original_pool
