import asyncio
import ssl

import pytest

from dal.pool_manager import (
    AcquirePurpose,
    PoolAcquireError,
    PoolManager,
    build_ssl_option,
    timeout_profile,
)
from dal.pool_registry import PoolRegistry
from tests._support.fakes import FakePoolFactory, make_record


@pytest.mark.asyncio
async def test_acquire_closes_pool_once_on_success():
    """Connection is released before the pool is closed, exactly once."""
    factory = FakePoolFactory()
    manager = PoolManager(pool_factory=factory)

    async with manager.acquire(make_record(), AcquirePurpose.QUERY) as client:
        assert await client.fetchval("SELECT 1") == 1

    assert len(factory.pools) == 1
    assert factory.pools[0].events == ["acquire", "release", "close"]


@pytest.mark.asyncio
async def test_acquire_closes_pool_once_on_error():
    """Errors raised by the caller still tear the pool down."""
    factory = FakePoolFactory()
    manager = PoolManager(pool_factory=factory)

    with pytest.raises(RuntimeError, match="boom"):
        async with manager.acquire(make_record(), AcquirePurpose.SCHEMA):
            raise RuntimeError("boom")

    assert factory.total_closes == 1
    assert factory.pools[0].released == 1


@pytest.mark.asyncio
async def test_acquire_closes_pool_on_cancellation():
    """A cancelled operation still releases and closes."""
    factory = FakePoolFactory()
    manager = PoolManager(pool_factory=factory)
    started = asyncio.Event()

    async def _hold():
        async with manager.acquire(make_record(), AcquirePurpose.QUERY):
            started.set()
            await asyncio.sleep(10)

    task = asyncio.create_task(_hold())
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert factory.total_closes == 1


@pytest.mark.asyncio
async def test_pool_creation_failure_raises_acquire_error():
    """Unreachable hosts surface as PoolAcquireError with the upstream message."""
    factory = FakePoolFactory(error=ConnectionRefusedError(111, "Connection refused"))
    manager = PoolManager(pool_factory=factory)

    with pytest.raises(PoolAcquireError, match="Connection refused"):
        async with manager.acquire(make_record(), AcquirePurpose.HEALTH_CHECK):
            pytest.fail("body must not run")

    assert factory.pools == []


@pytest.mark.asyncio
async def test_pool_creation_timeout(monkeypatch):
    """Slow pool creation is bounded by the connect timeout."""
    monkeypatch.setenv("DAL_HEALTH_CHECK_CONNECT_TIMEOUT_SECONDS", "0.05")
    factory = FakePoolFactory(delay=5)
    manager = PoolManager(pool_factory=factory)

    with pytest.raises(PoolAcquireError, match="timed out"):
        async with manager.acquire(make_record(), AcquirePurpose.HEALTH_CHECK):
            pytest.fail("body must not run")


@pytest.mark.asyncio
async def test_checkout_failure_still_closes_pool():
    """A pool that opened but could not hand out a connection is closed."""
    factory = FakePoolFactory(acquire_error=asyncio.TimeoutError())
    manager = PoolManager(pool_factory=factory)

    with pytest.raises(PoolAcquireError):
        async with manager.acquire(make_record(), AcquirePurpose.QUERY):
            pytest.fail("body must not run")

    assert factory.total_closes == 1


@pytest.mark.asyncio
async def test_pool_kwargs_follow_record_and_profile():
    """Credentials, sizing and the purpose's budgets reach the driver."""
    factory = FakePoolFactory()
    manager = PoolManager(pool_factory=factory, max_size=3)
    record = make_record(options={"server_settings": {"search_path": "app"}})

    async with manager.acquire(record, AcquirePurpose.HEALTH_CHECK):
        pass

    kwargs = factory.kwargs[0]
    assert kwargs["host"] == "localhost"
    assert kwargs["password"] == "p"
    assert kwargs["min_size"] == 1
    assert kwargs["max_size"] == 3
    assert kwargs["timeout"] == 5.0
    assert kwargs["command_timeout"] == 5.0
    assert kwargs["ssl"] is False
    assert kwargs["server_settings"]["search_path"] == "app"
    assert kwargs["server_settings"]["application_name"] == "datasource_gateway"


def test_timeout_profiles_defaults_and_overrides(monkeypatch):
    """Defaults match the purpose; non-positive overrides fall back."""
    assert timeout_profile(AcquirePurpose.SCHEMA).connect_timeout == 10.0
    assert timeout_profile(AcquirePurpose.SCHEMA).command_timeout == 30.0
    assert timeout_profile(AcquirePurpose.QUERY).connect_timeout == 30.0

    monkeypatch.setenv("DAL_QUERY_TIMEOUT_SECONDS", "12")
    monkeypatch.setenv("DAL_QUERY_CONNECT_TIMEOUT_SECONDS", "0")
    profile = timeout_profile(AcquirePurpose.QUERY)
    assert profile.command_timeout == 12.0
    assert profile.connect_timeout == 30.0


def test_ssl_option_skips_verification_by_default():
    """The TLS flag encrypts without verifying unless explicitly enabled."""
    assert build_ssl_option(False) is False
    context = build_ssl_option(True)
    assert isinstance(context, ssl.SSLContext)
    assert context.verify_mode == ssl.CERT_NONE
    assert context.check_hostname is False


def test_ssl_option_verifies_when_enabled(monkeypatch):
    """DAL_TARGET_TLS_VERIFY turns full verification on."""
    monkeypatch.setenv("DAL_TARGET_TLS_VERIFY", "true")
    context = build_ssl_option(True)
    assert context.verify_mode == ssl.CERT_REQUIRED
    assert context.check_hostname is True


@pytest.mark.asyncio
async def test_registry_mode_reuses_pool_until_close():
    """With a registry, pools outlive a single acquisition."""
    factory = FakePoolFactory()
    manager = PoolManager(pool_factory=factory, registry=PoolRegistry(idle_seconds=300))
    record = make_record()

    for _ in range(2):
        async with manager.acquire(record, AcquirePurpose.QUERY):
            pass

    assert len(factory.pools) == 1
    assert factory.pools[0].released == 2
    assert factory.total_closes == 0

    await manager.close()
    assert factory.total_closes == 1


def test_from_env_enables_registry(monkeypatch):
    """DAL_POOL_REGISTRY_ENABLED opts into the keyed registry."""
    assert PoolManager.from_env().registry is None
    monkeypatch.setenv("DAL_POOL_REGISTRY_ENABLED", "true")
    assert isinstance(PoolManager.from_env().registry, PoolRegistry)


@pytest.mark.asyncio
async def test_registry_mode_traces_pool_open(monkeypatch):
    """Cached pools are opened inside the same pool-open span as per-call pools."""
    spans = []

    async def _record_span(name, engine, operation, **attrs):
        spans.append((name, attrs["purpose"]))
        return await operation

    monkeypatch.setattr("dal.pool_manager.trace_gateway_operation", _record_span)
    manager = PoolManager(pool_factory=FakePoolFactory(), registry=PoolRegistry())
    record = make_record()

    for _ in range(2):
        async with manager.acquire(record, AcquirePurpose.SCHEMA):
            pass

    assert spans == [("gateway.pool.open", "schema")]
