"""Scoped, time-boxed pools against user-registered databases.

Every gateway operation opens its own asyncpg pool for one connection record and
tears it down when the operation ends, whatever the outcome. ``PoolManager.acquire``
is the only way to reach an external database, and it is an async context manager
so release cannot be skipped.
"""

import asyncio
import logging
import ssl
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Union

import asyncpg

from common.config.env import get_env_bool, get_env_int, get_positive_float
from dal.connection_record import ConnectionRecord
from dal.pool_registry import PoolRegistry
from dal.tracing import trace_gateway_operation
from dal.util.timeouts import ConnectTimeoutError, run_with_timeout

logger = logging.getLogger(__name__)

PoolFactory = Callable[..., Awaitable[Any]]


class AcquirePurpose(str, Enum):
    """Why a pool is being opened; selects the timeout profile."""

    HEALTH_CHECK = "health_check"
    SCHEMA = "schema"
    QUERY = "query"


@dataclass(frozen=True)
class TimeoutProfile:
    """Connect and per-statement budgets in seconds."""

    connect_timeout: float
    command_timeout: float


_PROFILE_DEFAULTS = {
    AcquirePurpose.HEALTH_CHECK: (
        ("DAL_HEALTH_CHECK_CONNECT_TIMEOUT_SECONDS", 5.0),
        ("DAL_HEALTH_CHECK_COMMAND_TIMEOUT_SECONDS", 5.0),
    ),
    AcquirePurpose.SCHEMA: (
        ("DAL_SCHEMA_CONNECT_TIMEOUT_SECONDS", 10.0),
        ("DAL_SCHEMA_COMMAND_TIMEOUT_SECONDS", 30.0),
    ),
    AcquirePurpose.QUERY: (
        ("DAL_QUERY_CONNECT_TIMEOUT_SECONDS", 30.0),
        ("DAL_QUERY_TIMEOUT_SECONDS", 30.0),
    ),
}


def timeout_profile(purpose: AcquirePurpose) -> TimeoutProfile:
    """Resolve the timeout profile for a purpose from env with defaults."""
    (connect_env, connect_default), (command_env, command_default) = _PROFILE_DEFAULTS[purpose]
    return TimeoutProfile(
        connect_timeout=get_positive_float(connect_env, connect_default),
        command_timeout=get_positive_float(command_env, command_default),
    )


class PoolAcquireError(RuntimeError):
    """Raised when no pool/connection could be opened for a connection record."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        """Initialize with the upstream message and original exception."""
        super().__init__(message)
        self.message = message
        self.cause = cause


def build_ssl_option(enabled: bool) -> Union[ssl.SSLContext, bool]:
    """Return the asyncpg ``ssl`` argument for a connection's TLS flag.

    With the flag set, certificates are NOT verified unless
    DAL_TARGET_TLS_VERIFY=true. Known gap, kept for compatibility with
    existing registrations that point at self-signed servers.
    """
    if not enabled:
        return False
    context = ssl.create_default_context()
    if get_env_bool("DAL_TARGET_TLS_VERIFY", False):
        return context
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


class PooledClient:
    """One connection checked out of a scoped pool, with the purpose's budgets."""

    def __init__(
        self,
        record: ConnectionRecord,
        conn: asyncpg.Connection,
        purpose: AcquirePurpose,
        profile: TimeoutProfile,
    ) -> None:
        """Wrap a checked-out connection."""
        self.record = record
        self.connection = conn
        self.purpose = purpose
        self.profile = profile

    @property
    def engine(self) -> str:
        """Return the engine tag of the target database."""
        return self.record.engine_type

    @property
    def command_timeout(self) -> float:
        """Return the per-statement budget for this client."""
        return self.profile.command_timeout

    async def fetch(self, sql: str, *params: Any) -> list:
        """Fetch rows with the client's command timeout."""
        return await self.connection.fetch(sql, *params, timeout=self.command_timeout)

    async def fetchval(self, sql: str, *params: Any) -> Any:
        """Fetch a single value with the client's command timeout."""
        return await self.connection.fetchval(sql, *params, timeout=self.command_timeout)


class PoolManager:
    """Opens per-operation pools and guarantees their teardown."""

    def __init__(
        self,
        pool_factory: Optional[PoolFactory] = None,
        registry: Optional[PoolRegistry] = None,
        max_size: Optional[int] = None,
    ) -> None:
        """Initialize with an optional factory (defaults to asyncpg.create_pool)."""
        self._pool_factory = pool_factory or asyncpg.create_pool
        self._registry = registry
        self._max_size = max_size or get_env_int("DAL_TARGET_POOL_MAX_SIZE", 5)

    @classmethod
    def from_env(cls) -> "PoolManager":
        """Build a manager, enabling the keyed registry when configured."""
        registry = None
        if get_env_bool("DAL_POOL_REGISTRY_ENABLED", False):
            registry = PoolRegistry(
                idle_seconds=get_positive_float("DAL_POOL_REGISTRY_IDLE_SECONDS", 300.0)
            )
            logger.info("Keyed pool registry enabled")
        return cls(registry=registry)

    @property
    def registry(self) -> Optional[PoolRegistry]:
        """Return the keyed registry, if enabled."""
        return self._registry

    def _pool_kwargs(self, record: ConnectionRecord, profile: TimeoutProfile) -> Dict[str, Any]:
        server_settings = {"application_name": "datasource_gateway"}
        extra = (record.options or {}).get("server_settings")
        if isinstance(extra, dict):
            server_settings.update({str(k): str(v) for k, v in extra.items()})
        return {
            "host": record.host,
            "port": record.port,
            "database": record.database,
            "user": record.username,
            "password": record.secret,
            "ssl": build_ssl_option(record.ssl),
            "min_size": 1,
            "max_size": self._max_size,
            "timeout": profile.connect_timeout,
            "command_timeout": profile.command_timeout,
            "server_settings": server_settings,
        }

    async def _open_pool(self, record: ConnectionRecord, profile: TimeoutProfile) -> Any:
        async def _create():
            return await self._pool_factory(**self._pool_kwargs(record, profile))

        try:
            return await run_with_timeout(
                _create,
                profile.connect_timeout,
                engine=record.engine_type,
                operation_name="connect",
                error_cls=ConnectTimeoutError,
            )
        except ConnectTimeoutError as exc:
            raise PoolAcquireError(str(exc), exc) from exc
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise PoolAcquireError(str(exc), exc) from exc

    async def _close_pool(self, record: ConnectionRecord, pool: Any) -> None:
        try:
            await pool.close()
        except Exception as exc:
            logger.warning("Graceful close failed for connection %s: %s", record.id, exc)
            pool.terminate()

    def _traced_open(
        self, record: ConnectionRecord, purpose: AcquirePurpose, profile: TimeoutProfile
    ):
        return trace_gateway_operation(
            "gateway.pool.open",
            engine=record.engine_type,
            connection_id=str(record.id),
            purpose=purpose.value,
            operation=self._open_pool(record, profile),
        )

    @asynccontextmanager
    async def acquire(
        self, record: ConnectionRecord, purpose: AcquirePurpose
    ) -> AsyncIterator[PooledClient]:
        """Yield a client for ``record``; the pool is released on every exit path."""
        profile = timeout_profile(purpose)
        if self._registry is not None:
            async with self._registry.lease(
                record, lambda: self._traced_open(record, purpose, profile)
            ) as pool:
                async with self._checkout(record, pool, purpose, profile) as client:
                    yield client
            return

        pool = await self._traced_open(record, purpose, profile)
        try:
            async with self._checkout(record, pool, purpose, profile) as client:
                yield client
        finally:
            await self._close_pool(record, pool)
            logger.debug("Closed %s pool for connection %s", purpose.value, record.id)

    @asynccontextmanager
    async def _checkout(
        self,
        record: ConnectionRecord,
        pool: Any,
        purpose: AcquirePurpose,
        profile: TimeoutProfile,
    ) -> AsyncIterator[PooledClient]:
        try:
            conn = await pool.acquire(timeout=profile.connect_timeout)
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as exc:
            raise PoolAcquireError(str(exc) or "Timed out acquiring a connection", exc) from exc
        try:
            yield PooledClient(record, conn, purpose, profile)
        finally:
            await pool.release(conn)

    async def close(self) -> None:
        """Close cached pools when the keyed registry is enabled."""
        if self._registry is not None:
            await self._registry.close_all()

    async def invalidate(self, connection_id) -> None:
        """Drop cached pools for a connection whose credentials changed."""
        if self._registry is not None:
            await self._registry.invalidate(connection_id)

