"""Single entry point for every operation on registered data sources.

Each call authorizes first, then opens a scoped pool for exactly the work it
does, and converts driver-level failures into ``gateway.errors`` types before
they leave this module.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import UUID

import asyncpg

from dal.connection_record import ConnectionRecord, ConnectionStatus, ConnectionTestResult
from dal.connection_store import ConnectionInUseError, ConnectionStore
from dal.connection_validation import (
    SUPPORTED_ENGINES,
    ConnectionValidationError,
    validate_connection_update,
)
from dal.error_classification import classify_error, emit_classified_error
from dal.pool_manager import AcquirePurpose, PoolAcquireError, PoolManager
from dal.query_executor import QueryExecutionError, QueryExecutor, QueryResult
from dal.resource_catalog import ResourceCatalog, ResourceKind, ResourceRef
from dal.schema_introspector import (
    PostgresSchemaIntrospector,
    SchemaIntrospectionError,
    TableDescription,
)
from dal.util.timeouts import OperationTimeoutError, QueryTimeoutError
from gateway.errors import (
    Conflict,
    ConnectivityFailed,
    NotFound,
    QueryExecutionFailed,
    QueryTimeout,
    SchemaIntrospectionFailed,
    ValidationError,
    sanitize_upstream_message,
)
from security.authorization import AuthorizationOverlay
from security.membership import ProjectMember, ProjectMembership
from security.roles import Role

logger = logging.getLogger(__name__)

UPSTREAM_ERRORS = (
    PoolAcquireError,
    OperationTimeoutError,
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DataSourceGateway:
    """Authorized connection management, schema introspection and query execution."""

    def __init__(
        self,
        store=ConnectionStore,
        catalog=ResourceCatalog,
        pool_manager: Optional[PoolManager] = None,
        executor: Optional[QueryExecutor] = None,
        introspector_factory: Callable[[Any], PostgresSchemaIntrospector] = (
            PostgresSchemaIntrospector
        ),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Wire the gateway; every collaborator can be replaced for tests."""
        self._store = store
        self._catalog = catalog
        self._overlay = AuthorizationOverlay(catalog)
        self._membership = ProjectMembership(catalog, self._overlay)
        self._pools = pool_manager or PoolManager.from_env()
        self._executor = executor or QueryExecutor()
        self._introspector_factory = introspector_factory
        self._clock = clock

    @property
    def pool_manager(self) -> PoolManager:
        """Return the pool manager (closed on service shutdown)."""
        return self._pools

    # -- connection lifecycle -------------------------------------------------

    async def create_connection(self, caller: str, payload: Dict[str, Any]) -> ConnectionRecord:
        """Register a connection owned by ``caller``; it starts ``inactive``."""
        try:
            record = await self._store.create(caller, payload)
        except ConnectionValidationError as exc:
            raise ValidationError(str(exc)) from exc
        return record

    async def list_connections(self, caller: str) -> List[ConnectionRecord]:
        """List registered connections."""
        logger.debug("Listing connections for %s", caller)
        return await self._store.list_all()

    async def get_connection(self, caller: str, connection_id: UUID) -> ConnectionRecord:
        """Return one connection the caller may view."""
        record = await self._load(connection_id)
        await self._overlay.require_connection_access(caller, record, Role.VIEWER)
        return record

    async def update_connection(
        self, caller: str, connection_id: UUID, payload: Dict[str, Any]
    ) -> ConnectionRecord:
        """Apply a partial update; requires ownership or editor on a using project."""
        record = await self._load(connection_id)
        await self._overlay.require_connection_access(caller, record, Role.EDITOR)
        try:
            fields = validate_connection_update(payload)
        except ConnectionValidationError as exc:
            raise ValidationError(str(exc)) from exc

        updated = await self._store.update(connection_id, fields)
        if updated is None:
            raise NotFound("Database connection not found")
        await self._pools.invalidate(connection_id)
        logger.info("Connection %s updated by %s", connection_id, caller)
        return updated

    async def delete_connection(self, caller: str, connection_id: UUID) -> None:
        """Delete a connection no tile references; requires ownership or admin."""
        record = await self._load(connection_id)
        await self._overlay.require_connection_access(caller, record, Role.ADMIN)
        try:
            deleted = await self._store.delete(connection_id)
        except ConnectionInUseError as exc:
            raise Conflict(str(exc), details={"tile_count": exc.tile_count}) from exc
        if not deleted:
            raise NotFound("Database connection not found")
        await self._pools.invalidate(connection_id)
        logger.info("Connection %s deleted by %s", connection_id, caller)

    async def test_connection(self, caller: str, connection_id: UUID) -> ConnectionTestResult:
        """Probe the database with ``SELECT 1`` and record the outcome.

        Upstream failures are reported in the result (status ``inactive``) rather
        than raised.
        """
        record = await self._load(connection_id)
        await self._overlay.require_connection_access(caller, record, Role.VIEWER)
        self._require_supported(record)

        try:
            async with self._pools.acquire(record, AcquirePurpose.HEALTH_CHECK) as client:
                await client.fetchval("SELECT 1")
        except UPSTREAM_ERRORS as exc:
            message, category = self._describe_upstream(record, "test_connection", exc)
            updated = await self._store.record_test_result(
                connection_id, ConnectionStatus.INACTIVE, None
            )
            return ConnectionTestResult(
                ok=False,
                status=ConnectionStatus.INACTIVE,
                last_tested_at=(updated or record).last_tested_at,
                message=f"Connection failed: {message}",
                error_category=category,
            )

        tested_at = self._clock()
        updated = await self._store.record_test_result(
            connection_id, ConnectionStatus.ACTIVE, tested_at
        )
        return ConnectionTestResult(
            ok=True,
            status=ConnectionStatus.ACTIVE,
            last_tested_at=updated.last_tested_at if updated else tested_at,
            message="Connection successful",
        )

    # -- introspection --------------------------------------------------------

    async def get_schema(self, caller: str, connection_id: UUID) -> Dict[str, Any]:
        """Return ``{"schemas": [...], "tables": {schema: [...]}}``."""
        record = await self._load(connection_id)
        await self._overlay.require_connection_access(caller, record, Role.VIEWER)
        self._require_supported(record)
        try:
            async with self._pools.acquire(record, AcquirePurpose.SCHEMA) as client:
                return await self._introspector_factory(client).get_schema_overview()
        except (SchemaIntrospectionError,) + UPSTREAM_ERRORS as exc:
            message, category = self._describe_upstream(record, "get_schema", exc)
            raise SchemaIntrospectionFailed(
                f"Failed to fetch schema: {message}", error_category=category
            ) from exc

    async def describe_table(
        self, caller: str, connection_id: UUID, schema: str, table: str
    ) -> TableDescription:
        """Describe columns and keys of one table."""
        record = await self._load(connection_id)
        await self._overlay.require_connection_access(caller, record, Role.VIEWER)
        self._require_supported(record)
        try:
            async with self._pools.acquire(record, AcquirePurpose.SCHEMA) as client:
                return await self._introspector_factory(client).describe_table(schema, table)
        except (SchemaIntrospectionError,) + UPSTREAM_ERRORS as exc:
            message, category = self._describe_upstream(record, "describe_table", exc)
            raise SchemaIntrospectionFailed(
                f"Failed to fetch table columns: {message}", error_category=category
            ) from exc

    # -- query execution ------------------------------------------------------

    async def run_query(
        self,
        caller: str,
        connection_id: UUID,
        sql: str,
        params: Optional[Sequence[Any]] = None,
        min_role: Role = Role.VIEWER,
    ) -> QueryResult:
        """Run caller-supplied SQL against a connection.

        ``min_role`` is decided by the call site; the SQL itself is not inspected.
        A failed query never changes the connection's status.
        """
        _validate_query_input(sql, params)
        record = await self._load(connection_id)
        await self._overlay.require_connection_access(caller, record, min_role)
        return await self._execute(record, sql, params)

    async def run_scoped_query(
        self,
        caller: str,
        tile_id: UUID,
        sql: str,
        params: Optional[Sequence[Any]] = None,
        min_role: Role = Role.VIEWER,
    ) -> QueryResult:
        """Run SQL for a tile, authorizing through Tile -> Dashboard -> Folder -> Project."""
        _validate_query_input(sql, params)
        await self._overlay.require_role(caller, ResourceRef(ResourceKind.TILE, tile_id), min_role)
        tile = await self._catalog.get_tile(tile_id)
        if tile is None:
            raise NotFound("Tile not found")
        record = await self._load(tile.connection_id)
        return await self._execute(record, sql, params)

    async def _execute(
        self, record: ConnectionRecord, sql: str, params: Optional[Sequence[Any]]
    ) -> QueryResult:
        self._require_supported(record)
        try:
            async with self._pools.acquire(record, AcquirePurpose.QUERY) as client:
                return await self._executor.execute(
                    client, sql, params, timeout=client.command_timeout
                )
        except QueryTimeoutError as exc:
            message, category = self._describe_upstream(record, "run_query", exc)
            raise QueryTimeout(message, error_category=category) from exc
        except PoolAcquireError as exc:
            message, category = self._describe_upstream(record, "connect", exc)
            raise ConnectivityFailed(
                f"Connection failed: {message}", error_category=category
            ) from exc
        except (QueryExecutionError,) + UPSTREAM_ERRORS as exc:
            message, category = self._describe_upstream(record, "run_query", exc)
            raise QueryExecutionFailed(
                f"Query execution failed: {message}", error_category=category
            ) from exc

    # -- membership -----------------------------------------------------------

    async def list_project_members(self, caller: str, project_id: UUID) -> List[ProjectMember]:
        """List a project's effective members."""
        return await self._membership.list_members(caller, project_id)

    async def add_project_member(self, caller: str, project_id: UUID, user_id: str, role: str):
        """Add a member or change their role; returns ``(member, created)``."""
        return await self._membership.add_member(caller, project_id, user_id, role)

    async def remove_project_member(self, caller: str, project_id: UUID, user_id: str) -> None:
        """Remove a member from a project."""
        await self._membership.remove_member(caller, project_id, user_id)

    # -- helpers --------------------------------------------------------------

    async def _load(self, connection_id: UUID) -> ConnectionRecord:
        record = await self._store.get_by_id(connection_id)
        if record is None:
            raise NotFound("Database connection not found")
        return record

    def _require_supported(self, record: ConnectionRecord) -> None:
        if record.engine_type not in SUPPORTED_ENGINES:
            raise ValidationError(f"Database type {record.engine_type} not supported yet")

    def _describe_upstream(self, record: ConnectionRecord, operation: str, exc: BaseException):
        cause = getattr(exc, "cause", None) or exc
        category = classify_error(record.engine_type, cause)
        emit_classified_error(record.engine_type, operation, category, cause)
        message = sanitize_upstream_message(
            getattr(exc, "message", None) or str(exc) or exc.__class__.__name__,
            secret=record.secret,
        )
        logger.warning(
            "Upstream %s failure on connection %s (%s): %s",
            operation,
            record.id,
            category,
            message,
        )
        return message, category


def _validate_query_input(sql: str, params: Optional[Sequence[Any]]) -> None:
    if not isinstance(sql, str) or not sql.strip():
        raise ValidationError("SQL query is required")
    if params is not None and not isinstance(params, (list, tuple)):
        raise ValidationError("Query params must be a list")
