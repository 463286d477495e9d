import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

import asyncpg

from dal.connection_record import ConnectionRecord, ConnectionStatus
from dal.connection_validation import validate_connection_create
from dal.control_plane import ControlPlaneDatabase

logger = logging.getLogger(__name__)

_UPDATE_COLUMNS = {
    "name": "name",
    "host": "host",
    "port": "port",
    "database": "database",
    "username": "username",
    "secret": "password",
    "ssl": "ssl",
    "options": "options",
}


class ConnectionInUseError(RuntimeError):
    """Raised when deleting a connection that tiles still reference."""

    def __init__(self, connection_id: UUID, tile_count: int) -> None:
        """Initialize with the blocking reference count."""
        super().__init__(
            f"Database connection is used by {tile_count} tile(s) and cannot be deleted"
        )
        self.connection_id = connection_id
        self.tile_count = tile_count


class ConnectionStore:
    """Store for registered external database credentials (control-plane)."""

    @classmethod
    async def create(cls, created_by: str, payload: Dict[str, Any]) -> ConnectionRecord:
        """Validate and persist a new connection with status ``inactive``."""
        fields = validate_connection_create(payload)
        async with ControlPlaneDatabase.get_connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO database_connections
                    (name, type, host, port, database, username, password, ssl, options,
                     status, created_by)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                RETURNING *
                """,
                fields["name"],
                fields["engine_type"],
                fields["host"],
                fields["port"],
                fields["database"],
                fields["username"],
                fields["secret"],
                fields["ssl"],
                fields["options"],
                ConnectionStatus.INACTIVE.value,
                created_by,
            )
        logger.info("Created database connection %s for user %s", row["id"], created_by)
        return _row_to_record(row)

    @classmethod
    async def get_by_id(cls, connection_id: UUID) -> Optional[ConnectionRecord]:
        """Fetch a connection by id."""
        async with ControlPlaneDatabase.get_connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM database_connections WHERE id = $1",
                connection_id,
            )
        return _row_to_record(row) if row else None

    @classmethod
    async def list_all(cls) -> List[ConnectionRecord]:
        """List every registered connection, newest first."""
        async with ControlPlaneDatabase.get_connection() as conn:
            rows = await conn.fetch("SELECT * FROM database_connections ORDER BY created_at DESC")
        return [_row_to_record(row) for row in rows]

    @classmethod
    async def update(
        cls, connection_id: UUID, fields: Dict[str, Any]
    ) -> Optional[ConnectionRecord]:
        """Apply normalized partial fields; return None when the id is unknown."""
        assignments = []
        values: List[Any] = [connection_id]
        for key, value in fields.items():
            column = _UPDATE_COLUMNS.get(key)
            if column is None:
                raise ValueError(f"Field '{key}' is not updatable")
            values.append(value)
            assignments.append(f"{column} = ${len(values)}")

        async with ControlPlaneDatabase.get_connection() as conn:
            if not assignments:
                row = await conn.fetchrow(
                    "SELECT * FROM database_connections WHERE id = $1", connection_id
                )
            else:
                row = await conn.fetchrow(
                    f"""
                    UPDATE database_connections
                    SET {", ".join(assignments)}, updated_at = NOW()
                    WHERE id = $1
                    RETURNING *
                    """,
                    *values,
                )
        return _row_to_record(row) if row else None

    @classmethod
    async def delete(cls, connection_id: UUID) -> bool:
        """Delete a connection unless a tile still references it."""
        async with ControlPlaneDatabase.get_connection() as conn:
            exists = await conn.fetchval(
                "SELECT 1 FROM database_connections WHERE id = $1 FOR UPDATE",
                connection_id,
            )
            if not exists:
                return False
            tile_count = await conn.fetchval(
                "SELECT COUNT(*) FROM tiles WHERE connection_id = $1",
                connection_id,
            )
            if tile_count:
                raise ConnectionInUseError(connection_id, int(tile_count))
            await conn.execute("DELETE FROM database_connections WHERE id = $1", connection_id)
        logger.info("Deleted database connection %s", connection_id)
        return True

    @classmethod
    async def record_test_result(
        cls,
        connection_id: UUID,
        status: ConnectionStatus,
        tested_at: Optional[datetime],
    ) -> Optional[ConnectionRecord]:
        """Record the outcome of a connection test (last writer wins).

        A failed test only flips the status; ``last_tested_at`` keeps the time of the
        last successful test when ``tested_at`` is None.
        """
        async with ControlPlaneDatabase.get_connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE database_connections
                SET status = $2,
                    last_tested_at = COALESCE($3, last_tested_at),
                    updated_at = NOW()
                WHERE id = $1
                RETURNING *
                """,
                connection_id,
                status.value,
                tested_at,
            )
        return _row_to_record(row) if row else None


def _row_to_record(row: asyncpg.Record) -> ConnectionRecord:
    return ConnectionRecord(
        id=row["id"],
        name=row["name"],
        engine_type=row["type"],
        host=row["host"],
        port=row["port"],
        database=row["database"],
        username=row["username"],
        secret=row["password"],
        created_by=str(row["created_by"]),
        ssl=bool(row["ssl"]),
        options=row["options"] or {},
        status=ConnectionStatus(row["status"]),
        last_tested_at=row["last_tested_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
