"""Control-Plane Database connection manager.

Owns the single pool for the gateway's own metadata: registered connections,
projects, role assignments and the folder/dashboard/tile hierarchy.

This pool is completely separate from the per-call pools opened against the
external databases that users register.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg

from common.config.env import get_env_int, get_env_str

logger = logging.getLogger(__name__)

REQUIRED_TABLES = (
    "database_connections",
    "projects",
    "project_users",
    "folders",
    "dashboards",
    "tiles",
)


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
    )


class ControlPlaneDatabase:
    """Manages connection pool for the control-plane database."""

    _pool: Optional[asyncpg.Pool] = None

    @classmethod
    async def init(cls) -> bool:
        """Initialize control-plane connection pool."""
        if cls._pool is not None:
            return True

        db_host = get_env_str("CONTROL_DB_HOST")
        if not db_host:
            logger.warning("CONTROL_DB_HOST not set, control-plane store disabled")
            return False

        db_port = get_env_int("CONTROL_DB_PORT", 5432)
        db_name = get_env_str("CONTROL_DB_NAME", "gateway_control")
        db_user = get_env_str("CONTROL_DB_USER", "postgres")
        db_pass = get_env_str("CONTROL_DB_PASSWORD", "control_password")

        try:
            cls._pool = await asyncpg.create_pool(
                host=db_host,
                port=db_port,
                database=db_name,
                user=db_user,
                password=db_pass,
                min_size=1,
                max_size=get_env_int("CONTROL_DB_POOL_MAX_SIZE", 10),
                command_timeout=30,
                init=_init_connection,
                server_settings={"application_name": "datasource_gateway_control"},
            )
        except Exception as exc:
            logger.error("Failed to connect to control-plane DB: %s", exc)
            return False

        logger.info("Control-plane pool established: %s@%s/%s", db_user, db_host, db_name)
        await cls._validate_schema()
        return True

    @classmethod
    async def close(cls) -> None:
        """Close control-plane connection pool."""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            logger.info("Control-plane connection pool closed")

    @classmethod
    def is_configured(cls) -> bool:
        """Check if control-plane pool is active."""
        return cls._pool is not None

    @classmethod
    async def _validate_schema(cls) -> None:
        """Warn about missing tables; DDL is left to scripts/migrations/migrate.py."""
        if cls._pool is None:
            return

        async with cls._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT table_name
                FROM information_schema.tables
                WHERE table_schema = 'public' AND table_name = ANY($1::text[])
                """,
                list(REQUIRED_TABLES),
            )
        present = {row["table_name"] for row in rows}
        missing = [table for table in REQUIRED_TABLES if table not in present]
        if missing:
            logger.warning(
                "Control-plane tables missing: %s. "
                "Run migrations: python scripts/migrations/migrate.py",
                ", ".join(missing),
            )
        else:
            logger.info("Control-plane schema validation passed")

    @classmethod
    @asynccontextmanager
    async def get_connection(cls):
        """Yield a transactional control-plane connection."""
        if cls._pool is None:
            raise RuntimeError(
                "Control-plane pool not initialized. Call ControlPlaneDatabase.init() first."
            )

        async with cls._pool.acquire() as conn:
            async with conn.transaction():
                yield conn
