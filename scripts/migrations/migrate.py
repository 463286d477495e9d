#!/usr/bin/env python3
"""Control-plane database migration runner for the data source gateway.

Applies the SQL files under ``scripts/migrations/sql`` in name order. Run it once
before starting the API; the service never issues DDL at startup.

Usage:
    python scripts/migrations/migrate.py

Environment variables:
    CONTROL_DB_HOST: Database host (required)
    CONTROL_DB_PORT: Database port (default: 5432)
    CONTROL_DB_NAME: Database name (default: gateway_control)
    CONTROL_DB_USER: Database user (default: postgres)
    CONTROL_DB_PASSWORD: Database password (default: control_password)
"""

import asyncio
import os
import sys
from pathlib import Path

import asyncpg

MIGRATIONS_DIR = Path(__file__).parent / "sql"


def get_db_config() -> dict:
    """Get database configuration from environment."""
    host = os.getenv("CONTROL_DB_HOST")
    if not host:
        print("ERROR: CONTROL_DB_HOST environment variable is required")
        sys.exit(1)

    return {
        "host": host,
        "port": int(os.getenv("CONTROL_DB_PORT", "5432")),
        "database": os.getenv("CONTROL_DB_NAME", "gateway_control"),
        "user": os.getenv("CONTROL_DB_USER", "postgres"),
        "password": os.getenv("CONTROL_DB_PASSWORD", "control_password"),
    }


async def ensure_migrations_table(conn: asyncpg.Connection) -> None:
    """Create the bookkeeping table if this is a fresh database."""
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _migrations (
            name TEXT PRIMARY KEY,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """
    )


async def run_migration(conn: asyncpg.Connection, migration_path: Path) -> bool:
    """Apply one migration file inside a transaction.

    Returns:
        True if the migration was applied, False if it was already recorded.
    """
    migration_name = migration_path.stem
    if await conn.fetchval("SELECT 1 FROM _migrations WHERE name = $1", migration_name):
        print(f"  [SKIP] {migration_name} already applied")
        return False

    print(f"  [RUN] {migration_name}")
    async with conn.transaction():
        await conn.execute(migration_path.read_text())
        await conn.execute("INSERT INTO _migrations (name) VALUES ($1)", migration_name)
    print(f"  [OK] {migration_name}")
    return True


async def run_all_migrations(migrations_dir: Path = MIGRATIONS_DIR) -> int:
    """Apply all pending migrations; returns how many ran."""
    config = get_db_config()
    print(f"Connecting to {config['user']}@{config['host']}:{config['port']}/{config['database']}")

    try:
        conn = await asyncpg.connect(**config)
    except (OSError, asyncpg.PostgresError) as e:
        print(f"ERROR: Failed to connect to database: {e}")
        sys.exit(1)

    try:
        await ensure_migrations_table(conn)
        migration_files = sorted(migrations_dir.glob("*.sql"))
        if not migration_files:
            print("No migration files found")
            return 0

        print(f"Found {len(migration_files)} migration file(s)")
        applied = 0
        for migration_path in migration_files:
            if await run_migration(conn, migration_path):
                applied += 1

        if applied:
            print(f"Applied {applied} migration(s)")
        else:
            print("All migrations already applied")
        return applied
    finally:
        await conn.close()


def main():
    """Entry point."""
    print("Gateway control-plane migration runner")
    print("=" * 40)
    asyncio.run(run_all_migrations())
    print("=" * 40)
    print("Done")


if __name__ == "__main__":
    main()
