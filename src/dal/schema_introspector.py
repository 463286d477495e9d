"""Catalog introspection for registered PostgreSQL databases."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import asyncpg
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

EXCLUDED_SCHEMAS = ("pg_catalog", "information_schema", "pg_toast")


class ColumnDescription(BaseModel):
    """One column of a described table."""

    name: str
    data_type: str
    nullable: bool
    default_value: Optional[str] = None
    max_length: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        """Return the camelCase API projection."""
        return {
            "name": self.name,
            "dataType": self.data_type,
            "nullable": self.nullable,
            "defaultValue": self.default_value,
            "maxLength": self.max_length,
        }


class ForeignKeyDescription(BaseModel):
    """A foreign-key column and the column it references."""

    column: str
    referenced_schema: str
    referenced_table: str
    referenced_column: str

    def to_wire(self) -> Dict[str, Any]:
        """Return the camelCase API projection."""
        return {
            "column": self.column,
            "referencedTable": self.referenced_table,
            "referencedColumn": self.referenced_column,
            "referencedSchema": self.referenced_schema,
        }


class TableDescription(BaseModel):
    """Columns and key constraints of one table."""

    schema_name: str
    name: str
    columns: List[ColumnDescription] = Field(default_factory=list)
    primary_key: List[str] = Field(default_factory=list)
    foreign_keys: List[ForeignKeyDescription] = Field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        """Return the API projection; key lists are omitted when the table has none."""
        payload: Dict[str, Any] = {"columns": [c.to_wire() for c in self.columns]}
        if self.primary_key:
            payload["primaryKey"] = list(self.primary_key)
        if self.foreign_keys:
            payload["foreignKeys"] = [fk.to_wire() for fk in self.foreign_keys]
        return payload


class SchemaIntrospectionError(RuntimeError):
    """Raised when catalog queries against the target database fail."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        """Initialize with the upstream message."""
        super().__init__(message)
        self.message = message
        self.cause = cause


class PostgresSchemaIntrospector:
    """Reads schemas, tables and table definitions through one pooled client."""

    def __init__(self, client) -> None:
        """Bind the introspector to a client from ``PoolManager.acquire``."""
        self._client = client

    async def _fetch(self, sql: str, *params: Any) -> list:
        try:
            return await self._client.fetch(sql, *params)
        except (
            asyncpg.PostgresError,
            asyncpg.InterfaceError,
            OSError,
            asyncio.TimeoutError,
        ) as exc:
            message = str(exc) or exc.__class__.__name__
            logger.warning("Schema introspection failed: %s", message)
            raise SchemaIntrospectionError(message, exc) from exc

    async def list_schemas(self) -> List[str]:
        """List user-visible schemas in catalog order."""
        query = """
            SELECT schema_name
            FROM information_schema.schemata
            WHERE schema_name <> ALL($1::text[])
              AND schema_name NOT LIKE 'pg_temp_%'
              AND schema_name NOT LIKE 'pg_toast_temp_%'
        """
        rows = await self._fetch(query, list(EXCLUDED_SCHEMAS))
        return [row["schema_name"] for row in rows]

    async def list_tables(self, schema: str) -> List[str]:
        """List base tables of a schema, ordered by name."""
        query = """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = $1
              AND table_type = 'BASE TABLE'
            ORDER BY table_name
        """
        rows = await self._fetch(query, schema)
        return [row["table_name"] for row in rows]

    async def get_schema_overview(self) -> Dict[str, Any]:
        """Return ``{"schemas": [...], "tables": {schema: [...]}}``."""
        schemas = await self.list_schemas()
        tables: Dict[str, List[str]] = {}
        for schema in schemas:
            tables[schema] = await self.list_tables(schema)
        return {"schemas": schemas, "tables": tables}

    async def describe_table(self, schema: str, table: str) -> TableDescription:
        """Describe columns, primary key and foreign keys of ``schema.table``.

        An unknown table yields an empty column list rather than an error.
        """
        cols_query = """
            SELECT column_name, data_type, is_nullable, column_default,
                   character_maximum_length
            FROM information_schema.columns
            WHERE table_schema = $1 AND table_name = $2
            ORDER BY ordinal_position
        """
        col_rows = await self._fetch(cols_query, schema, table)

        pk_query = """
            SELECT kcu.column_name
            FROM information_schema.table_constraints AS tc
            JOIN information_schema.key_column_usage AS kcu
                ON tc.constraint_name = kcu.constraint_name
               AND tc.constraint_schema = kcu.constraint_schema
               AND tc.table_name = kcu.table_name
            WHERE tc.constraint_type = 'PRIMARY KEY'
              AND tc.table_schema = $1
              AND tc.table_name = $2
            ORDER BY kcu.ordinal_position
        """
        pk_rows = await self._fetch(pk_query, schema, table)

        fk_query = """
            SELECT
                kcu.column_name,
                ccu.table_schema AS foreign_table_schema,
                ccu.table_name AS foreign_table_name,
                ccu.column_name AS foreign_column_name
            FROM information_schema.table_constraints AS tc
            JOIN information_schema.key_column_usage AS kcu
                ON tc.constraint_name = kcu.constraint_name
               AND tc.constraint_schema = kcu.constraint_schema
            JOIN information_schema.constraint_column_usage AS ccu
                ON ccu.constraint_name = tc.constraint_name
               AND ccu.constraint_schema = tc.constraint_schema
            WHERE tc.constraint_type = 'FOREIGN KEY'
              AND tc.table_schema = $1
              AND tc.table_name = $2
            ORDER BY kcu.ordinal_position
        """
        fk_rows = await self._fetch(fk_query, schema, table)

        columns = [
            ColumnDescription(
                name=row["column_name"],
                data_type=row["data_type"],
                nullable=(row["is_nullable"] == "YES"),
                default_value=row["column_default"],
                max_length=row["character_maximum_length"],
            )
            for row in col_rows
        ]
        foreign_keys = [
            ForeignKeyDescription(
                column=row["column_name"],
                referenced_schema=row["foreign_table_schema"],
                referenced_table=row["foreign_table_name"],
                referenced_column=row["foreign_column_name"],
            )
            for row in fk_rows
        ]
        return TableDescription(
            schema_name=schema,
            name=table,
            columns=columns,
            primary_key=[row["column_name"] for row in pk_rows],
            foreign_keys=foreign_keys,
        )
