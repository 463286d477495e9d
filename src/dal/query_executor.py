"""Ad hoc SQL execution against a pooled client."""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import asyncpg

from dal.tracing import trace_gateway_operation
from dal.util.column_metadata import fields_from_asyncpg_attributes
from dal.util.timeouts import QueryTimeoutError, run_with_timeout

logger = logging.getLogger(__name__)

DEFAULT_QUERY_TIMEOUT_SECONDS = 30.0

_STATUS_COUNT = re.compile(r"(\d+)\s*$")
_MULTI_STATEMENT_ERROR = "cannot insert multiple commands into a prepared statement"


def json_safe_value(value: Any) -> Any:
    """Convert driver values JSON cannot carry.

    ``bytea`` becomes ``\\x``-prefixed hex text and ranges become plain mappings;
    arrays and composite values are converted element by element.
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "\\x" + bytes(value).hex()
    if isinstance(value, asyncpg.Range):
        return {
            "lower": json_safe_value(value.lower),
            "upper": json_safe_value(value.upper),
            "lowerInclusive": value.lower_inc,
            "upperInclusive": value.upper_inc,
            "empty": value.isempty,
        }
    if isinstance(value, (list, tuple)):
        return [json_safe_value(item) for item in value]
    if isinstance(value, dict):
        return {key: json_safe_value(item) for key, item in value.items()}
    return value


@dataclass
class QueryResult:
    """Rows, row count and field descriptors of one statement."""

    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    fields: List[Dict[str, Any]] = field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        """Return the camelCase API projection."""
        return {
            "rows": self.rows,
            "rowCount": self.row_count,
            "fields": [
                {
                    "name": f["name"],
                    "typeIdentifier": f["type_identifier"],
                    "typeName": f["type_name"],
                    "logicalType": f["logical_type"],
                }
                for f in self.fields
            ],
        }


class QueryExecutionError(RuntimeError):
    """Raised when the target database rejects or fails a statement."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        """Initialize with the upstream message."""
        super().__init__(message)
        self.message = message
        self.cause = cause


def affected_rows_from_status(status: Optional[str]) -> int:
    """Parse the affected-row count from a command tag such as ``INSERT 0 3``."""
    if not status:
        return 0
    match = _STATUS_COUNT.search(status)
    return int(match.group(1)) if match else 0


class QueryExecutor:
    """Runs caller-supplied SQL with positional parameters and a time budget.

    The SQL is passed through unchanged; parameters are bound server-side via a
    prepared statement and never interpolated into the text.
    """

    async def execute(
        self,
        client,
        sql: str,
        params: Optional[Sequence[Any]] = None,
        timeout: Optional[float] = DEFAULT_QUERY_TIMEOUT_SECONDS,
    ) -> QueryResult:
        """Execute ``sql`` on ``client`` and return rows plus field descriptors."""
        args = list(params or [])
        conn = client.connection

        async def _run() -> QueryResult:
            try:
                statement = await conn.prepare(sql)
            except asyncpg.PostgresSyntaxError as exc:
                if args or _MULTI_STATEMENT_ERROR not in str(exc):
                    raise
                # simple protocol; only the last command tag comes back
                status = await conn.execute(sql)
                return QueryResult(row_count=affected_rows_from_status(status))
            attributes = statement.get_attributes()
            records = await statement.fetch(*args)
            rows = [
                {key: json_safe_value(value) for key, value in record.items()}
                for record in records
            ]
            if attributes:
                row_count = len(rows)
            else:
                row_count = affected_rows_from_status(statement.get_statusmsg())
            return QueryResult(
                rows=rows,
                row_count=row_count,
                fields=fields_from_asyncpg_attributes(attributes),
            )

        try:
            return await trace_gateway_operation(
                "gateway.query.execute",
                engine=client.engine,
                connection_id=str(client.record.id),
                purpose="query",
                sql=sql,
                operation=run_with_timeout(
                    _run,
                    timeout,
                    engine=client.engine,
                    operation_name="query",
                    error_cls=QueryTimeoutError,
                ),
            )
        except QueryTimeoutError:
            logger.warning("Query on connection %s timed out after %ss", client.record.id, timeout)
            raise
        except asyncio.TimeoutError as exc:
            # driver-side command_timeout fired first
            logger.warning("Query on connection %s timed out after %ss", client.record.id, timeout)
            raise QueryTimeoutError(
                engine=client.engine, operation_name="query", timeout_seconds=timeout
            ) from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            message = str(exc) or exc.__class__.__name__
            logger.warning("Query on connection %s failed: %s", client.record.id, message)
            raise QueryExecutionError(message, exc) from exc
