import hashlib
import logging
from typing import Awaitable, Optional

from common.config.env import get_env_bool

logger = logging.getLogger(__name__)


def trace_enabled() -> bool:
    """Return True when gateway operation tracing is enabled."""
    try:
        return get_env_bool("DAL_TRACE_QUERIES", False) is True
    except ValueError:
        logger.warning("Invalid DAL_TRACE_QUERIES value; tracing disabled.")
        return False


def _hash_sql(sql: str) -> str:
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


async def trace_gateway_operation(
    name: str,
    engine: str,
    operation: Awaitable,
    connection_id: Optional[str] = None,
    purpose: Optional[str] = None,
    sql: Optional[str] = None,
):
    """Trace one external-database operation with OTEL when enabled.

    Statements are recorded only as a hash.
    """
    if not trace_enabled():
        return await operation

    from opentelemetry import trace

    tracer = trace.get_tracer("dal")
    with tracer.start_as_current_span(name) as span:
        span.set_attribute("db.system", engine)
        if connection_id:
            span.set_attribute("gateway.connection_id", connection_id)
        if purpose:
            span.set_attribute("gateway.purpose", purpose)
        if sql:
            span.set_attribute("db.statement_hash", _hash_sql(sql))
        try:
            result = await operation
            span.set_attribute("db.status", "ok")
            return result
        except Exception:
            span.set_attribute("db.status", "error")
            raise
