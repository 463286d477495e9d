from __future__ import annotations

import logging
from dataclasses import dataclass

from common.config.env import get_env_bool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ErrorClassification:
    """Engine-aware classification of an upstream database error."""

    category: str
    engine: str
    is_retryable: bool
    sqlstate: str | None = None


# SQLSTATE class (first two characters) -> category
_SQLSTATE_CLASSES = {
    "08": "connectivity",
    "28": "auth",
    "42": "syntax",
    "22": "data",
    "23": "constraint",
    "40": "serialization",
    "53": "resource_exhausted",
    "57": "transient",
    "0A": "unsupported",
}

_SQLSTATE_EXACT = {
    "57014": "timeout",
    "40P01": "deadlock",
    "42501": "auth",
    "3D000": "not_found",
}

_RETRYABLE = {
    "timeout",
    "connectivity",
    "serialization",
    "deadlock",
    "resource_exhausted",
    "transient",
}


def classify_error(engine: str, exc: BaseException) -> str:
    """Classify an upstream error into an engine-agnostic category."""
    return classify_error_info(engine, exc).category


def classify_error_info(engine: str, exc: BaseException) -> ErrorClassification:
    """Classify an upstream error, preferring the SQLSTATE when the driver sets one."""
    engine = (engine or "unknown").lower()
    sqlstate = getattr(exc, "sqlstate", None)
    if isinstance(sqlstate, str) and sqlstate:
        category = _SQLSTATE_EXACT.get(sqlstate) or _SQLSTATE_CLASSES.get(sqlstate[:2])
        if category:
            return _classification(category, engine, sqlstate)

    message = str(exc).lower()
    class_name = exc.__class__.__name__.lower()

    if isinstance(exc, TimeoutError) or _matches_any(message, ("timeout", "timed out")):
        return _classification("timeout", engine)
    if isinstance(exc, ConnectionError) or _matches_any(
        message,
        (
            "could not connect",
            "connection refused",
            "connection reset",
            "name or service not known",
            "nodename nor servname",
            "network is unreachable",
            "connection was closed",
        ),
    ):
        return _classification("connectivity", engine)
    if _matches_any(
        message, ("password authentication failed", "permission denied", "no pg_hba.conf entry")
    ):
        return _classification("auth", engine)
    if _matches_any(message, ("syntax error", "does not exist")):
        return _classification("syntax", engine)
    if "ssl" in message or "certificate" in message:
        return _classification("tls", engine)
    if isinstance(exc, OSError) or class_name in {"interfaceerror", "connectiondoesnotexisterror"}:
        return _classification("connectivity", engine)

    return _classification("unknown", engine)


RECOVERY_HINTS: dict[str, str] = {
    "timeout": "Simplify the query or raise DAL_QUERY_TIMEOUT_SECONDS",
    "connectivity": "Check host, port and network reachability of the database",
    "auth": "Verify the stored username/password and the grants of that role",
    "syntax": "Review the SQL; it may reference unknown identifiers",
    "data": "Check parameter values and casts",
    "constraint": "The statement violates a constraint on the target table",
    "serialization": "Retry; concurrent transactions conflicted",
    "deadlock": "Retry; concurrent transactions deadlocked",
    "resource_exhausted": "The database is out of resources; retry later",
    "transient": "Retry after a short delay",
    "unsupported": "The target database does not support this operation",
    "not_found": "Verify the database name of the connection",
    "tls": "Check the TLS flag of the connection and the server certificate",
    "unknown": "Inspect error details for root cause",
}


def emit_classified_error(engine: str, operation: str, category: str, exc: BaseException) -> None:
    """Emit a structured log record (and span event when tracing) for a classified error."""
    if not get_env_bool("DAL_CLASSIFIED_ERROR_TELEMETRY", True):
        return

    recovery_hint = RECOVERY_HINTS.get(category, RECOVERY_HINTS["unknown"])
    info = classify_error_info(engine, exc)

    try:
        from opentelemetry import trace

        span = trace.get_current_span()
        if span and span.is_recording():
            span.set_attribute("error.classification.category", category)
            span.set_attribute("error.classification.engine", engine)
            span.set_attribute("error.classification.operation", operation)
            span.set_attribute("error.classification.is_retryable", info.is_retryable)
            span.add_event(
                "gateway.error.classified",
                {"engine": engine, "category": category, "operation": operation},
            )
    except ImportError:
        logger.debug("opentelemetry not installed; span attributes skipped")

    logger.warning(
        "dal_error_classified",
        extra={
            "event": "dal_error_classified",
            "engine": engine,
            "operation": operation,
            "error_category": category,
            "error_type": exc.__class__.__name__,
            "sqlstate": info.sqlstate,
            "is_retryable": info.is_retryable,
            "recovery_hint": recovery_hint,
        },
    )


def _matches_any(text: str, fragments: tuple[str, ...]) -> bool:
    return any(fragment in text for fragment in fragments)


def _classification(category: str, engine: str, sqlstate: str | None = None) -> ErrorClassification:
    return ErrorClassification(
        category=category,
        engine=engine,
        is_retryable=category in _RETRYABLE,
        sqlstate=sqlstate,
    )
