"""Gateway error taxonomy.

Every failure that crosses the gateway boundary is one of these, carrying a
stable machine code and the HTTP status the API maps it to.
"""

import re
from typing import Any, Dict, Optional

MAX_ERROR_MESSAGE_LENGTH = 2048

_URL_CREDENTIALS = re.compile(r"([a-zA-Z0-9+.-]+://)([^:/@\s]+):([^/@\s]+)@")
_PASSWORD_PAIRS = re.compile(r"(?i)\b(password|secret)([ \t]*[=:][ \t]*)[^\s,;]+")


class GatewayError(Exception):
    """Base class for errors surfaced to gateway callers."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        error_category: Optional[str] = None,
    ) -> None:
        """Initialize with a caller-safe message."""
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})
        self.error_category = error_category

    def to_dict(self) -> Dict[str, Any]:
        """Return a log/telemetry friendly view of the error."""
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.error_category:
            payload["error_category"] = self.error_category
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(GatewayError):
    """Malformed or incomplete input."""

    code = "VALIDATION_ERROR"
    http_status = 400


class NotAuthorized(GatewayError):
    """The caller lacks the role the operation requires."""

    code = "NOT_AUTHORIZED"
    http_status = 403


class NotFound(GatewayError):
    """A referenced connection, resource or membership does not exist."""

    code = "NOT_FOUND"
    http_status = 404


class Conflict(GatewayError):
    """The operation conflicts with existing references."""

    code = "CONFLICT"
    http_status = 409


class ConnectivityFailed(GatewayError):
    """The external database could not be reached."""

    code = "CONNECTIVITY_FAILED"
    http_status = 400


class SchemaIntrospectionFailed(GatewayError):
    """Catalog queries against the external database failed."""

    code = "SCHEMA_INTROSPECTION_FAILED"
    http_status = 400


class QueryExecutionFailed(GatewayError):
    """The external database rejected or failed a statement."""

    code = "QUERY_EXECUTION_FAILED"
    http_status = 400


class QueryTimeout(GatewayError):
    """A statement exceeded its time budget."""

    code = "QUERY_TIMEOUT"
    http_status = 400


class Internal(GatewayError):
    """Unexpected failure; the message is generic."""

    code = "INTERNAL_ERROR"
    http_status = 500


def sanitize_upstream_message(
    message: Optional[str], secret: Optional[str] = None, fallback: str = "Request failed."
) -> str:
    """Redact credentials from an upstream driver message and bound its length."""
    text = (message or "").strip()
    if secret:
        text = text.replace(secret, "<redacted>")
    text = _URL_CREDENTIALS.sub(r"\1<user>:<password>@", text)
    text = _PASSWORD_PAIRS.sub(r"\1\2<redacted>", text)
    if not text:
        text = fallback
    return text[:MAX_ERROR_MESSAGE_LENGTH]
