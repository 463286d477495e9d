import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID


class ConnectionStatus(str, Enum):
    """Health status for a registered database connection."""

    INACTIVE = "inactive"
    ACTIVE = "active"


class EngineType(str, Enum):
    """Relational engines the gateway can reach."""

    POSTGRESQL = "postgresql"


@dataclass(frozen=True)
class ConnectionRecord:
    """Persisted credentials for one external database.

    ``secret`` is credential material and must never leave the gateway; use
    :meth:`to_public` for anything returned to a caller.
    """

    id: UUID
    name: str
    engine_type: str
    host: str
    port: int
    database: str
    username: str
    secret: str = field(repr=False)
    created_by: str
    ssl: bool = False
    options: Dict[str, Any] = field(default_factory=dict)
    status: ConnectionStatus = ConnectionStatus.INACTIVE
    last_tested_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def credential_fingerprint(self) -> str:
        """Return a stable digest of everything that shapes a physical connection."""
        material = json.dumps(
            [
                self.engine_type,
                self.host,
                self.port,
                self.database,
                self.username,
                self.secret,
                self.ssl,
                self.options,
            ],
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def to_public(self) -> Dict[str, Any]:
        """Return the caller-facing projection (no secret)."""
        return {
            "id": str(self.id),
            "name": self.name,
            "type": self.engine_type,
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "username": self.username,
            "ssl": self.ssl,
            "options": dict(self.options),
            "status": self.status.value,
            "lastTestedAt": _format_ts(self.last_tested_at),
            "createdById": self.created_by,
            "createdAt": _format_ts(self.created_at),
            "updatedAt": _format_ts(self.updated_at),
        }


@dataclass(frozen=True)
class ConnectionTestResult:
    """Outcome of an explicit connection health check."""

    ok: bool
    status: ConnectionStatus
    last_tested_at: Optional[datetime] = None
    message: Optional[str] = None
    error_category: Optional[str] = None


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
