from typing import Any, Dict, List, Optional

from dal.connection_record import EngineType


class ConnectionValidationError(ValueError):
    """Raised when a connection payload is missing or malformed."""


SUPPORTED_ENGINES = {engine.value for engine in EngineType}

ENGINE_DEFAULT_PORTS: Dict[str, int] = {
    EngineType.POSTGRESQL.value: 5432,
}

# Wire name -> stored field name.
FIELD_ALIASES: Dict[str, str] = {
    "name": "name",
    "type": "engine_type",
    "host": "host",
    "port": "port",
    "database": "database",
    "username": "username",
    "password": "secret",
    "ssl": "ssl",
    "options": "options",
}

REQUIRED_CREATE_FIELDS: List[str] = ["name", "host", "database", "username", "password"]

UPDATABLE_FIELDS = {"name", "host", "port", "database", "username", "password", "ssl", "options"}


def validate_connection_create(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a create payload and return normalized stored fields."""
    _validate_allowed_keys(payload, set(FIELD_ALIASES))
    missing = [key for key in REQUIRED_CREATE_FIELDS if not _present(payload.get(key))]
    if missing:
        raise ConnectionValidationError(
            f"Please provide all required fields. Missing: {', '.join(missing)}"
        )

    engine_type = _normalize_engine(payload.get("type"))
    normalized = {
        "name": _require_str(payload, "name"),
        "engine_type": engine_type,
        "host": _require_str(payload, "host"),
        "port": _normalize_port(payload.get("port"), ENGINE_DEFAULT_PORTS[engine_type]),
        "database": _require_str(payload, "database"),
        "username": _require_str(payload, "username"),
        "secret": _require_str(payload, "password"),
        "ssl": _normalize_bool(payload.get("ssl"), "ssl"),
        "options": _normalize_options(payload.get("options")),
    }
    return normalized


def validate_connection_update(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a partial update payload and return normalized stored fields.

    Fields set to ``None`` are treated as absent, mirroring a partial PUT.
    """
    if "status" in payload or "lastTestedAt" in payload:
        raise ConnectionValidationError(
            "Connection status can only change through a connection test."
        )
    _validate_allowed_keys(payload, UPDATABLE_FIELDS)

    normalized: Dict[str, Any] = {}
    for key, value in payload.items():
        if value is None:
            continue
        if key == "port":
            normalized["port"] = _normalize_port(value, None)
        elif key == "ssl":
            normalized["ssl"] = _normalize_bool(value, "ssl")
        elif key == "options":
            normalized["options"] = _normalize_options(value)
        else:
            normalized[FIELD_ALIASES[key]] = _require_str(payload, key)
    return normalized


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def _require_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConnectionValidationError(f"Field '{key}' must be a non-empty string.")
    return value if key == "password" else value.strip()


def _normalize_engine(value: Any) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        return EngineType.POSTGRESQL.value
    if not isinstance(value, str):
        raise ConnectionValidationError("Field 'type' must be a string.")
    engine = value.strip().lower()
    if engine == "postgres":
        engine = EngineType.POSTGRESQL.value
    if engine not in SUPPORTED_ENGINES:
        raise ConnectionValidationError(
            f"Database type {value} not supported yet. Allowed: {sorted(SUPPORTED_ENGINES)}"
        )
    return engine


def _normalize_port(value: Any, default: Optional[int]) -> int:
    if value is None and default is not None:
        return default
    if isinstance(value, bool):
        raise ConnectionValidationError("Field 'port' must be an integer.")
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConnectionValidationError("Field 'port' must be an integer.")
    if not 1 <= port <= 65535:
        raise ConnectionValidationError("Field 'port' must be between 1 and 65535.")
    return port


def _normalize_bool(value: Any, label: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ConnectionValidationError(f"Field '{label}' must be a boolean.")
    return value


def _normalize_options(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConnectionValidationError("Field 'options' must be an object.")
    return dict(value)


def _validate_allowed_keys(payload: Dict[str, Any], allowed: set) -> None:
    extra = [key for key in payload.keys() if key not in allowed]
    if extra:
        raise ConnectionValidationError(f"Unsupported fields: {', '.join(sorted(extra))}")
