from __future__ import annotations

from typing import Optional

LogicalType = str

# PostgreSQL type OIDs -> logical type reported alongside each result field
_OID_LOGICAL_TYPES = {
    16: "boolean",
    20: "integer",
    21: "integer",
    23: "integer",
    26: "integer",
    700: "float",
    701: "float",
    1700: "numeric",
    1082: "date",
    1083: "time",
    1266: "time",
    1114: "timestamp",
    1184: "timestamp",
    1186: "interval",
    114: "json",
    3802: "json",
    2950: "uuid",
    17: "bytes",
    18: "string",
    19: "string",
    25: "string",
    1042: "string",
    1043: "string",
}


def logical_type_from_oid(oid: Optional[int]) -> LogicalType:
    """Map a PostgreSQL type OID to a logical type."""
    if oid is None:
        return "unknown"
    return _OID_LOGICAL_TYPES.get(int(oid), "unknown")


def logical_type_from_db_type(db_type: Optional[str]) -> LogicalType:
    """Map a PostgreSQL type name to a logical type."""
    if not db_type:
        return "unknown"
    normalized = db_type.strip().lower()
    if normalized.startswith("_"):
        return "array"
    if "timestamp" in normalized:
        return "timestamp"
    if normalized == "date":
        return "date"
    if normalized.startswith("time"):
        return "time"
    if "bool" in normalized:
        return "boolean"
    if "uuid" in normalized:
        return "uuid"
    if "json" in normalized:
        return "json"
    if "numeric" in normalized or "decimal" in normalized:
        return "numeric"
    if any(token in normalized for token in ("double", "float", "real")):
        return "float"
    if "int" in normalized:
        return "integer"
    if any(token in normalized for token in ("char", "text", "name")):
        return "string"
    return "unknown"
