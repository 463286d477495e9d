"""Helpers for building result-field descriptors."""

from __future__ import annotations

from typing import Any, List, Optional

from dal.util.logical_types import logical_type_from_db_type, logical_type_from_oid


def build_field_meta(name: str, type_identifier: Optional[int], type_name: Optional[str]) -> dict:
    """Return one field descriptor of a query result."""
    logical_type = (
        logical_type_from_oid(type_identifier)
        if type_identifier is not None
        else logical_type_from_db_type(type_name)
    )
    if logical_type == "unknown" and type_name:
        logical_type = logical_type_from_db_type(type_name)
    return {
        "name": name,
        "type_identifier": type_identifier,
        "type_name": type_name,
        "logical_type": logical_type,
    }


def fields_from_asyncpg_attributes(attrs: List[Any]) -> List[dict]:
    """Build field descriptors from asyncpg prepared-statement attributes."""
    fields: List[dict] = []
    for attr in attrs or []:
        name = getattr(attr, "name", None) or str(attr)
        type_name = None
        oid = None
        attr_type = getattr(attr, "type", None)
        if attr_type is not None:
            type_name = getattr(attr_type, "name", None)
            oid = getattr(attr_type, "oid", None)
        fields.append(build_field_meta(name, oid, type_name))
    return fields
