import pytest

from dal.connection_validation import (
    ConnectionValidationError,
    validate_connection_create,
    validate_connection_update,
)


def _payload(**overrides):
    payload = {
        "name": "local",
        "host": "localhost",
        "port": 5432,
        "database": "db1",
        "username": "u",
        "password": "p",
    }
    payload.update(overrides)
    return payload


def test_create_normalizes_defaults():
    """Engine, port, ssl and options get defaults."""
    fields = validate_connection_create(_payload(port=None))
    assert fields == {
        "name": "local",
        "engine_type": "postgresql",
        "host": "localhost",
        "port": 5432,
        "database": "db1",
        "username": "u",
        "secret": "p",
        "ssl": False,
        "options": {},
    }


@pytest.mark.parametrize("missing", ["name", "host", "database", "username", "password"])
def test_create_requires_fields(missing):
    """Every required field is enforced."""
    payload = _payload()
    payload.pop(missing)
    with pytest.raises(ConnectionValidationError, match="Please provide all required fields"):
        validate_connection_create(payload)


def test_create_blank_string_counts_as_missing():
    """Whitespace-only values are missing."""
    with pytest.raises(ConnectionValidationError, match="host"):
        validate_connection_create(_payload(host="   "))


def test_create_accepts_postgres_alias():
    """The short engine alias is normalized."""
    assert validate_connection_create(_payload(type="Postgres"))["engine_type"] == "postgresql"


def test_create_rejects_unsupported_engine():
    """Only postgresql is implemented."""
    with pytest.raises(ConnectionValidationError, match="not supported yet"):
        validate_connection_create(_payload(type="mysql"))


@pytest.mark.parametrize("port", [0, 65536, "abc", True])
def test_create_rejects_bad_port(port):
    """Ports must be integers in 1..65535."""
    with pytest.raises(ConnectionValidationError, match="port"):
        validate_connection_create(_payload(port=port))


def test_create_rejects_unknown_fields():
    """Unexpected keys are rejected rather than silently dropped."""
    with pytest.raises(ConnectionValidationError, match="Unsupported fields: extra"):
        validate_connection_create(_payload(extra=1))


def test_update_maps_password_to_secret_and_skips_none():
    """Partial updates only carry provided fields."""
    fields = validate_connection_update({"password": "new", "host": None, "port": "6543"})
    assert fields == {"secret": "new", "port": 6543}


@pytest.mark.parametrize("field", ["status", "lastTestedAt"])
def test_update_rejects_status_fields(field):
    """Status only changes through a connection test."""
    with pytest.raises(ConnectionValidationError, match="connection test"):
        validate_connection_update({field: "active"})


def test_update_rejects_engine_change():
    """The engine type is fixed after creation."""
    with pytest.raises(ConnectionValidationError, match="Unsupported fields: type"):
        validate_connection_update({"type": "postgresql"})
