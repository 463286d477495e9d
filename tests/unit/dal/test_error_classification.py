"""Unit tests for upstream error classification."""

import logging

import asyncpg

from dal.error_classification import classify_error, classify_error_info, emit_classified_error


def test_classify_uses_sqlstate_when_present() -> None:
    """Driver errors are classified by SQLSTATE before message heuristics."""
    exc = asyncpg.exceptions.DivisionByZeroError("division by zero")
    info = classify_error_info("postgresql", exc)
    assert info.category == "data"
    assert info.sqlstate == "22012"
    assert info.is_retryable is False


def test_classify_exact_sqlstate_overrides_class() -> None:
    """Statement cancellation is a timeout, not a generic operator intervention."""
    exc = asyncpg.exceptions.QueryCanceledError("canceling statement due to statement timeout")
    assert classify_error("postgresql", exc) == "timeout"


def test_classify_invalid_password() -> None:
    """Authentication failures map to auth."""
    exc = asyncpg.exceptions.InvalidPasswordError('password authentication failed for user "u"')
    assert classify_error("postgresql", exc) == "auth"


def test_classify_connection_refused() -> None:
    """Socket-level failures map to connectivity and are retryable."""
    info = classify_error_info("postgresql", ConnectionRefusedError(111, "Connection refused"))
    assert info.category == "connectivity"
    assert info.is_retryable is True


def test_classify_timeout() -> None:
    """Timeouts are recognized by type."""
    assert classify_error("postgresql", TimeoutError()) == "timeout"


def test_classify_syntax_message() -> None:
    """Messages without a SQLSTATE fall back to text heuristics."""
    exc = Exception('syntax error at or near "FROM"')
    assert classify_error("postgresql", exc) == "syntax"


def test_classify_unknown() -> None:
    """Unrecognized errors are unknown."""
    assert classify_error("postgresql", Exception("something odd")) == "unknown"


def test_emit_classified_error_logs_when_enabled(monkeypatch, caplog) -> None:
    """Structured telemetry is emitted when enabled."""
    monkeypatch.setenv("DAL_CLASSIFIED_ERROR_TELEMETRY", "true")
    with caplog.at_level(logging.WARNING):
        emit_classified_error("postgresql", "run_query", "syntax", Exception("bad"))

    record = next(r for r in caplog.records if r.message == "dal_error_classified")
    assert record.engine == "postgresql"
    assert record.operation == "run_query"
    assert record.error_category == "syntax"


def test_emit_classified_error_disabled(monkeypatch, caplog) -> None:
    """Structured telemetry is suppressed when disabled."""
    monkeypatch.setenv("DAL_CLASSIFIED_ERROR_TELEMETRY", "false")
    with caplog.at_level(logging.WARNING):
        emit_classified_error("postgresql", "run_query", "syntax", Exception("bad"))

    assert not [r for r in caplog.records if r.message == "dal_error_classified"]
