import hashlib
from unittest.mock import patch

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from dal.tracing import trace_enabled, trace_gateway_operation


def _provider():
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return provider, exporter


def test_trace_disabled_by_default() -> None:
    """Tracing stays off unless DAL_TRACE_QUERIES is set."""
    assert trace_enabled() is False


def test_trace_invalid_flag_disables(monkeypatch: pytest.MonkeyPatch) -> None:
    """An unparseable flag value disables tracing instead of failing."""
    monkeypatch.setenv("DAL_TRACE_QUERIES", "maybe")

    assert trace_enabled() is False


@pytest.mark.asyncio
async def test_disabled_tracing_just_awaits() -> None:
    """With tracing off the operation result is passed through."""

    async def _operation():
        return 42

    assert await trace_gateway_operation("x", engine="postgresql", operation=_operation()) == 42


@pytest.mark.asyncio
async def test_query_span_hashes_sql(monkeypatch: pytest.MonkeyPatch) -> None:
    """Query spans carry the statement hash, never the statement."""
    monkeypatch.setenv("DAL_TRACE_QUERIES", "true")
    provider, exporter = _provider()

    async def _operation():
        return "rows"

    with patch("opentelemetry.trace.get_tracer") as mock_get_tracer:
        mock_get_tracer.side_effect = lambda name: provider.get_tracer(name)
        result = await trace_gateway_operation(
            "gateway.query.execute",
            engine="postgresql",
            connection_id="c-1",
            purpose="query",
            sql="select 1",
            operation=_operation(),
        )

    assert result == "rows"
    (span,) = exporter.get_finished_spans()
    assert span.name == "gateway.query.execute"
    assert span.attributes["db.system"] == "postgresql"
    assert span.attributes["gateway.connection_id"] == "c-1"
    assert span.attributes["gateway.purpose"] == "query"
    assert (
        span.attributes["db.statement_hash"]
        == hashlib.sha256("select 1".encode("utf-8")).hexdigest()
    )
    assert span.attributes["db.status"] == "ok"
    assert "db.statement" not in span.attributes


@pytest.mark.asyncio
async def test_failed_operation_marks_span_error(monkeypatch: pytest.MonkeyPatch) -> None:
    """Errors are re-raised after the span is marked."""
    monkeypatch.setenv("DAL_TRACE_QUERIES", "true")
    provider, exporter = _provider()

    async def _operation():
        raise OSError("refused")

    with patch("opentelemetry.trace.get_tracer") as mock_get_tracer:
        mock_get_tracer.side_effect = lambda name: provider.get_tracer(name)
        with pytest.raises(OSError):
            await trace_gateway_operation(
                "gateway.pool.open", engine="postgresql", operation=_operation()
            )

    (span,) = exporter.get_finished_spans()
    assert span.attributes["db.status"] == "error"
