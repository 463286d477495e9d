"""Service entrypoint for the data source gateway API."""

import logging

import uvicorn
from dotenv import load_dotenv

from common.config.env import get_env_bool, get_env_int, get_env_str

# Configure logging at the start
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()


def setup_telemetry() -> None:
    """Install an OTLP tracer provider when gateway tracing is enabled."""
    if not get_env_bool("DAL_TRACE_QUERIES", False):
        return

    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    endpoint = get_env_str("OTEL_EXPORTER_OTLP_ENDPOINT", "http://otel-collector:4317")
    service_name = get_env_str("OTEL_SERVICE_NAME", "datasource-gateway")
    provider = TracerProvider(resource=Resource.create({SERVICE_NAME: service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    logger.info("OTEL tracing enabled (exporter=%s)", endpoint)


def main() -> None:
    """Run the API with uvicorn."""
    setup_telemetry()
    uvicorn.run(
        "gateway_api.app:app",
        host=get_env_str("GATEWAY_HOST", "0.0.0.0"),
        port=get_env_int("GATEWAY_PORT", 8080),
        log_level="info",
    )


if __name__ == "__main__":
    main()
