import structlog
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.semconv.resource import ResourceAttributes
from oobscan.shared.core.config import get_settings

logger = structlog.get_logger()


def setup_tracing(console_fallback: bool = False) -> None:
    """
    Sets up OpenTelemetry tracing for the reconciler.
    """
    settings = get_settings()

    resource = Resource(attributes={
        ResourceAttributes.SERVICE_NAME: "oobscan",
        "env": settings.ENVIRONMENT,
    })

    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)

    # OTLP if endpoint provided, otherwise optionally Console
    otlp_endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT
    if otlp_endpoint:
        logger.info("setup_tracing_otlp", endpoint=otlp_endpoint)
        otlp_exporter = OTLPSpanExporter(
            endpoint=otlp_endpoint, insecure=settings.OTEL_EXPORTER_OTLP_INSECURE
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
    elif console_fallback:
        logger.info("setup_tracing_console")
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))


def get_tracer(name: str) -> trace.Tracer:
    """Returns a tracer instance for manual instrumentation."""
    return trace.get_tracer(name)


def get_current_trace_id() -> str | None:
    """Hex trace id of the active span, if it is recording."""
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return None
    return format(span_context.trace_id, "032x")
