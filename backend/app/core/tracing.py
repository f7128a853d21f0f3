import logging
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource

from .config import Settings

logger = logging.getLogger(__name__)

TRACER_NAME = "nebulachat"

_tracer_provider = None

def setup_tracing(settings: Settings):
    """Initializes the OpenTelemetry TracerProvider with an OTLP exporter."""
    global _tracer_provider
    if _tracer_provider:
        return # Already initialized
        
    try:
        resource = Resource(attributes={
            SERVICE_NAME: settings.OTEL_SERVICE_NAME
        })
        
        _tracer_provider = TracerProvider(resource=resource)
        
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.OTLP_ENDPOINT, 
            insecure=settings.OTLP_INSECURE
        )
        _tracer_provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        
        # Set the global tracer provider
        trace.set_tracer_provider(_tracer_provider)
        
        logger.info(f"OpenTelemetry tracing initialized for service '{settings.OTEL_SERVICE_NAME}', exporting to {settings.OTLP_ENDPOINT}")
        
    except Exception as e:
        # Tracing failures must not stop the app; spans fall back to no-ops
        logger.exception(f"Failed to initialize OpenTelemetry tracing: {e}")
        _tracer_provider = None

def get_tracer():
    """Returns a tracer; a no-op one until setup_tracing has run."""
    return trace.get_tracer(TRACER_NAME)

async def shutdown_tracing():
    """Shuts down the tracer provider gracefully."""
    global _tracer_provider
    if _tracer_provider and hasattr(_tracer_provider, 'shutdown'):
        logger.info("Shutting down OpenTelemetry tracer provider...")
        _tracer_provider.shutdown()
        _tracer_provider = None
        logger.info("OpenTelemetry tracer provider shut down.")
