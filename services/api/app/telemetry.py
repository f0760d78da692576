import logging

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

SERVICE_NAME = "academic-trust-api"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# chatty client libraries stay at WARNING unless LOG_LEVEL is DEBUG
QUIET_LOGGERS = ("web3", "urllib3", "httpx")


def configure_logging(settings):
    level = settings.log_level.upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    if level != "DEBUG":
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def setup_otel(settings):
    if not settings.otlp_endpoint:
        return
    resource = Resource.create(
        {"service.name": SERVICE_NAME, "deployment.environment": settings.env}
    )
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    logging.getLogger(__name__).info("exporting traces to %s", settings.otlp_endpoint)
