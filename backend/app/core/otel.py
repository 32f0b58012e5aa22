"""OpenTelemetry setup - exporters, log export and library instrumentation.

Everything here is a no-op unless OTEL_EXPORTER_OTLP_ENDPOINT is set; the
module-level tracer then hands out non-recording spans.
"""
import logging

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from app.core.config import settings

logger = logging.getLogger(__name__)

SERVICE_VERSION = "0.1.0"

# Spans around ledger-level work (webhook application, charge submission)
tracer = trace.get_tracer("campaign_ledger")


def _resource() -> Resource:
    return Resource.create({
        "service.name": settings.OTEL_SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "deployment.environment": settings.OTEL_ENVIRONMENT
    })


def _install_providers(resource: Resource) -> None:
    endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
    trace.set_tracer_provider(trace_provider)

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint, insecure=True),
        export_interval_millis=5000,
        export_timeout_millis=30000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))


def _install_log_export(resource: Resource) -> bool:
    """Ship application logs over OTLP alongside traces"""
    try:
        from opentelemetry._logs import set_logger_provider
        from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
    except ImportError as e:
        logger.warning(f"OTLP log export unavailable: {e}")
        return False

    logger_provider = LoggerProvider(resource=resource)
    set_logger_provider(logger_provider)
    logger_provider.add_log_record_processor(BatchLogRecordProcessor(
        OTLPLogExporter(endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True),
        max_queue_size=2048,
        export_timeout_millis=30000,
        schedule_delay_millis=5000
    ))
    logging.getLogger().addHandler(LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider))
    return True


def setup_telemetry(app, engine) -> bool:
    """Install exporters and instrument FastAPI, SQLAlchemy and httpx.

    Returns True when telemetry is being exported. Failures are logged and
    never stop the service from starting.
    """
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        logger.info("OpenTelemetry not configured - running without distributed tracing")
        return False

    try:
        resource = _resource()
        _install_providers(resource)
        logs_exported = _install_log_export(resource)
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")
        return False

    try:
        FastAPIInstrumentor.instrument_app(app)
        SQLAlchemyInstrumentor().instrument(engine=engine)
        HTTPXClientInstrumentor().instrument()
    except Exception as e:
        logger.warning(f"Failed to instrument libraries: {e}")

    logger.info(
        f"OpenTelemetry exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}"
        + ("" if logs_exported else " (logs not exported)")
    )
    return True
