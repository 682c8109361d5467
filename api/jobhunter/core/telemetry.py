"""Tracing and log correlation for the API process.

Pipeline runs execute inside this process, so their ``pipeline.run`` and
``pipeline.stage`` spans share the tracer provider installed here, as do the
outbound httpx calls to the scrape provider, contact finder, Google and
SendGrid.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from jobhunter.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
_NO_TRACE_ID = "0" * 32
_NO_SPAN_ID = "0" * 16

logger = logging.getLogger(__name__)
_httpx_instrumentor = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None


def configure_api_logging() -> None:
    _install_log_correlation()
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)
    if settings.otel_log_correlation:
        _install_log_correlation()

    resource = Resource.create(
        {SERVICE_NAME: settings.otel_service_name, DEPLOYMENT_ENVIRONMENT: settings.environment}
    )
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio))
    if settings.otel_exporter_otlp_endpoint:
        exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            headers=otlp_headers(settings.otel_exporter_otlp_headers),
        )
        provider.add_span_processor(BatchSpanProcessor(exporter))
    else:
        logger.info("no OTLP endpoint configured; spans stay in-process service=%s", settings.otel_service_name)

    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    _httpx_instrumentor.instrument(tracer_provider=provider)
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_api_telemetry(app: FastAPI, runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    FastAPIInstrumentor.uninstrument_app(app)
    _httpx_instrumentor.uninstrument()
    if runtime.provider is not None:
        runtime.provider.shutdown()


def otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key=value`` exporter headers, skipping malformed pairs."""
    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


def _install_log_correlation() -> None:
    base_factory = logging.getLogRecordFactory()
    if getattr(base_factory, "adds_trace_context", False):
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = base_factory(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else _NO_TRACE_ID
        record.span_id = format(context.span_id, "016x") if context.is_valid else _NO_SPAN_ID
        return record

    record_factory.adds_trace_context = True
    logging.setLogRecordFactory(record_factory)
