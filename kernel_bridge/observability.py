"""
Structured logging and tracing for kernel-bridge.

Every log line goes to stderr through structlog. Kernel requests run inside
OpenTelemetry spans named ``kernel.<kind>``; spans are exported over OTLP only
when ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set.
"""

import logging
import os
import sys

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

SERVICE_NAME = "kernel-bridge"

_exporter_installed = False


def add_trace_context(logger, method_name, event_dict):
    """structlog processor stamping log lines with the active span's ids."""
    context = trace.get_current_span().get_span_context()
    if context.is_valid:
        event_dict["trace_id"] = format(context.trace_id, "032x")
        event_dict["span_id"] = format(context.span_id, "016x")
    return event_dict


def _install_span_exporter(endpoint: str):
    global _exporter_installed
    if _exporter_installed:
        return
    provider = TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _exporter_installed = True


def configure_logging(level="info"):
    """
    Route structlog and stdlib logging to stderr at ``level``.

    stdout is left alone; the CLI prints its JSON results there. Output is
    colored console text on a terminal and one JSON object per line otherwise.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        _install_span_exporter(endpoint)

    threshold = logging.getLevelName(str(level).upper())
    if not isinstance(threshold, int):
        threshold = logging.INFO

    renderer = (
        structlog.dev.ConsoleRenderer()
        if sys.stderr.isatty()
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_trace_context,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # jupyter_client and traitlets log through the stdlib
    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr, level=threshold)


def get_logger(name=None):
    return structlog.get_logger(name)


def get_tracer(name=None):
    return trace.get_tracer(name or SERVICE_NAME)


def bind_request(kind: str, request_id: str):
    """Bind the correlation id of a kernel request to every log line in scope."""
    return structlog.contextvars.bound_contextvars(request_kind=kind, request_id=request_id)
