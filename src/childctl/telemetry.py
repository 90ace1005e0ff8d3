"""OpenTelemetry bootstrap for instrumented children.

Configures a tracer provider from the telemetry settings injected by the
manager. Spans are exported only when the OTLP exporter extra is installed
and ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set.
"""

import json
import logging
import os
from collections.abc import Mapping

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from childctl.environment import TELEMETRY_VARIABLE

_log = logging.getLogger(__name__)

TRACER_NAME: str = "childctl"
OTLP_ENDPOINT_VARIABLE: str = "OTEL_EXPORTER_OTLP_ENDPOINT"


def read_telemetry_config(environ: Mapping[str, str] | None = None) -> dict[str, object] | None:
    """Decode the telemetry settings injected into this process.

    :param environ: Environment mapping, defaults to ``os.environ``.
    :returns: Settings mapping, or ``None`` when absent or unreadable.
    """
    if environ is None:
        environ = os.environ
    raw: str = environ.get(TELEMETRY_VARIABLE, "")
    if len(raw) == 0:
        return None
    try:
        config: object = json.loads(raw)
    except json.JSONDecodeError:
        _log.warning("Ignoring unreadable %s value", TELEMETRY_VARIABLE)
        return None
    if isinstance(config, dict) is False:
        _log.warning("Ignoring non-object %s value", TELEMETRY_VARIABLE)
        return None
    return config


def _attach_exporter(tracer_provider: TracerProvider) -> bool:
    """Attach the OTLP HTTP exporter when the optional extra is installed.

    :param tracer_provider: Provider receiving the span processor.
    :returns: ``True`` when an exporter was attached.
    """
    try:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    except ModuleNotFoundError:
        _log.warning("OTLP exporter missing, install childctl[otlp] to export spans.")
        return False
    tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
    return True


def configure(environ: Mapping[str, str] | None = None) -> bool:
    """Install a tracer provider for this child.

    :param environ: Environment mapping, defaults to ``os.environ``.
    :returns: ``True`` when a provider was installed, ``False`` when telemetry
        is absent, disabled or unreadable.
    """
    if environ is None:
        environ = os.environ
    config: dict[str, object] | None = read_telemetry_config(environ)
    if config is None or config.get("enabled") is False:
        return False

    service_name: str = str(config.get("serviceName", TRACER_NAME))
    resource: Resource = Resource.create({"service.name": service_name, "process.pid": os.getpid()})
    tracer_provider: TracerProvider = TracerProvider(resource=resource)

    endpoint: str = environ.get(OTLP_ENDPOINT_VARIABLE, "")
    if len(endpoint) > 0:
        _attach_exporter(tracer_provider)

    trace.set_tracer_provider(tracer_provider)
    _log.info("Tracing enabled for service %s", service_name)
    return True
