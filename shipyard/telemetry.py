"""OpenTelemetry wiring for the daemon.

The daemon records cycle spans and job counters. Both are exported over
OTLP only when OTLP_ENABLED=true; otherwise they stay in process.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

from shipyard.config import DaemonConfig

logger = logging.getLogger(__name__)

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (set by create_metrics)
jobs_spawned_counter: metrics.Counter
jobs_completed_counter: metrics.Counter
jobs_killed_counter: metrics.Counter
health_findings_counter: metrics.Counter
alerts_counter: metrics.Counter
job_duration: metrics.Histogram


def otlp_enabled() -> bool:
    return os.getenv("OTLP_ENABLED", "false").lower() == "true"


def setup_telemetry(config: DaemonConfig) -> None:
    """Install the daemon's trace and metric providers and bind its instruments."""
    resource = Resource.create({"service.name": config.service_name})
    tracer_provider = TracerProvider(resource=resource)
    metric_readers = []

    if otlp_enabled() and config.otlp_endpoint:
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        tracer_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otlp_endpoint))
        )
        metric_readers.append(
            PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=config.otlp_endpoint))
        )
        logger.info(f"Exporting telemetry to {config.otlp_endpoint}")

    trace.set_tracer_provider(tracer_provider)
    metrics.set_meter_provider(
        MeterProvider(resource=resource, metric_readers=metric_readers)
    )
    create_metrics(metrics.get_meter(config.service_name))


def create_metrics(meter: metrics.Meter) -> None:
    """Create metric instruments for daemon tracking.

    Counters: jobs spawned, jobs completed (by result), jobs killed (by
    reason), health findings, degradation alerts. Histogram: job duration.

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global jobs_spawned_counter, jobs_completed_counter, jobs_killed_counter
    global health_findings_counter, alerts_counter, job_duration

    jobs_spawned_counter = meter.create_counter(
        "shipyard_jobs_spawned_total",
        description="Total job processes spawned",
    )

    jobs_completed_counter = meter.create_counter(
        "shipyard_jobs_completed_total",
        description="Total job attempts reaped",
    )

    jobs_killed_counter = meter.create_counter(
        "shipyard_jobs_killed_total",
        description="Total jobs killed by the health monitor",
    )

    health_findings_counter = meter.create_counter(
        "shipyard_health_findings_total",
        description="Total health check findings",
    )

    alerts_counter = meter.create_counter(
        "shipyard_alerts_total",
        description="Total degradation alerts raised",
    )

    job_duration = meter.create_histogram(
        "shipyard_job_duration_seconds",
        description="Job attempt duration",
        unit="s",
    )


# Bind instruments to the global (proxy) meter until setup_telemetry runs
create_metrics(metrics.get_meter("shipyard"))
