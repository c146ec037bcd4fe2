"""
OpenTelemetry configuration with OTLP exporters for huddle.

Span helpers use the global tracer, so they are no-ops until
``initialize_telemetry`` installs a provider.
"""

import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.asyncio import AsyncioInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased


logger = logging.getLogger(__name__)

TRACER_NAME = "huddle"


class ObservabilityConfig:
    """Configuration for OpenTelemetry setup."""

    def __init__(self, config: Dict[str, Any]):
        self.service_name = config.get("service_name", "huddle")
        self.service_version = config.get("service_version", "0.1.0")
        self.environment = config.get("environment", "development")
        self.otlp_endpoint = config.get(
            "otlp_endpoint", os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
        )
        self.export_timeout = config.get("export_timeout", 30)
        self.trace_sampling_ratio = config.get("trace_sampling_ratio", 1.0)
        self.resource_attributes = config.get("resource_attributes", {})


class TelemetryManager:
    """Manages OpenTelemetry setup and lifecycle."""

    def __init__(self, config: ObservabilityConfig):
        self.config = config
        self._initialized = False

    def initialize(self) -> None:
        """Initialize OpenTelemetry with OTLP exporters."""
        if self._initialized:
            logger.warning("Telemetry already initialized")
            return

        resource = Resource.create({
            "service.name": self.config.service_name,
            "service.version": self.config.service_version,
            "deployment.environment": self.config.environment,
            **self.config.resource_attributes
        })

        tracer_provider = TracerProvider(
            resource=resource,
            sampler=TraceIdRatioBased(self.config.trace_sampling_ratio)
        )
        tracer_provider.add_span_processor(BatchSpanProcessor(
            OTLPSpanExporter(endpoint=self.config.otlp_endpoint, timeout=self.config.export_timeout)
        ))
        trace.set_tracer_provider(tracer_provider)

        metric_reader = PeriodicExportingMetricReader(
            exporter=OTLPMetricExporter(endpoint=self.config.otlp_endpoint, timeout=self.config.export_timeout),
            export_interval_millis=10000
        )
        metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[metric_reader]))

        AsyncioInstrumentor().instrument()
        LoggingInstrumentor().instrument(set_logging_format=False)

        self._initialized = True
        logger.info(f"OpenTelemetry initialized for service: {self.config.service_name}")

    def shutdown(self) -> None:
        """Flush and shut down the providers."""
        if not self._initialized:
            return

        try:
            tracer_provider = trace.get_tracer_provider()
            if hasattr(tracer_provider, "shutdown"):
                tracer_provider.shutdown()
            meter_provider = metrics.get_meter_provider()
            if hasattr(meter_provider, "shutdown"):
                meter_provider.shutdown()
            logger.info("OpenTelemetry shutdown completed")
        except Exception as e:
            logger.error(f"Error during telemetry shutdown: {e}")
        finally:
            self._initialized = False


_telemetry_manager: Optional[TelemetryManager] = None


def initialize_telemetry(config: Dict[str, Any]) -> TelemetryManager:
    """Initialize global telemetry manager."""
    global _telemetry_manager

    _telemetry_manager = TelemetryManager(ObservabilityConfig(config))
    _telemetry_manager.initialize()
    return _telemetry_manager


def shutdown_telemetry() -> None:
    """Shutdown global telemetry manager."""
    global _telemetry_manager
    if _telemetry_manager:
        _telemetry_manager.shutdown()
        _telemetry_manager = None


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME)


@contextmanager
def round_span(session_id: str, mode: str, round_number: int) -> Iterator[trace.Span]:
    """Span covering one routed round."""
    with get_tracer().start_as_current_span(
        "conversation.round",
        attributes={
            "conversation.session_id": session_id,
            "conversation.mode": mode,
            "conversation.round": round_number
        }
    ) as span:
        yield span


@contextmanager
def turn_span(session_id: str, agent_id: str) -> Iterator[trace.Span]:
    """Span covering one agent turn."""
    with get_tracer().start_as_current_span(
        "agent.turn",
        attributes={
            "conversation.session_id": session_id,
            "agent.id": agent_id
        }
    ) as span:
        yield span


@contextmanager
def approval_span(session_id: str, agent_id: str, kind: str) -> Iterator[trace.Span]:
    """Span covering the wait for an approval decision."""
    with get_tracer().start_as_current_span(
        "approval.wait",
        attributes={
            "conversation.session_id": session_id,
            "agent.id": agent_id,
            "approval.kind": kind
        }
    ) as span:
        yield span
