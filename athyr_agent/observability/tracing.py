"""OpenTelemetry tracing for the athyr-agent event pipeline.

Spans:

* ``athyr.handle``      one per inbound event (topic, trace_id)
* ``athyr.completion``  one per completion call (model, iteration)
* ``athyr.tool``        one per tool call (tool name)

Until :meth:`AgentTracer.setup` installs a provider, the OpenTelemetry API's
default no-op provider applies and spans cost next to nothing.
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass
from typing import Any, Iterator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

from athyr_agent.config.settings import settings

TRACER_NAME = "athyr_agent"


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

@dataclass
class TracingConfig:
    endpoint: str = ""
    service_name: str = "athyr-agent"

    @classmethod
    def from_settings(cls) -> TracingConfig:
        return cls(
            endpoint=settings.OTEL_EXPORTER_ENDPOINT,
            service_name=settings.ATHYR_SERVICE_NAME,
        )


# ---------------------------------------------------------------------------
# Tracer
# ---------------------------------------------------------------------------

class AgentTracer:
    """Thin wrapper that configures and exposes OTel tracing for athyr-agent."""

    def __init__(self, config: TracingConfig | None = None) -> None:
        self._config = config or TracingConfig.from_settings()
        self._provider: TracerProvider | None = None

    @property
    def enabled(self) -> bool:
        return self._provider is not None

    # -- setup --------------------------------------------------------------

    def setup(self) -> bool:
        """Install an OTLP-exporting tracer provider if an endpoint is set.

        Returns True when a provider was installed.
        """
        if not self._config.endpoint or self._provider is not None:
            return False

        resource = Resource.create({"service.name": self._config.service_name})
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=self._config.endpoint))
        )
        trace.set_tracer_provider(provider)
        self._provider = provider
        return True

    def shutdown(self) -> None:
        if self._provider is not None:
            self._provider.shutdown()

    # -- span helpers -------------------------------------------------------

    @contextlib.contextmanager
    def span(self, name: str, **attributes: Any) -> Iterator[trace.Span]:
        """Start a span as the current span; exceptions are recorded on it."""
        tracer = trace.get_tracer(TRACER_NAME)
        attrs = {k: v for k, v in attributes.items() if v is not None}
        with tracer.start_as_current_span(
            name, attributes=attrs, record_exception=False, set_status_on_exception=False
        ) as span:
            try:
                yield span
            except BaseException as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise

    def handle_span(self, topic: str, trace_id: str) -> contextlib.AbstractContextManager:
        return self.span("athyr.handle", **{"athyr.topic": topic, "athyr.trace_id": trace_id})

    def completion_span(self, model: str, iteration: int) -> contextlib.AbstractContextManager:
        return self.span(
            "athyr.completion",
            **{"gen_ai.request.model": model, "athyr.iteration": iteration},
        )

    def tool_span(self, name: str) -> contextlib.AbstractContextManager:
        return self.span("athyr.tool", **{"gen_ai.tool.name": name})


tracer = AgentTracer()


def setup_tracing() -> bool:
    """Configure the module-level tracer from settings."""
    return tracer.setup()
