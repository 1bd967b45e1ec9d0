"""OpenTelemetry tracing for athyr-agent."""

from athyr_agent.observability.tracing import (
    AgentTracer,
    TracingConfig,
    setup_tracing,
    tracer,
)

__all__ = ["AgentTracer", "TracingConfig", "setup_tracing", "tracer"]
