"""
OpenTelemetry tracing for the engine.

Only the OpenTelemetry API is required: without an SDK tracer provider the
tracer is a no-op, so callers never need guard clauses. Applications that
want spans exported install ``opentelemetry-sdk`` and register a provider.

Usage::

    from orrery_engine.tracing import get_tracer
    tracer = get_tracer("orrery.engine.step_loop")

    with tracer.start_as_current_span("agent.step") as span:
        span.set_attribute("orrery.agent", agent.name)
"""
from contextlib import contextmanager
from typing import Any, Iterator

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode


def get_tracer(name: str = "orrery.engine") -> trace.Tracer:
    """Return an OpenTelemetry tracer for manual span creation."""
    return trace.get_tracer(name)


@contextmanager
def traced(tracer: trace.Tracer, name: str, **attributes: Any) -> Iterator[Span]:
    """Span that records the exception and an error status when the block raises."""
    with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"orrery.{key}", value)
        try:
            yield span
        except BaseException as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
