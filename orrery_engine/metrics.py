"""
Prometheus metrics for the orrery engine.

Usage:
    from orrery_engine.metrics import METRICS

    METRICS.steps_total.labels(agent="researcher", status="ok").inc()

Tests that need isolation build their own ``EngineMetrics(CollectorRegistry())``.
"""
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class EngineMetrics:
    """All engine metrics in one place."""

    def __init__(self, reg: CollectorRegistry = REGISTRY):
        self.registry = reg

        # -- Operations --
        self.operations_total = Counter(
            "orrery_operations_total",
            "Agent runs by final state",
            ["agent", "state"],
            registry=reg,
        )
        self.operations_in_progress = Gauge(
            "orrery_operations_in_progress",
            "Agent runs currently executing",
            ["agent"],
            registry=reg,
        )

        # -- Steps --
        self.steps_total = Counter(
            "orrery_steps_total",
            "Model round-trips by status",
            ["agent", "status"],
            registry=reg,
        )

        # -- Tools --
        self.tool_calls_total = Counter(
            "orrery_tool_calls_total",
            "Tool executions by outcome",
            ["tool", "success"],
            registry=reg,
        )
        self.tool_duration = Histogram(
            "orrery_tool_duration_seconds",
            "Tool execution time",
            ["tool"],
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 120.0],
            registry=reg,
        )

        # -- Delegation --
        self.delegations_total = Counter(
            "orrery_delegations_total",
            "Sub-agent handoffs by outcome",
            ["source", "target", "status"],
            registry=reg,
        )

        # -- LLM --
        self.model_latency = Histogram(
            "orrery_model_latency_seconds",
            "Model backend call latency",
            ["model"],
            buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
            registry=reg,
        )

    def export(self) -> bytes:
        """Prometheus text exposition of this registry."""
        return generate_latest(self.registry)


METRICS = EngineMetrics()
