"""
Observability sink for tool calls.

The dispatcher reports every finished request exactly once through a
MetricsSink: one record_call() for the counters/histogram and one log()
for the structured event. Storage and export belong to Prometheus; this
module only maintains the in-process collectors that /metrics renders.

Labels are kept low-cardinality: the registered tool name and the outcome,
never subjects or argument values. Requests that never resolved to a
registered tool share the UNRESOLVED_TOOL label.
"""

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any, Protocol

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

from mcp_gateway.results import ErrorKind, ToolResult

logger = logging.getLogger("mcp_gateway.calls")

# Tool label for malformed, unauthenticated and unknown-tool requests.
UNRESOLVED_TOOL = "-"


class Outcome(str, Enum):
    """Terminal outcome label for one tool call."""

    SUCCESS = "success"
    MALFORMED_REQUEST = "malformed_request"
    UNAUTHORIZED = "unauthorized"
    UNKNOWN_TOOL = "unknown_tool"
    VALIDATION_ERROR = "validation_error"
    FORBIDDEN = "forbidden"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"

    @classmethod
    def from_result(cls, result: ToolResult) -> "Outcome":
        if result.ok:
            return cls.SUCCESS
        return _OUTCOME_BY_KIND[result.kind]


_OUTCOME_BY_KIND = {
    ErrorKind.MALFORMED_REQUEST: Outcome.MALFORMED_REQUEST,
    ErrorKind.UNAUTHORIZED: Outcome.UNAUTHORIZED,
    ErrorKind.UNKNOWN_TOOL: Outcome.UNKNOWN_TOOL,
    ErrorKind.VALIDATION_ERROR: Outcome.VALIDATION_ERROR,
    ErrorKind.FORBIDDEN: Outcome.FORBIDDEN,
    ErrorKind.TIMEOUT: Outcome.TIMEOUT,
    ErrorKind.CANCELLED: Outcome.CANCELLED,
    ErrorKind.INTERNAL_ERROR: Outcome.INTERNAL_ERROR,
}


_INFO_EVENTS = frozenset({"call_succeeded", "tools_listed"})


class MetricsSink(Protocol):
    """
    Receives one record_call() and one log() per finished request.

    tool_name is the registered tool name, or UNRESOLVED_TOOL when the
    request never got past the registry lookup.
    """

    def record_call(self, tool_name: str, outcome: Outcome, duration_ms: float) -> None:
        ...

    def log(self, event: str, fields: Mapping[str, Any]) -> None:
        ...


class PrometheusSink:
    """
    MetricsSink backed by prometheus_client collectors.

    Each sink owns its CollectorRegistry so several gateways (or tests) in
    one process do not collide on metric names.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.calls_total = Counter(
            "mcp_gateway_tool_calls_total",
            "Tool calls handled by the gateway, by terminal outcome",
            ["tool", "outcome"],
            registry=self.registry,
        )
        self.call_duration = Histogram(
            "mcp_gateway_tool_call_duration_seconds",
            "Time from request receipt to terminal outcome",
            ["tool"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
            registry=self.registry,
        )
        self.errors_total = Counter(
            "mcp_gateway_tool_call_errors_total",
            "Tool calls that ended in a failure, by kind",
            ["tool", "kind"],
            registry=self.registry,
        )

    def record_call(self, tool_name: str, outcome: Outcome, duration_ms: float) -> None:
        tool = tool_name or UNRESOLVED_TOOL
        self.calls_total.labels(tool=tool, outcome=outcome.value).inc()
        self.call_duration.labels(tool=tool).observe(duration_ms / 1000.0)
        if outcome is not Outcome.SUCCESS:
            self.errors_total.labels(tool=tool, kind=outcome.value).inc()

    def log(self, event: str, fields: Mapping[str, Any]) -> None:
        level = logging.INFO if event in _INFO_EVENTS else logging.WARNING
        logger.log(level, event, extra={"event_data": dict(fields)})

    def render(self) -> tuple[bytes, str]:
        """Text exposition body and content type for the /metrics endpoint."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
