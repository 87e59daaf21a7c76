import os

from ddtrace.trace import tracer


def configure_tracing(enabled: bool | None = None) -> None:
    """Tracing is off unless DD_TRACE_ENABLED=true or `enabled` is passed."""
    if enabled is None:
        enabled = os.getenv("DD_TRACE_ENABLED", "false").lower() == "true"
    tracer.enabled = enabled
