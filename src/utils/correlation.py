"""
Correlation ID Utility for the Connect Exporter

Every poll cycle and evaluation tick runs under its own correlation ID so
that log lines emitted by the poller threads, the normalizer and the alert
router for the same cycle can be tied together.
"""

import uuid
import contextvars
from typing import Optional
import logging

logger = logging.getLogger(__name__)

# Context variable for correlation ID
_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'correlation_id',
    default=None
)


def generate_correlation_id(prefix: Optional[str] = None) -> str:
    """
    Generate a new correlation ID.

    Args:
        prefix: Optional prefix naming the loop (e.g. "poll", "eval")

    Returns:
        "<prefix>-<12 hex chars>" or a bare UUID4 string
    """
    if prefix:
        return f"{prefix}-{uuid.uuid4().hex[:12]}"
    return str(uuid.uuid4())


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: str) -> None:
    """
    Set the correlation ID in the current context.

    Raises:
        ValueError: If correlation_id is empty or not a string
    """
    if not correlation_id or not isinstance(correlation_id, str):
        raise ValueError("Correlation ID must be a non-empty string")

    _correlation_id.set(correlation_id)


def clear_correlation_id() -> None:
    """Clear the correlation ID from context."""
    _correlation_id.set(None)


class CycleContext:
    """
    Context manager scoping a correlation ID to one loop iteration.

    Restores whatever ID was active before on exit.
    """

    def __init__(self, prefix: str, correlation_id: Optional[str] = None):
        self.prefix = prefix
        self.correlation_id = correlation_id
        self.previous_id = None

    def __enter__(self) -> str:
        self.previous_id = get_correlation_id()

        if not self.correlation_id:
            self.correlation_id = generate_correlation_id(self.prefix)
        set_correlation_id(self.correlation_id)

        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.previous_id:
            set_correlation_id(self.previous_id)
        else:
            clear_correlation_id()


def run_with_correlation(correlation_id: Optional[str], func, *args, **kwargs):
    """
    Call func with the given correlation ID set.

    Worker threads of a ThreadPoolExecutor do not inherit context variables,
    so the poller wraps each submitted call with this helper.
    """
    if correlation_id:
        set_correlation_id(correlation_id)
    try:
        return func(*args, **kwargs)
    finally:
        clear_correlation_id()


def correlation_id_filter(record):
    """
    Logging filter to add correlation ID to log records.

    Returns:
        True (always allow record)
    """
    record.correlation_id = get_correlation_id() or "N/A"
    return True
