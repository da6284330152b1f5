"""
Observability components.

Provides structured logging and metrics collection.
"""

from .logging import (
    ContextualLoggerAdapter,
    correlation_scope,
    get_correlation_id,
    get_logger,
    get_logging_context,
    log_operation,
    operation_scope,
)
from .metrics import (
    MetricsCollector,
    OperationMetrics,
    get_metrics_collector,
    record_operation,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "OperationMetrics",
    "get_metrics_collector",
    "record_operation",
    # Logging
    "get_correlation_id",
    "correlation_scope",
    "operation_scope",
    "get_logging_context",
    "ContextualLoggerAdapter",
    "get_logger",
    "log_operation",
]
