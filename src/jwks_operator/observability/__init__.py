"""
Observability utilities for the JWKS operator.

This module provides metrics and structured logging capabilities
for production monitoring and troubleshooting.
"""

from .logging import OperatorLogger, setup_structured_logging
from .metrics import (
    MetricsServer,
    MetricsSink,
    NullMetricsSink,
    PrometheusMetricsSink,
    get_metrics_registry,
)

__all__ = [
    "MetricsServer",
    "MetricsSink",
    "NullMetricsSink",
    "PrometheusMetricsSink",
    "get_metrics_registry",
    "OperatorLogger",
    "setup_structured_logging",
]
