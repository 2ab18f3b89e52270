"""
Prometheus metrics for the JWKS operator.

Reconciliation code never touches the collectors below directly. It reports
through a ``MetricsSink`` handed to it at construction time, so tests and
alternative backends can swap the sink without patching module globals.
"""

import logging
import time
from typing import Protocol

from aiohttp.web import (
    Application,
    AppRunner,
    Request,
    Response,
    TCPSite,
    json_response,
)
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

RESULT_SUCCESS = "success"
RESULT_ERROR = "error"

# Global metrics registry
_metrics_registry: CollectorRegistry | None = None

# Metrics definitions
RECONCILE_TOTAL = Counter(
    "jwks_operator_reconcile_total",
    "Total number of reconciliations",
    ["result"],
    registry=None,  # Will be set during initialization
)

RECONCILE_DURATION = Histogram(
    "jwks_operator_reconcile_duration_seconds",
    "Duration of reconciliation in seconds",
    ["result"],
    registry=None,
)

CONFIGMAP_UPDATES_TOTAL = Counter(
    "jwks_operator_configmap_updates_total",
    "Total number of ConfigMap updates",
    ["type", "result"],
    registry=None,
)

JWKS_GENERATION_TOTAL = Counter(
    "jwks_operator_jwks_generation_total",
    "Total number of JWKS generation attempts",
    ["result"],
    registry=None,
)

NGINX_OPERATIONS_TOTAL = Counter(
    "jwks_operator_nginx_operations_total",
    "Total number of nginx operations",
    ["operation", "result"],
    registry=None,
)

JWKS_VERIFICATION_TOTAL = Counter(
    "jwks_operator_jwks_verification_total",
    "Total number of JWKS verification attempts",
    ["result"],
    registry=None,
)

ERRORS_TOTAL = Counter(
    "jwks_operator_errors_total",
    "Total number of errors by type",
    ["type"],
    registry=None,
)


def get_metrics_registry() -> CollectorRegistry:
    """Get or create the global metrics registry."""
    global _metrics_registry

    if _metrics_registry is None:
        _metrics_registry = CollectorRegistry()

        for metric in [
            RECONCILE_TOTAL,
            RECONCILE_DURATION,
            CONFIGMAP_UPDATES_TOTAL,
            JWKS_GENERATION_TOTAL,
            NGINX_OPERATIONS_TOTAL,
            JWKS_VERIFICATION_TOTAL,
            ERRORS_TOTAL,
        ]:
            _metrics_registry.register(metric)

    return _metrics_registry


class MetricsSink(Protocol):
    """Points at which a reconciliation pass reports what it did."""

    def record_reconcile(self, result: str, duration: float) -> None: ...

    def record_configmap_update(self, config_type: str, result: str) -> None: ...

    def record_jwks_generation(self, result: str) -> None: ...

    def record_nginx_operation(self, operation: str, result: str) -> None: ...

    def record_verification(self, result: str) -> None: ...

    def record_error(self, error_type: str) -> None: ...


class NullMetricsSink:
    """Sink that drops everything."""

    def record_reconcile(self, result: str, duration: float) -> None:
        pass

    def record_configmap_update(self, config_type: str, result: str) -> None:
        pass

    def record_jwks_generation(self, result: str) -> None:
        pass

    def record_nginx_operation(self, operation: str, result: str) -> None:
        pass

    def record_verification(self, result: str) -> None:
        pass

    def record_error(self, error_type: str) -> None:
        pass


class PrometheusMetricsSink:
    """Sink backed by the module-level Prometheus collectors."""

    def __init__(self):
        self.registry = get_metrics_registry()

    def record_reconcile(self, result: str, duration: float) -> None:
        RECONCILE_TOTAL.labels(result=result).inc()
        RECONCILE_DURATION.labels(result=result).observe(duration)

    def record_configmap_update(self, config_type: str, result: str) -> None:
        CONFIGMAP_UPDATES_TOTAL.labels(type=config_type, result=result).inc()

    def record_jwks_generation(self, result: str) -> None:
        JWKS_GENERATION_TOTAL.labels(result=result).inc()

    def record_nginx_operation(self, operation: str, result: str) -> None:
        NGINX_OPERATIONS_TOTAL.labels(operation=operation, result=result).inc()

    def record_verification(self, result: str) -> None:
        JWKS_VERIFICATION_TOTAL.labels(result=result).inc()

    def record_error(self, error_type: str) -> None:
        ERRORS_TOTAL.labels(type=error_type).inc()


class MetricsServer:
    """HTTP server exposing Prometheus metrics and liveness endpoints."""

    def __init__(self, port: int = 8081, host: str = "0.0.0.0"):
        self.port = port
        self.host = host
        self.app = Application()
        self.runner: AppRunner | None = None
        self.site: TCPSite | None = None
        self.started_at: float | None = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_get("/metrics", self._metrics_handler)
        self.app.router.add_get("/ready", self._ready_handler)
        self.app.router.add_get("/healthz", self._healthz_handler)

    async def _metrics_handler(self, request: Request) -> Response:
        """Handle /metrics endpoint for Prometheus scraping."""
        try:
            registry = get_metrics_registry()
            metrics_data = generate_latest(registry)
            # aiohttp refuses a content_type carrying a charset parameter
            response = Response(body=metrics_data)
            response.headers["Content-Type"] = CONTENT_TYPE_LATEST
            return response
        except Exception as e:
            logger.error(f"Failed to generate metrics: {e}")
            return Response(
                text=f"Error generating metrics: {type(e).__name__}. Check logs for details.",
                status=500,
            )

    async def _ready_handler(self, request: Request) -> Response:
        """Handle /ready endpoint for readiness probes."""
        if self.started_at is None:
            return json_response({"status": "not_ready"}, status=503)
        return json_response(
            {"status": "ready", "uptime": time.time() - self.started_at}
        )

    async def _healthz_handler(self, request: Request) -> Response:
        """Handle /healthz endpoint for Kubernetes compatibility."""
        return Response(text="ok")

    async def start(self) -> None:
        """Start the metrics server."""
        self.runner = AppRunner(self.app)
        await self.runner.setup()

        self.site = TCPSite(self.runner, self.host, self.port)
        await self.site.start()
        self.started_at = time.time()

        logger.info(f"Metrics server started on {self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the metrics server."""
        if self.site:
            await self.site.stop()
            self.site = None

        if self.runner:
            await self.runner.cleanup()
            self.runner = None

        self.started_at = None
        logger.info("Metrics server stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
