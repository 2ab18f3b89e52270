#!/usr/bin/env python3
"""
JWKS Operator - Main entry point for the Kopf-based JWKS operator.

This operator publishes the public key of a TLS certificate secret as a
JSON Web Key Set and keeps it served and verified:
- Deterministic key IDs and rolling key rotation
- An nginx Deployment and Service serving ``/jwks.json`` in-cluster
- Continuous end-to-end verification of the served key set

Usage:
    python -m jwks_operator.operator
    # Or with kopf directly:
    kopf run -m jwks_operator.operator --verbose --all-namespaces

Environment Variables:
    JWKS_OPERATOR_NAMESPACES: Comma-separated list of namespaces to watch
    LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
    RECONCILE_INTERVAL, JWKS_UPDATE_INTERVAL, JWKS_VERIFICATION_INTERVAL:
        Default scheduling intervals
"""

import asyncio
import logging
import random
import sys

import kopf
from kubernetes import client

from jwks_operator.constants import JWKS_FINALIZER, JWKS_GROUP, JWKS_PLURAL

# Import all handler modules to register them with kopf
from jwks_operator.handlers import jwks  # noqa: F401
from jwks_operator.observability.logging import setup_structured_logging
from jwks_operator.observability.metrics import MetricsServer, PrometheusMetricsSink
from jwks_operator.services import JWKSReconciler
from jwks_operator.settings import settings as operator_settings
from jwks_operator.utils.kubernetes import ResourceStore, get_kubernetes_client

# Global reference to metrics server for cleanup
_global_metrics_server: MetricsServer | None = None


def configure_logging() -> None:
    """Configure structured logging for the operator based on operator_settings."""
    setup_structured_logging(
        log_level=operator_settings.log_level,
        enable_json_formatting=operator_settings.json_logs,
        correlation_id_enabled=operator_settings.correlation_ids,
        log_health_probes=operator_settings.log_health_probes,
    )


def get_watched_namespaces() -> list[str] | None:
    """
    Get the list of namespaces to watch from operator_settings.

    Returns:
        List of namespace names, or None to watch all namespaces
    """
    return operator_settings.watched_namespaces


@kopf.on.startup()
async def startup_handler(
    settings: kopf.OperatorSettings, memo: kopf.Memo, **_
) -> None:
    """
    Operator startup configuration.

    This handler runs once when the operator starts up and configures:
    - Finalizer, peering and worker limits
    - Kubernetes client configuration
    - The shared JWKS reconciler
    - Metrics and health check endpoints
    """
    logging.info("Starting JWKS Operator...")
    settings.persistence.finalizer = JWKS_FINALIZER
    settings.watching.reconnect_backoff = 1.0

    # Each pod gets a unique priority to enable leader election
    settings.peering.name = operator_settings.operator_name
    settings.peering.priority = random.randint(0, 32767)
    logging.info(
        f"Peering priority set to {settings.peering.priority} for leader election"
    )

    settings.execution.max_workers = 20

    watched_namespaces = get_watched_namespaces()
    if watched_namespaces:
        logging.info(f"Watching namespaces: {', '.join(watched_namespaces)}")
    else:
        logging.info("Watching all namespaces (cluster-wide mode)")

    # Raises when neither in-cluster nor kubeconfig configuration is available
    api_client = get_kubernetes_client()

    memo.reconciler = JWKSReconciler(
        store=ResourceStore(api_client),
        metrics=PrometheusMetricsSink(),
    )
    logging.info(
        "JWKS reconciler initialized: "
        f"reconcile={operator_settings.reconcile_interval}s, "
        f"update={operator_settings.jwks_update_interval}s, "
        f"verification={operator_settings.jwks_verification_interval}s"
    )

    # Start metrics server for Prometheus scraping and health checks
    try:
        metrics_server = MetricsServer(
            port=operator_settings.metrics_port, host=operator_settings.metrics_host
        )
        await metrics_server.start()
        logging.info(
            "Metrics and health endpoints available on "
            f"{operator_settings.metrics_host}:{operator_settings.metrics_port}"
        )

        # OperatorSettings doesn't support custom attributes
        global _global_metrics_server
        _global_metrics_server = metrics_server

    except OSError as e:
        logging.error(f"Failed to start metrics server: {e}")
        # Don't fail operator startup if metrics server fails
        logging.warning("Continuing without metrics server")


@kopf.on.cleanup()
async def cleanup_handler(settings: kopf.OperatorSettings, **_) -> None:
    """
    Operator cleanup handler.

    Stops the metrics server when the operator shuts down.
    """
    logging.info("Shutting down JWKS Operator...")

    global _global_metrics_server
    if _global_metrics_server:
        try:
            await _global_metrics_server.stop()
            logging.info("Metrics server stopped")
        except Exception as e:
            logging.error(f"Error stopping metrics server: {e}")
        _global_metrics_server = None


async def _check_kubernetes_api() -> bool:
    try:
        await asyncio.to_thread(client.VersionApi().get_code)
    except Exception as e:
        logging.warning(f"Kubernetes API check failed: {e}")
        return False
    return True


async def _check_crd_installed() -> bool:
    try:
        await asyncio.to_thread(
            client.ApiextensionsV1Api().read_custom_resource_definition,
            f"{JWKS_PLURAL}.{JWKS_GROUP}",
        )
    except Exception as e:
        logging.warning(f"JWKS CRD check failed: {e}")
        return False
    return True


@kopf.on.probe(id="healthz")
async def health_check(**_) -> dict[str, str]:
    """
    Health check probe for Kubernetes liveness checks.

    Returns:
        Dictionary indicating operator health status
    """
    healthy = await _check_kubernetes_api()
    return {
        "status": "healthy" if healthy else "unhealthy",
        "operator": operator_settings.operator_name,
    }


@kopf.on.probe(id="ready")
async def readiness_check(**_) -> dict[str, str]:
    """
    Readiness check probe - indicates if operator is ready to handle requests.

    Returns:
        Dictionary indicating operator readiness
    """
    if await _check_kubernetes_api() and await _check_crd_installed():
        return {"status": "ready", "operator": operator_settings.operator_name}
    return {"status": "not_ready", "operator": operator_settings.operator_name}


def main() -> None:
    """
    Main entry point for the operator.

    This function:
    1. Configures logging
    2. Determines namespace scope
    3. Runs the kopf operator with appropriate settings
    """
    configure_logging()

    watched_namespaces = get_watched_namespaces()
    settings_obj = kopf.OperatorSettings()

    try:
        # Peering, finalizer and worker settings are applied in the startup handler
        if watched_namespaces:
            kopf.run(
                namespaces=watched_namespaces,
                liveness_endpoint="http://0.0.0.0:8080/healthz",
                settings=settings_obj,
            )
        else:
            kopf.run(
                clusterwide=True,
                liveness_endpoint="http://0.0.0.0:8080/healthz",
                settings=settings_obj,
            )
    except KeyboardInterrupt:
        logging.info("Received shutdown signal")
        sys.exit(0)
    except Exception as e:
        logging.error(f"Operator failed with error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
