"""
Base reconciler class providing common patterns for resource reconciliation.

This module defines the BaseReconciler class that implements standard
patterns for status conditions, error classification, logging and metrics
around a single reconciliation pass.
"""

import time
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

from kubernetes.client.rest import ApiException

from ..constants import CONDITION_FALSE, CONDITION_READY, CONDITION_TRUE
from ..errors import JWKSError, KubernetesAPIError, OperatorError, TemporaryError
from ..models import JWKSTarget
from ..observability.logging import OperatorLogger
from ..observability.metrics import (
    RESULT_ERROR,
    RESULT_SUCCESS,
    MetricsSink,
    NullMetricsSink,
)
from ..utils.durations import format_timestamp
from ..utils.kubernetes import ResourceStore


class BaseReconciler(ABC):
    """
    Base class for resource reconcilers.

    Provides common patterns for:
    - Status conditions with observedGeneration tracking
    - Error classification into the operator error hierarchy
    - Correlated logging and metrics for each pass
    """

    resource_type = "resource"

    def __init__(
        self,
        store: ResourceStore | None = None,
        metrics: MetricsSink | None = None,
    ):
        """
        Initialize base reconciler.

        Args:
            store: Access to the cluster, created lazily if not provided
            metrics: Sink for operational metrics, defaults to a no-op sink
        """
        self.store = store or ResourceStore()
        self.metrics = metrics or NullMetricsSink()
        self.logger = OperatorLogger(self.__class__.__name__)

    async def reconcile(self, target: JWKSTarget, **kwargs) -> Any:
        """
        Main reconciliation entry point with logging and metrics tracking.

        Failures are re-raised as ``OperatorError`` so that the caller can
        choose its retry delay.
        """
        start_time = time.time()
        self.logger.log_reconciliation_start(
            resource_type=self.resource_type,
            resource_name=target.name,
            namespace=target.namespace,
        )

        try:
            result = await self.do_reconcile(target, **kwargs)
        except OperatorError as e:
            self._record_failure(target, e, start_time)
            raise
        except ApiException as e:
            http_status = getattr(e, "status", None)
            error = KubernetesAPIError(
                message=str(e),
                reason=getattr(e, "reason", None),
                retryable=http_status is not None
                and (http_status >= 500 or http_status == 409),
                status=http_status,
            )
            self._record_failure(target, error, start_time)
            raise error from e
        except Exception as e:
            # Wrap unexpected errors as temporary to allow retry
            error = TemporaryError(
                f"Unexpected error during reconciliation: {str(e)}"
            )
            self._record_failure(target, error, start_time)
            raise error from e

        duration = time.time() - start_time
        self.metrics.record_reconcile(RESULT_SUCCESS, duration)
        self.logger.log_reconciliation_success(
            resource_type=self.resource_type,
            resource_name=target.name,
            namespace=target.namespace,
            duration=duration,
        )
        return result

    def _record_failure(
        self, target: JWKSTarget, error: OperatorError, start_time: float
    ) -> None:
        duration = time.time() - start_time
        self.metrics.record_reconcile(RESULT_ERROR, duration)
        error_type = (
            error.error_type
            if isinstance(error, JWKSError)
            else type(error).__name__.lower()
        )
        self.metrics.record_error(error_type)
        self.logger.log_reconciliation_error(
            resource_type=self.resource_type,
            resource_name=target.name,
            namespace=target.namespace,
            error=error,
            duration=duration,
        )

    @abstractmethod
    async def do_reconcile(self, target: JWKSTarget, **kwargs) -> Any:
        """
        Perform the actual reconciliation logic.

        This method must be implemented by subclasses to provide
        resource-specific reconciliation logic.
        """
        raise NotImplementedError("Subclasses must implement do_reconcile method")

    @staticmethod
    def _add_condition(
        conditions: list[dict[str, Any]],
        condition_type: str,
        condition_status: str,
        reason: str,
        message: str,
        generation: int = 0,
    ) -> list[dict[str, Any]]:
        """Return ``conditions`` with one condition added or replaced."""
        previous = next(
            (
                c
                for c in conditions
                if isinstance(c, dict) and c.get("type") == condition_type
            ),
            None,
        )
        # Transition time only moves when the status value flips
        if previous is not None and previous.get("status") == condition_status:
            transition_time = previous.get("lastTransitionTime")
        else:
            transition_time = None

        filtered = [
            c
            for c in conditions
            if isinstance(c, dict) and c.get("type") != condition_type
        ]
        filtered.append(
            {
                "type": condition_type,
                "status": condition_status,
                "reason": reason,
                "message": message,
                "lastTransitionTime": transition_time
                or format_timestamp(datetime.now(UTC)),
                "observedGeneration": generation,
            }
        )
        return filtered

    def ready_conditions(
        self,
        target: JWKSTarget,
        ready: bool,
        reason: str,
        message: str,
    ) -> list[dict[str, Any]]:
        """Conditions of ``target`` with its Ready condition updated."""
        return self._add_condition(
            list(target.status.conditions),
            CONDITION_READY,
            CONDITION_TRUE if ready else CONDITION_FALSE,
            reason,
            message,
            target.generation,
        )

    async def patch_status(
        self, target: JWKSTarget, status: dict[str, Any], best_effort: bool = False
    ) -> None:
        """
        Merge-patch the status subresource.

        With ``best_effort`` a failed write is logged instead of raised, for
        use while another failure is already being reported.
        """
        try:
            await self.store.patch_target_status(target.namespace, target.name, status)
        except ApiException as e:
            if not best_effort:
                raise
            self.logger.warning(
                f"Failed to update status of {target.namespace}/{target.name}: "
                f"{e.status} {e.reason}"
            )
