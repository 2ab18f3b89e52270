"""
JWKS handlers - drive reconciliation of JWKS resources.

Each JWKS object gets one kopf daemon that runs reconciliation passes in a
loop and sleeps for the delay chosen by the scheduler in between. Because only
the daemon runs passes, there is never more than one pass in flight for an
object. Create, update and resume events only wake the daemon early.

Deletion removes the nginx Deployment and Service behind kopf's finalizer.
"""

import asyncio
import logging
from typing import Any

import kopf
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from jwks_operator.constants import (
    FAILURE_BACKOFF,
    JWKS_GROUP,
    JWKS_PLURAL,
    JWKS_VERSION,
    SECRET_MISSING_REQUEUE,
)
from jwks_operator.errors import (
    OperatorError,
    SourceNotFoundError,
    TemporaryError,
    is_retryable,
)
from jwks_operator.models import JWKSTarget
from jwks_operator.services import JWKSReconciler

logger = logging.getLogger(__name__)


def get_reconciler(memo: kopf.Memo) -> JWKSReconciler:
    """Return the shared reconciler, creating one on first use."""
    reconciler = memo.get("reconciler")
    if reconciler is None:
        reconciler = JWKSReconciler()
        memo["reconciler"] = reconciler
    return reconciler


def _wake_event(memo: kopf.Memo) -> asyncio.Event:
    wake = memo.get("wake")
    if wake is None:
        wake = asyncio.Event()
        memo["wake"] = wake
    return wake


async def run_pass(
    reconciler: JWKSReconciler,
    name: str,
    namespace: str,
    previous_counter: int | None = None,
) -> tuple[float, int | None]:
    """
    Run one reconciliation pass against a fresh read of the resource.

    Returns:
        Delay before the next pass and the scheduling counter this pass saw
    """
    try:
        body = await reconciler.store.get_target(namespace, name)
    except ApiException as e:
        logger.warning(f"Failed to read JWKS {namespace}/{name}: {e.status} {e.reason}")
        return FAILURE_BACKOFF, previous_counter
    if body is None or (body.get("metadata") or {}).get("deletionTimestamp"):
        logger.debug(f"JWKS {namespace}/{name} is gone or being deleted")
        return FAILURE_BACKOFF, previous_counter

    try:
        target = JWKSTarget.from_body(body)
    except ValidationError as e:
        logger.error(f"JWKS {namespace}/{name} has an invalid spec: {e}")
        await reconciler.report_invalid_spec(body, str(e))
        return FAILURE_BACKOFF, previous_counter

    observed_counter = target.status.verification_cycle
    try:
        result = await reconciler.reconcile(target, previous_counter=previous_counter)
    except SourceNotFoundError:
        return SECRET_MISSING_REQUEUE, observed_counter
    except OperatorError as e:
        if is_retryable(e):
            logger.debug(
                f"Pass for JWKS {namespace}/{name} failed, "
                f"retrying in {FAILURE_BACKOFF}s"
            )
        else:
            logger.warning(
                f"Pass for JWKS {namespace}/{name} failed and needs attention, "
                f"retrying in {FAILURE_BACKOFF}s: {e}"
            )
        return FAILURE_BACKOFF, observed_counter
    return result.delay, observed_counter


async def wait_for_next_pass(
    delay: float, wake: asyncio.Event, stopped: kopf.DaemonStopped
) -> None:
    """Sleep for ``delay`` unless woken up or stopped first."""
    waiters = {
        asyncio.ensure_future(wake.wait()),
        asyncio.ensure_future(stopped.wait()),
    }
    try:
        await asyncio.wait(waiters, timeout=delay, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()


@kopf.daemon(
    JWKS_PLURAL,
    group=JWKS_GROUP,
    version=JWKS_VERSION,
    cancellation_timeout=10.0,
)
async def jwks_daemon(
    name: str,
    namespace: str,
    memo: kopf.Memo,
    stopped: kopf.DaemonStopped,
    **kwargs: Any,
) -> None:
    """Reconciliation loop of one JWKS resource."""
    reconciler = get_reconciler(memo)
    wake = _wake_event(memo)
    previous_counter: int | None = None

    logger.info(f"Starting reconciliation loop for JWKS {namespace}/{name}")
    while not stopped:
        wake.clear()
        delay, previous_counter = await run_pass(
            reconciler, name, namespace, previous_counter
        )
        await wait_for_next_pass(delay, wake, stopped)
    logger.info(f"Stopped reconciliation loop for JWKS {namespace}/{name}")


@kopf.on.create(JWKS_PLURAL, group=JWKS_GROUP, version=JWKS_VERSION)
@kopf.on.update(JWKS_PLURAL, group=JWKS_GROUP, version=JWKS_VERSION)
@kopf.on.resume(JWKS_PLURAL, group=JWKS_GROUP, version=JWKS_VERSION)
async def wake_jwks_daemon(
    name: str, namespace: str, memo: kopf.Memo, **kwargs: Any
) -> None:
    """Start a pass right away instead of waiting for the scheduled delay."""
    logger.debug(f"Change detected on JWKS {namespace}/{name}, waking daemon")
    _wake_event(memo).set()


@kopf.on.delete(JWKS_PLURAL, group=JWKS_GROUP, version=JWKS_VERSION)
async def delete_jwks(
    spec: dict[str, Any],
    name: str,
    namespace: str,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    """
    Handle JWKS deletion.

    Removes the nginx Service and Deployment. The ConfigMaps are kept for
    reuse unless CLEANUP_ON_DELETE is set.
    """
    logger.info(f"Starting deletion of JWKS {name} in namespace {namespace}")
    try:
        await get_reconciler(memo).cleanup(name, namespace, dict(spec or {}))
    except Exception as e:
        logger.error(f"Error during JWKS deletion: {e}")
        raise TemporaryError(
            f"Failed to clean up JWKS {name}: {e}", delay=30
        ).as_kopf_error() from e
    logger.info(f"Successfully deleted JWKS {namespace}/{name}")
