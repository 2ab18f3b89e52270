"""
JWKS reconciler - orchestrates one reconciliation pass of a JWKS resource.

A full pass runs its phases strictly in order:

1. read the certificate secret
2. generate the key set from ``tls.crt``
3. merge and store the key set ConfigMap
4. write the nginx configuration ConfigMap (serving enabled only)
5. converge the nginx Deployment
6. converge the nginx Service
7. verify the served key set against ``tls.key``

A failure in phases 1 to 6 marks the resource not ready and aborts the pass.
Verification failures are only reflected in status.
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx
from kubernetes import client
from kubernetes.client.rest import ApiException

from ..constants import (
    CONDITION_FALSE,
    CONDITION_READY,
    COUNTER_UPDATE_TIMEOUT,
    ERROR_MISSING_SECRET,
    REASON_INVALID_CONFIGURATION,
    REASON_RECONCILED,
    REASON_VERIFICATION_FAILED,
    REASON_VERIFIED,
    SUCCESS_RECONCILIATION,
    SUCCESS_VERIFICATION,
)
from ..errors import (
    GenerationFailedError,
    InvalidConfigurationError,
    JWKSError,
    KeySetUpdateFailedError,
    MalformedInputError,
    ServingConfigUpdateFailedError,
    ServingEndpointFailedError,
    ServingWorkloadFailedError,
    SourceNotFoundError,
    VerificationFailedError,
)
from ..models import JSONWebKeySet, JWKSTarget
from ..observability.metrics import RESULT_ERROR, RESULT_SUCCESS, MetricsSink
from ..settings import Settings
from ..settings import settings as default_settings
from ..utils.durations import format_timestamp
from ..utils.kubernetes import ResourceStore, is_conflict, is_not_found
from .base_reconciler import BaseReconciler
from .configmap_manager import ConfigMapManager
from .jwks_generator import generate_from_secret
from .nginx_config import NginxConfigGenerator
from .nginx_manager import NginxManager, NginxSettings
from .rotation import UpdateStrategy, prune_old_keys, should_update
from .scheduler import Action, Intervals, ReconciliationScheduler, ScheduleDecision
from .verifier import JWKSVerifier, VerificationResult, VerificationSettings

RESULT_SKIPPED = "skipped"


@dataclass
class PassResult:
    """Outcome of one reconciliation pass."""

    action: Action
    delay: float
    decision: ScheduleDecision
    verification: VerificationResult | None = None
    verification_error: str | None = None


class JWKSReconciler(BaseReconciler):
    """
    Reconciler for JWKS resources.

    Owns the scheduler, the ConfigMap and nginx managers and the verifier.
    One instance can serve every JWKS resource; all per-resource state lives
    in the resource itself.
    """

    resource_type = "jwks"

    def __init__(
        self,
        store: ResourceStore | None = None,
        metrics: MetricsSink | None = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(store=store, metrics=metrics)
        self.settings = settings or default_settings
        cfg = self.settings

        self.scheduler = ReconciliationScheduler(
            Intervals(
                reconcile=cfg.reconcile_interval,
                update=cfg.jwks_update_interval,
                verification=cfg.jwks_verification_interval,
            )
        )
        self.configmaps = ConfigMapManager(self.store)
        self.nginx_config = NginxConfigGenerator(cache_max_age=cfg.nginx_cache_max_age)
        self.nginx = NginxManager(
            self.store,
            NginxSettings(
                image=cfg.nginx_image,
                replicas=cfg.nginx_replicas,
                request_cpu=cfg.nginx_request_cpu,
                request_memory=cfg.nginx_request_memory,
                limit_cpu=cfg.nginx_limit_cpu,
                limit_memory=cfg.nginx_limit_memory,
            ),
        )
        self.verifier = JWKSVerifier(
            self.store,
            VerificationSettings(
                timeout=cfg.verification_timeout,
                retry_count=cfg.verification_retry_count,
                retry_delay=cfg.verification_retry_delay,
                context_timeout=cfg.verification_context_timeout,
                cluster_domain=cfg.cluster_domain,
            ),
            transport=transport,
        )
        self._background_tasks: set[asyncio.Task] = set()

    # Pass entry point

    async def do_reconcile(
        self, target: JWKSTarget, previous_counter: int | None = None, **kwargs
    ) -> PassResult:
        artifacts_missing = await self.artifacts_missing(target)
        decision = self.scheduler.decide(
            target,
            artifacts_missing=artifacts_missing,
            previous_counter=previous_counter,
        )
        self.logger.debug(
            f"Scheduling decision for {target.namespace}/{target.name}: "
            f"{decision.action.value}, next pass in {decision.delay}s",
            action=decision.action.value,
            delay=decision.delay,
        )
        if decision.restart_detected:
            self.logger.info(
                f"Last verification of {target.namespace}/{target.name} is stale, "
                "re-entering fast verification cadence"
            )

        result = PassResult(
            action=decision.action, delay=decision.delay, decision=decision
        )
        try:
            if decision.action is Action.FULL_PASS:
                await self.full_pass(target, result)
            elif decision.action is Action.VERIFY_ONLY:
                await self.verify_only(target, result)
        finally:
            if decision.next_counter != target.status.verification_cycle:
                self.schedule_counter_update(target, decision.next_counter)

        return result

    async def artifacts_missing(self, target: JWKSTarget) -> bool:
        spec = target.spec
        ns = target.namespace
        if not await self.configmaps.exists(ns, spec.config_map_name):
            return True
        if not spec.serving_enabled:
            return False
        if not await self.configmaps.exists(ns, spec.nginx_config_map_name):
            return True
        return await self.store.get_deployment(ns, target.name) is None

    async def report_invalid_spec(self, body: dict[str, Any], message: str) -> None:
        """Mark a resource whose spec cannot be parsed as not ready."""
        metadata = body.get("metadata") or {}
        status = body.get("status") or {}
        conditions = self._add_condition(
            list(status.get("conditions") or []),
            CONDITION_READY,
            CONDITION_FALSE,
            REASON_INVALID_CONFIGURATION,
            message,
            int(metadata.get("generation") or 0),
        )
        try:
            await self.store.patch_target_status(
                metadata["namespace"], metadata["name"], {"conditions": conditions}
            )
        except ApiException as e:
            self.logger.warning(
                f"Failed to report invalid spec of "
                f"{metadata['namespace']}/{metadata['name']}: {e.status} {e.reason}"
            )

    # Full pass

    async def full_pass(self, target: JWKSTarget, result: PassResult) -> None:
        spec = target.spec
        ns = target.namespace
        now = datetime.now(UTC)
        status: dict[str, Any] = {}

        try:
            secret = await self._get_secret(target)
            new_set = self._generate(secret)
            stored = await self._store_key_set(target, new_set)

            if spec.serving_enabled:
                if await self._write_nginx_config(target):
                    status["nginxConfigUpdated"] = format_timestamp(now)
                await self._ensure_deployment(target)
                await self._ensure_service(target)
        except JWKSError as e:
            await self._report_failure(target, e)
            raise

        kid = new_set.keys[0].kid
        status.update(
            {
                "lastUpdateTime": format_timestamp(now),
                "lastKeyID": kid,
                "keyCount": len(stored.keys),
            }
        )

        await self._verify(target, secret, result)
        if result.verification is VerificationResult.VERIFIED:
            status["jwksVerified"] = format_timestamp(datetime.now(UTC))

        if result.verification_error is not None:
            status["conditions"] = self.ready_conditions(
                target, False, REASON_VERIFICATION_FAILED, result.verification_error
            )
        else:
            status["conditions"] = self.ready_conditions(
                target, True, REASON_RECONCILED, SUCCESS_RECONCILIATION
            )
        await self.patch_status(target, status)
        self.logger.info(
            f"JWKS {ns}/{target.name} reconciled with {len(stored.keys)} key(s)",
            kid=kid,
            key_count=len(stored.keys),
        )

    async def _get_secret(self, target: JWKSTarget) -> client.V1Secret:
        name = target.spec.certificate_secret
        secret = await self.store.get_secret(target.namespace, name)
        if secret is None:
            raise SourceNotFoundError(
                ERROR_MISSING_SECRET.format(name, target.namespace),
                user_action="Create the certificate secret or wait for cert-manager",
            )
        return secret

    def _generate(self, secret: client.V1Secret) -> JSONWebKeySet:
        try:
            key_set = generate_from_secret(secret)
        except GenerationFailedError:
            self.metrics.record_jwks_generation(RESULT_ERROR)
            raise
        except JWKSError as e:
            self.metrics.record_jwks_generation(RESULT_ERROR)
            raise GenerationFailedError(
                f"Failed to generate JWKS: {e}", cause=e
            ) from e
        self.metrics.record_jwks_generation(RESULT_SUCCESS)
        return key_set

    def _strategy_for(self, target: JWKSTarget) -> UpdateStrategy:
        spec = target.spec
        keep_old_keys = spec.keep_old_keys
        if keep_old_keys is None:
            keep_old_keys = self.settings.default_keep_old_keys
        return UpdateStrategy(
            spec.update_strategy or self.settings.default_update_strategy,
            keep_old_keys,
        )

    async def _read_current_key_set(self, target: JWKSTarget) -> JSONWebKeySet | None:
        try:
            return await self.configmaps.get_key_set(
                target.namespace, target.spec.config_map_name
            )
        except MalformedInputError as e:
            self.logger.warning(
                f"Stored key set of {target.namespace}/{target.name} is unreadable "
                f"and will be replaced: {e}"
            )
            return None

    async def _store_key_set(
        self, target: JWKSTarget, new_set: JSONWebKeySet
    ) -> JSONWebKeySet:
        spec = target.spec
        strategy = self._strategy_for(target)
        try:
            current = await self._read_current_key_set(target)

            async def read_current() -> JSONWebKeySet | None:
                return current

            stored = await strategy.apply(new_set, read_current)
            stored = prune_old_keys(
                stored, self.settings.max_old_keys, self.settings.old_keys_ttl
            )
            if should_update(current, new_set):
                self.logger.info(
                    f"Publishing new key {new_set.keys[0].kid} for "
                    f"{target.namespace}/{target.name} ({strategy.name} strategy)",
                    kid=new_set.keys[0].kid,
                )
            await self.configmaps.update_key_set(
                target.namespace, spec.config_map_name, stored, owner=target.name
            )
        except InvalidConfigurationError:
            self.metrics.record_configmap_update("jwks", RESULT_ERROR)
            raise
        except ApiException as e:
            self.metrics.record_configmap_update("jwks", RESULT_ERROR)
            raise KeySetUpdateFailedError(
                f"Failed to update JWKS ConfigMap {spec.config_map_name}: "
                f"{e.status} {e.reason}",
                cause=e,
            ) from e
        self.metrics.record_configmap_update("jwks", RESULT_SUCCESS)
        return stored

    async def _write_nginx_config(self, target: JWKSTarget) -> bool:
        spec = target.spec
        try:
            content = self.nginx_config.generate(spec.config_map_name, spec.endpoint)
            changed = await self.configmaps.ensure_nginx_config(
                target.namespace,
                spec.nginx_config_map_name,
                content,
                owner=target.name,
            )
        except (JWKSError, ApiException) as e:
            self.metrics.record_configmap_update("nginx", RESULT_ERROR)
            raise ServingConfigUpdateFailedError(
                f"Failed to update nginx ConfigMap {spec.nginx_config_map_name}: {e}",
                cause=e,
            ) from e
        self.metrics.record_configmap_update("nginx", RESULT_SUCCESS)
        return changed

    async def _ensure_deployment(self, target: JWKSTarget) -> None:
        spec = target.spec
        try:
            await self.nginx.ensure_deployment(
                target.name,
                target.namespace,
                spec.nginx_config_map_name,
                spec.config_map_name,
            )
        except (JWKSError, ApiException) as e:
            self.metrics.record_nginx_operation("deployment", RESULT_ERROR)
            raise ServingWorkloadFailedError(
                f"Failed to ensure nginx deployment {target.name}: {e}", cause=e
            ) from e
        self.metrics.record_nginx_operation("deployment", RESULT_SUCCESS)

    async def _ensure_service(self, target: JWKSTarget) -> None:
        try:
            await self.nginx.ensure_service(target.name, target.namespace)
        except ApiException as e:
            self.metrics.record_nginx_operation("service", RESULT_ERROR)
            raise ServingEndpointFailedError(
                f"Failed to ensure nginx service {target.name}: {e.status} {e.reason}",
                cause=e,
            ) from e
        self.metrics.record_nginx_operation("service", RESULT_SUCCESS)

    async def _report_failure(self, target: JWKSTarget, error: JWKSError) -> None:
        status = {
            "conditions": self.ready_conditions(
                target, False, error.reason, str(error).split("\n")[0]
            )
        }
        await self.patch_status(target, status, best_effort=True)

    # Verification

    async def _verify(
        self, target: JWKSTarget, secret: client.V1Secret, result: PassResult
    ) -> None:
        try:
            outcome = await self.verifier.verify(
                target.name,
                target.namespace,
                secret,
                serving_enabled=target.spec.serving_enabled,
            )
        except VerificationFailedError as e:
            self.metrics.record_verification(RESULT_ERROR)
            self.metrics.record_error(e.error_type)
            self.logger.warning(
                f"JWKS verification failed for {target.namespace}/{target.name}: {e}"
            )
            result.verification_error = f"JWKS verification failed: {e}"
            return

        self.metrics.record_verification(
            RESULT_SUCCESS if outcome is VerificationResult.VERIFIED else RESULT_SKIPPED
        )
        result.verification = outcome

    async def verify_only(self, target: JWKSTarget, result: PassResult) -> None:
        """Re-verify the served key set without regenerating anything."""
        if not target.spec.serving_enabled:
            result.verification = VerificationResult.SKIPPED
            return

        secret = await self.store.get_secret(
            target.namespace, target.spec.certificate_secret
        )
        if secret is None:
            self.logger.warning(
                f"Skipping verification of {target.namespace}/{target.name}: "
                + ERROR_MISSING_SECRET.format(
                    target.spec.certificate_secret, target.namespace
                )
            )
            return

        try:
            await self.nginx.ensure_service(target.name, target.namespace)
        except ApiException as e:
            self.logger.warning(
                f"Failed to ensure nginx service {target.namespace}/{target.name} "
                f"before verification: {e.status} {e.reason}"
            )

        await self._verify(target, secret, result)
        if result.verification_error is not None:
            status = {
                "conditions": self.ready_conditions(
                    target, False, REASON_VERIFICATION_FAILED, result.verification_error
                )
            }
        elif result.verification is VerificationResult.VERIFIED:
            status = {
                "jwksVerified": format_timestamp(datetime.now(UTC)),
                "conditions": self.ready_conditions(
                    target, True, REASON_VERIFIED, SUCCESS_VERIFICATION
                ),
            }
        else:
            return
        await self.patch_status(target, status)

    # Scheduling counter

    def schedule_counter_update(self, target: JWKSTarget, value: int) -> asyncio.Task:
        """
        Persist the scheduling counter in the background.

        The write never blocks the pass and its outcome only affects the
        cadence of later passes, so failures are logged and dropped.
        """
        task = asyncio.create_task(
            self._update_counter(target.namespace, target.name, value)
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _update_counter(self, namespace: str, name: str, value: int) -> None:
        try:
            await asyncio.wait_for(
                self._write_counter(namespace, name, value),
                timeout=COUNTER_UPDATE_TIMEOUT,
            )
        except ApiException as e:
            if is_conflict(e):
                self.logger.debug(
                    f"JWKS {namespace}/{name} changed concurrently, "
                    "verification counter update dropped"
                )
            else:
                self.logger.debug(
                    f"Dropped verification counter update for {namespace}/{name}: "
                    f"{e.status} {e.reason}"
                )
        except Exception as e:
            self.logger.debug(
                f"Dropped verification counter update for {namespace}/{name}: {e}"
            )

    async def _write_counter(self, namespace: str, name: str, value: int) -> None:
        body = await self.store.get_target(namespace, name)
        if body is None:
            return
        status = dict(body.get("status") or {})
        if status.get("verificationCycle") == value:
            return
        status["verificationCycle"] = value
        body["status"] = status
        # metadata.resourceVersion turns a concurrent change into a 409
        await self.store.replace_target_status(namespace, name, body)

    # Deletion

    async def cleanup(self, name: str, namespace: str, spec: dict[str, Any]) -> None:
        """
        Remove the serving workload of a deleted JWKS resource.

        The key set and nginx ConfigMaps are kept unless cleanup on delete
        is enabled.
        """
        await self._delete_quietly("service", self.nginx.delete_service, name, namespace)
        await self._delete_quietly(
            "deployment", self.nginx.delete_deployment, name, namespace
        )

        if not self.settings.cleanup_on_delete:
            self.logger.info(
                f"Keeping ConfigMaps of deleted JWKS {namespace}/{name}"
            )
            return

        for config_map in (spec.get("configMapName"), spec.get("nginxConfigMapName")):
            if config_map:
                await self._delete_quietly(
                    "configmap",
                    lambda cm, ns: self.configmaps.delete(ns, cm),
                    config_map,
                    namespace,
                )

    async def _delete_quietly(self, kind: str, delete, name: str, namespace: str) -> None:
        try:
            await delete(name, namespace)
        except ApiException as e:
            if is_not_found(e):
                return
            self.logger.warning(
                f"Failed to delete {kind} {namespace}/{name}: {e.status} {e.reason}"
            )
