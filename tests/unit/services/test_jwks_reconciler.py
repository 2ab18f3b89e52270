"""
Unit tests for the JWKS reconciler.

Passes run end to end against the in-memory store: the certificate secret,
ConfigMaps, nginx workload and served key set all live in
``FakeResourceStore`` and the nginx Service is answered by an httpx mock
transport.
"""

import asyncio
import base64

import httpx
import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from jwks_operator.errors import (
    KubernetesAPIError,
    ServingEndpointFailedError,
    ServingWorkloadFailedError,
    SourceNotFoundError,
)
from jwks_operator.models import JWKSTarget
from jwks_operator.services.jwks_generator import generate_key_set
from jwks_operator.services.jwks_reconciler import JWKSReconciler
from jwks_operator.services.scheduler import Action
from jwks_operator.services.verifier import VerificationResult
from jwks_operator.settings import Settings
from tests.helpers import (
    JWKS_CONFIG_MAP,
    NAME,
    NAMESPACE,
    NGINX_CONFIG_MAP,
    build_secret,
    build_target_body,
    certificate_pem,
    private_key_pem,
    ready_pod,
)

SERVING_DISABLED = {"nginxConfigMapName": ""}


def make_settings(**overrides) -> Settings:
    values = {"VERIFICATION_RETRY_COUNT": 1, "VERIFICATION_RETRY_DELAY": "1ms"}
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def reconciler(store, serving_transport):
    return JWKSReconciler(
        store=store, settings=make_settings(), transport=serving_transport
    )


@pytest.fixture
def cluster(store, tls_secret):
    """A JWKS resource, its certificate secret and a ready nginx pod."""
    store.add_target(build_target_body())
    store.add_secret(tls_secret)
    store.pods.append(ready_pod(NAME))
    return store


def current_target(store) -> JWKSTarget:
    return JWKSTarget.from_body(store.targets[(NAMESPACE, NAME)])


async def run_pass(reconciler, store, previous_counter=None):
    """Run one pass and wait for its background counter write."""
    try:
        return await reconciler.reconcile(
            current_target(store), previous_counter=previous_counter
        )
    finally:
        tasks = list(reconciler._background_tasks)
        await asyncio.gather(*tasks)


def ready_condition(store) -> dict:
    return next(c for c in store.status_of()["conditions"] if c["type"] == "Ready")


def rotate_certificate(store, certificate, key) -> None:
    store.add_secret(build_secret(certificate_pem(certificate), private_key_pem(key)))


def bump_generation(store) -> None:
    store.targets[(NAMESPACE, NAME)]["metadata"]["generation"] += 1


class TestFullPass:
    @pytest.mark.asyncio
    async def test_fresh_resource(self, reconciler, cluster, rsa_certificate):
        result = await run_pass(reconciler, cluster)

        assert result.action is Action.FULL_PASS
        assert result.verification is VerificationResult.VERIFIED
        assert result.delay == 10.0

        expected_kid = generate_key_set(rsa_certificate).keys[0].kid
        document = cluster.served_document()
        assert [k["kid"] for k in document["keys"]] == [expected_kid]

        status = cluster.status_of()
        assert status["keyCount"] == 1
        assert status["lastKeyID"] == expected_kid
        assert "lastUpdateTime" in status
        assert "jwksVerified" in status
        assert "nginxConfigUpdated" in status
        assert status["verificationCycle"] == 1

        ready = ready_condition(cluster)
        assert ready["status"] == "True"
        assert ready["reason"] == "Reconciled"
        assert ready["observedGeneration"] == 1

        assert (NAMESPACE, NGINX_CONFIG_MAP) in cluster.config_maps
        assert (NAMESPACE, NAME) in cluster.deployments
        assert (NAMESPACE, NAME) in cluster.services

    @pytest.mark.asyncio
    async def test_second_pass_follows_fast_cadence(self, reconciler, cluster):
        await run_pass(reconciler, cluster)
        result = await run_pass(reconciler, cluster, previous_counter=None)

        assert result.action is Action.SKIP
        assert result.delay == 30.0
        assert cluster.status_of()["verificationCycle"] == 2

    @pytest.mark.asyncio
    async def test_missing_secret(self, reconciler, store):
        store.add_target(build_target_body())

        with pytest.raises(SourceNotFoundError):
            await run_pass(reconciler, store)

        ready = ready_condition(store)
        assert ready["status"] == "False"
        assert ready["reason"] == "SecretNotFound"
        assert "example-tls" in ready["message"]
        assert (NAMESPACE, JWKS_CONFIG_MAP) not in store.config_maps

    @pytest.mark.asyncio
    async def test_serving_disabled_skips_nginx(self, reconciler, store, tls_secret):
        store.add_target(build_target_body(spec=SERVING_DISABLED))
        store.add_secret(tls_secret)

        result = await run_pass(reconciler, store)

        assert result.verification is VerificationResult.SKIPPED
        assert list(store.config_maps) == [(NAMESPACE, JWKS_CONFIG_MAP)]
        assert not store.deployments
        assert not store.services
        assert "jwksVerified" not in store.status_of()
        assert ready_condition(store)["status"] == "True"

    @pytest.mark.asyncio
    async def test_deployment_failure_marks_not_ready(self, reconciler, cluster):
        cluster.failures["create_deployment"] = ApiException(
            status=500, reason="Internal Server Error"
        )

        with pytest.raises(ServingWorkloadFailedError):
            await run_pass(reconciler, cluster)

        ready = ready_condition(cluster)
        assert ready["status"] == "False"
        assert ready["reason"] == "NginxDeploymentFailed"
        assert "keyCount" not in cluster.status_of()

    @pytest.mark.asyncio
    async def test_api_errors_are_wrapped(self, reconciler, cluster):
        cluster.failures["get_secret"] = ApiException(
            status=503, reason="Service Unavailable"
        )

        with pytest.raises(KubernetesAPIError) as exc_info:
            await run_pass(reconciler, cluster)
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_unreadable_stored_key_set_is_replaced(self, reconciler, cluster):
        cluster.config_maps[(NAMESPACE, JWKS_CONFIG_MAP)] = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=JWKS_CONFIG_MAP, namespace=NAMESPACE),
            binary_data={"jwks.json": base64.b64encode(b"not json").decode()},
        )

        await run_pass(reconciler, cluster)

        assert len(cluster.served_document()["keys"]) == 1
        assert cluster.status_of()["keyCount"] == 1


class TestVerificationFailure:
    @pytest.mark.asyncio
    async def test_failure_only_affects_status(self, store, cluster):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        reconciler = JWKSReconciler(
            store=store, settings=make_settings(), transport=transport
        )

        result = await run_pass(reconciler, cluster)

        assert result.verification_error is not None
        status = cluster.status_of()
        assert status["keyCount"] == 1
        assert "jwksVerified" not in status
        ready = ready_condition(cluster)
        assert ready["status"] == "False"
        assert ready["reason"] == "JWKSVerificationFailed"
        assert "500" in ready["message"]

        next_decision = reconciler.scheduler.decide(current_target(cluster))
        assert next_decision.action is Action.VERIFY_ONLY

    @pytest.mark.asyncio
    async def test_api_error_while_waiting_for_pods_skips(self, reconciler, cluster):
        cluster.failures["list_pods"] = ApiException(
            status=500, reason="Internal Server Error"
        )

        result = await run_pass(reconciler, cluster)

        assert result.action is Action.FULL_PASS
        assert result.verification is VerificationResult.SKIPPED
        assert result.verification_error is None
        status = cluster.status_of()
        assert "lastUpdateTime" in status
        assert status["keyCount"] == 1
        assert "lastKeyID" in status
        assert "jwksVerified" not in status
        ready = ready_condition(cluster)
        assert ready["status"] == "True"
        assert ready["reason"] == "Reconciled"


class TestRecovery:
    @pytest.mark.asyncio
    async def test_failed_spec_change_is_retried(self, reconciler, cluster):
        await run_pass(reconciler, cluster)
        bump_generation(cluster)
        del cluster.services[(NAMESPACE, NAME)]
        cluster.failures["create_service"] = ApiException(
            status=500, reason="Internal Server Error"
        )

        with pytest.raises(ServingEndpointFailedError):
            await run_pass(reconciler, cluster)

        ready = ready_condition(cluster)
        assert ready["status"] == "False"
        assert ready["reason"] == "NginxServiceFailed"
        assert ready["observedGeneration"] == 2
        next_decision = reconciler.scheduler.decide(current_target(cluster))
        assert next_decision.action is Action.FULL_PASS

        del cluster.failures["create_service"]
        result = await run_pass(reconciler, cluster)

        assert result.action is Action.FULL_PASS
        assert result.verification is VerificationResult.VERIFIED
        assert (NAMESPACE, NAME) in cluster.services
        ready = ready_condition(cluster)
        assert ready["status"] == "True"
        assert ready["reason"] == "Reconciled"

    @pytest.mark.asyncio
    async def test_missing_secret_is_checked_on_every_pass(
        self, reconciler, cluster, tls_secret
    ):
        await run_pass(reconciler, cluster)
        bump_generation(cluster)
        del cluster.secrets[(NAMESPACE, "example-tls")]

        for _ in range(2):
            with pytest.raises(SourceNotFoundError):
                await run_pass(reconciler, cluster)
        assert cluster.calls["get_secret"] == 3

        cluster.add_secret(tls_secret)
        result = await run_pass(reconciler, cluster)

        assert result.action is Action.FULL_PASS
        assert ready_condition(cluster)["reason"] == "Reconciled"


class TestRotation:
    @pytest.mark.asyncio
    async def test_rolling_update_keeps_old_key(
        self,
        reconciler,
        store,
        tls_secret,
        rsa_certificate,
        other_rsa_certificate,
        other_rsa_key,
    ):
        store.add_target(build_target_body(spec=SERVING_DISABLED))
        store.add_secret(tls_secret)
        await run_pass(reconciler, store)

        rotate_certificate(store, other_rsa_certificate, other_rsa_key)
        bump_generation(store)
        await run_pass(reconciler, store)

        old_kid = generate_key_set(rsa_certificate).keys[0].kid
        new_kid = generate_key_set(other_rsa_certificate).keys[0].kid
        document = store.served_document()
        assert [k["kid"] for k in document["keys"]] == [old_kid, new_kid]
        status = store.status_of()
        assert status["keyCount"] == 2
        assert status["lastKeyID"] == new_kid

    @pytest.mark.asyncio
    async def test_same_certificate_does_not_grow_the_set(
        self, reconciler, store, tls_secret
    ):
        store.add_target(build_target_body(spec=SERVING_DISABLED))
        store.add_secret(tls_secret)
        await run_pass(reconciler, store)
        bump_generation(store)
        await run_pass(reconciler, store)

        assert len(store.served_document()["keys"]) == 1
        assert store.calls["replace_config_map"] == 0

    @pytest.mark.asyncio
    async def test_immediate_update_replaces_set(
        self,
        reconciler,
        store,
        tls_secret,
        other_rsa_certificate,
        other_rsa_key,
    ):
        store.add_target(
            build_target_body(
                spec={**SERVING_DISABLED, "updateStrategy": "immediate"}
            )
        )
        store.add_secret(tls_secret)
        await run_pass(reconciler, store)

        rotate_certificate(store, other_rsa_certificate, other_rsa_key)
        bump_generation(store)
        await run_pass(reconciler, store)

        new_kid = generate_key_set(other_rsa_certificate).keys[0].kid
        assert [k["kid"] for k in store.served_document()["keys"]] == [new_kid]
        assert store.status_of()["keyCount"] == 1


class TestVerifyOnly:
    @pytest.mark.asyncio
    async def test_reverifies_without_regenerating(self, reconciler, cluster):
        await run_pass(reconciler, cluster)
        cluster.targets[(NAMESPACE, NAME)]["status"]["verificationCycle"] = 0
        writes = cluster.calls["create_config_map"] + cluster.calls[
            "replace_config_map"
        ]

        result = await run_pass(reconciler, cluster)

        assert result.action is Action.VERIFY_ONLY
        assert result.verification is VerificationResult.VERIFIED
        assert (
            cluster.calls["create_config_map"] + cluster.calls["replace_config_map"]
            == writes
        )
        ready = ready_condition(cluster)
        assert ready["status"] == "True"
        assert ready["reason"] == "JWKSVerified"

    @pytest.mark.asyncio
    async def test_serving_disabled_skips(self, reconciler, store, tls_secret):
        store.add_target(build_target_body(spec=SERVING_DISABLED))
        store.add_secret(tls_secret)
        await run_pass(reconciler, store)
        patches = store.calls["patch_target_status"]

        result = await run_pass(reconciler, store)

        assert result.action is Action.VERIFY_ONLY
        assert result.verification is VerificationResult.SKIPPED
        assert store.calls["patch_target_status"] == patches
        assert store.calls["list_pods"] == 0

    @pytest.mark.asyncio
    async def test_missing_secret_is_logged_only(self, reconciler, cluster):
        await run_pass(reconciler, cluster)
        cluster.targets[(NAMESPACE, NAME)]["status"]["verificationCycle"] = 0
        del cluster.secrets[(NAMESPACE, "example-tls")]

        result = await run_pass(reconciler, cluster)

        assert result.action is Action.VERIFY_ONLY
        assert result.verification is None
        assert ready_condition(cluster)["status"] == "True"


class TestCounter:
    @pytest.mark.asyncio
    async def test_conflicting_write_is_dropped(self, reconciler, cluster):
        cluster.failures["replace_target_status"] = ApiException(
            status=409, reason="Conflict"
        )

        await run_pass(reconciler, cluster)

        assert "verificationCycle" not in cluster.status_of()

    @pytest.mark.asyncio
    async def test_deleted_resource_is_ignored(self, reconciler, cluster):
        target = current_target(cluster)
        del cluster.targets[(NAMESPACE, NAME)]

        await reconciler.schedule_counter_update(target, 1)

        assert cluster.calls["replace_target_status"] == 0


class TestInvalidSpec:
    @pytest.mark.asyncio
    async def test_reports_invalid_configuration(self, reconciler, store):
        body = store.add_target(build_target_body(spec={"configMapName": ""}))

        await reconciler.report_invalid_spec(body, "configMapName must not be empty")

        ready = ready_condition(store)
        assert ready["status"] == "False"
        assert ready["reason"] == "InvalidConfiguration"
        assert ready["message"] == "configMapName must not be empty"

    @pytest.mark.asyncio
    async def test_status_write_failure_is_logged(self, reconciler, store):
        body = build_target_body()

        await reconciler.report_invalid_spec(body, "broken")

        assert store.calls["patch_target_status"] == 1


class TestCleanup:
    @pytest.mark.asyncio
    async def test_removes_workload_and_keeps_config_maps(self, reconciler, cluster):
        await run_pass(reconciler, cluster)

        await reconciler.cleanup(NAME, NAMESPACE, build_target_body()["spec"])

        assert not cluster.deployments
        assert not cluster.services
        assert (NAMESPACE, JWKS_CONFIG_MAP) in cluster.config_maps
        assert (NAMESPACE, NGINX_CONFIG_MAP) in cluster.config_maps

    @pytest.mark.asyncio
    async def test_cleanup_on_delete_removes_config_maps(
        self, store, cluster, serving_transport
    ):
        reconciler = JWKSReconciler(
            store=store,
            settings=make_settings(CLEANUP_ON_DELETE=True),
            transport=serving_transport,
        )
        await run_pass(reconciler, cluster)

        await reconciler.cleanup(NAME, NAMESPACE, build_target_body()["spec"])

        assert not cluster.config_maps

    @pytest.mark.asyncio
    async def test_missing_objects_are_ignored(self, reconciler, store):
        await reconciler.cleanup(NAME, NAMESPACE, build_target_body()["spec"])

        assert store.calls["delete_service"] == 1
        assert store.calls["delete_deployment"] == 1

    @pytest.mark.asyncio
    async def test_other_errors_are_logged(self, reconciler, cluster):
        await run_pass(reconciler, cluster)
        cluster.failures["delete_service"] = ApiException(status=403, reason="Forbidden")

        await reconciler.cleanup(NAME, NAMESPACE, build_target_body()["spec"])

        assert (NAMESPACE, NAME) in cluster.services
        assert not cluster.deployments
