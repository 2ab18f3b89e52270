"""Builders and an in-memory Kubernetes store shared by the tests."""

import base64
import copy
import json
from collections import Counter
from datetime import UTC, datetime, timedelta
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID
from kubernetes import client
from kubernetes.client.rest import ApiException

from jwks_operator.constants import JWKS_CONFIGMAP_KEY

NAMESPACE = "default"
NAME = "example"
SECRET_NAME = "example-tls"
JWKS_CONFIG_MAP = "example-jwks"
NGINX_CONFIG_MAP = "example-nginx"


def build_certificate(private_key, common_name: str = "example.com") -> x509.Certificate:
    """Self-signed certificate for ``private_key``."""
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(UTC)
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(private_key, hashes.SHA256())
    )


def certificate_pem(certificate: x509.Certificate) -> bytes:
    return certificate.public_bytes(serialization.Encoding.PEM)


def private_key_pem(private_key, pkcs8: bool = False) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=(
            serialization.PrivateFormat.PKCS8
            if pkcs8
            else serialization.PrivateFormat.TraditionalOpenSSL
        ),
        encryption_algorithm=serialization.NoEncryption(),
    )


def build_secret(
    cert_pem: bytes | None,
    key_pem: bytes | None,
    name: str = SECRET_NAME,
    namespace: str = NAMESPACE,
) -> client.V1Secret:
    """Secret as returned by the Kubernetes client: ``data`` is base64 encoded."""
    data = {}
    if cert_pem is not None:
        data["tls.crt"] = base64.b64encode(cert_pem).decode("ascii")
    if key_pem is not None:
        data["tls.key"] = base64.b64encode(key_pem).decode("ascii")
    return client.V1Secret(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace),
        type="kubernetes.io/tls",
        data=data,
    )


def build_target_body(
    spec: dict[str, Any] | None = None,
    status: dict[str, Any] | None = None,
    generation: int = 1,
    name: str = NAME,
    namespace: str = NAMESPACE,
) -> dict[str, Any]:
    """Raw JWKS custom object."""
    body_spec = {
        "certificateSecret": SECRET_NAME,
        "configMapName": JWKS_CONFIG_MAP,
        "nginxConfigMapName": NGINX_CONFIG_MAP,
    }
    body_spec.update(spec or {})
    body: dict[str, Any] = {
        "apiVersion": "example.com/v1alpha1",
        "kind": "JWKS",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "generation": generation,
            "resourceVersion": "1",
        },
        "spec": body_spec,
    }
    if status is not None:
        body["status"] = status
    return body


def ready_pod(app: str, namespace: str = NAMESPACE, ready: bool = True) -> client.V1Pod:
    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=f"{app}-abc12", namespace=namespace, labels={"app": app}
        ),
        status=client.V1PodStatus(
            phase="Running",
            conditions=[
                client.V1PodCondition(type="Ready", status="True" if ready else "False")
            ],
        ),
    )


class FakeResourceStore:
    """
    In-memory stand-in for ``ResourceStore``.

    Reads return the stored objects (``None`` when missing), writes replace
    them and every call is counted in ``calls``. ``failures`` maps a method
    name to an exception raised on its next calls.
    """

    def __init__(self):
        self.targets: dict[tuple[str, str], dict[str, Any]] = {}
        self.secrets: dict[tuple[str, str], client.V1Secret] = {}
        self.config_maps: dict[tuple[str, str], client.V1ConfigMap] = {}
        self.deployments: dict[tuple[str, str], client.V1Deployment] = {}
        self.services: dict[tuple[str, str], client.V1Service] = {}
        self.pods: list[client.V1Pod] = []
        self.calls: Counter = Counter()
        self.failures: dict[str, Exception] = {}
        self._resource_version = 1

    def _record(self, method: str) -> None:
        self.calls[method] += 1
        error = self.failures.get(method)
        if error is not None:
            raise error

    def _next_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    # JWKS custom resources

    def add_target(self, body: dict[str, Any]) -> dict[str, Any]:
        metadata = body["metadata"]
        self.targets[(metadata["namespace"], metadata["name"])] = body
        return body

    def status_of(self, namespace: str = NAMESPACE, name: str = NAME) -> dict[str, Any]:
        return self.targets[(namespace, name)].get("status") or {}

    async def get_target(self, namespace: str, name: str) -> dict[str, Any] | None:
        self._record("get_target")
        body = self.targets.get((namespace, name))
        return copy.deepcopy(body) if body is not None else None

    async def patch_target_status(
        self, namespace: str, name: str, status: dict[str, Any]
    ) -> dict[str, Any]:
        self._record("patch_target_status")
        body = self.targets.get((namespace, name))
        if body is None:
            raise ApiException(status=404, reason="Not Found")
        merged = dict(body.get("status") or {})
        merged.update(copy.deepcopy(status))
        body["status"] = merged
        body["metadata"]["resourceVersion"] = self._next_version()
        return copy.deepcopy(body)

    async def replace_target_status(
        self, namespace: str, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        self._record("replace_target_status")
        stored = self.targets.get((namespace, name))
        if stored is None:
            raise ApiException(status=404, reason="Not Found")
        if body["metadata"].get("resourceVersion") != stored["metadata"].get(
            "resourceVersion"
        ):
            raise ApiException(status=409, reason="Conflict")
        stored["status"] = copy.deepcopy(body.get("status") or {})
        stored["metadata"]["resourceVersion"] = self._next_version()
        return copy.deepcopy(stored)

    # Secrets

    def add_secret(self, secret: client.V1Secret) -> None:
        self.secrets[(secret.metadata.namespace, secret.metadata.name)] = secret

    async def get_secret(self, namespace: str, name: str) -> client.V1Secret | None:
        self._record("get_secret")
        return self.secrets.get((namespace, name))

    # ConfigMaps

    async def get_config_map(
        self, namespace: str, name: str
    ) -> client.V1ConfigMap | None:
        self._record("get_config_map")
        return self.config_maps.get((namespace, name))

    async def create_config_map(
        self, namespace: str, body: client.V1ConfigMap
    ) -> client.V1ConfigMap:
        self._record("create_config_map")
        key = (namespace, body.metadata.name)
        if key in self.config_maps:
            raise ApiException(status=409, reason="AlreadyExists")
        self.config_maps[key] = body
        return body

    async def replace_config_map(
        self, namespace: str, name: str, body: client.V1ConfigMap
    ) -> client.V1ConfigMap:
        self._record("replace_config_map")
        self.config_maps[(namespace, name)] = body
        return body

    async def delete_config_map(self, namespace: str, name: str) -> None:
        self._record("delete_config_map")
        if self.config_maps.pop((namespace, name), None) is None:
            raise ApiException(status=404, reason="Not Found")

    # Deployments

    async def get_deployment(
        self, namespace: str, name: str
    ) -> client.V1Deployment | None:
        self._record("get_deployment")
        return self.deployments.get((namespace, name))

    async def create_deployment(
        self, namespace: str, body: client.V1Deployment
    ) -> client.V1Deployment:
        self._record("create_deployment")
        self.deployments[(namespace, body.metadata.name)] = body
        return body

    async def replace_deployment(
        self, namespace: str, name: str, body: client.V1Deployment
    ) -> client.V1Deployment:
        self._record("replace_deployment")
        self.deployments[(namespace, name)] = body
        return body

    async def delete_deployment(self, namespace: str, name: str) -> None:
        self._record("delete_deployment")
        if self.deployments.pop((namespace, name), None) is None:
            raise ApiException(status=404, reason="Not Found")

    # Services

    async def get_service(self, namespace: str, name: str) -> client.V1Service | None:
        self._record("get_service")
        return self.services.get((namespace, name))

    async def create_service(
        self, namespace: str, body: client.V1Service
    ) -> client.V1Service:
        self._record("create_service")
        self.services[(namespace, body.metadata.name)] = body
        return body

    async def replace_service(
        self, namespace: str, name: str, body: client.V1Service
    ) -> client.V1Service:
        self._record("replace_service")
        self.services[(namespace, name)] = body
        return body

    async def delete_service(self, namespace: str, name: str) -> None:
        self._record("delete_service")
        if self.services.pop((namespace, name), None) is None:
            raise ApiException(status=404, reason="Not Found")

    # Pods

    async def list_pods(
        self, namespace: str, selector: dict[str, str]
    ) -> list[client.V1Pod]:
        self._record("list_pods")
        return [
            pod
            for pod in self.pods
            if pod.metadata.namespace == namespace
            and all(
                (pod.metadata.labels or {}).get(k) == v for k, v in selector.items()
            )
        ]

    # Helpers for assertions

    def served_document(
        self, namespace: str = NAMESPACE, name: str = JWKS_CONFIG_MAP
    ) -> dict[str, Any]:
        config_map = self.config_maps[(namespace, name)]
        raw = base64.b64decode(config_map.binary_data[JWKS_CONFIGMAP_KEY])
        return json.loads(raw)
