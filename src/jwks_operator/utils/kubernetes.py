"""
Kubernetes utilities for the JWKS operator.

This module provides helper functions for interacting with the Kubernetes API.

Key functionality:
- Kubernetes client management and configuration
- ``ResourceStore``: the narrow, awaitable view of the cluster used by
  reconciliation. Blocking client calls run in worker threads and reads of
  missing objects return ``None`` instead of raising.
"""

import asyncio
import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from jwks_operator.constants import JWKS_GROUP, JWKS_PLURAL, JWKS_VERSION

logger = logging.getLogger(__name__)


def get_kubernetes_client() -> client.ApiClient:
    """
    Get configured Kubernetes API client.

    Tries in-cluster configuration first (when running in a pod) and falls
    back to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        logger.debug("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        try:
            config.load_kube_config()
            logger.debug("Loaded kubeconfig from local environment")
        except config.ConfigException as e:
            logger.error(f"Failed to load Kubernetes configuration: {e}")
            raise

    return client.ApiClient()


def is_not_found(error: ApiException) -> bool:
    return getattr(error, "status", None) == 404


def is_conflict(error: ApiException) -> bool:
    return getattr(error, "status", None) == 409


class ResourceStore:
    """
    Async access to the JWKS resources and their companion objects.

    Every read returns ``None`` for a missing object. Writes propagate
    ``ApiException`` so that callers can classify the failure.
    """

    def __init__(self, k8s_client: client.ApiClient | None = None):
        self._k8s_client = k8s_client
        self._core_api: client.CoreV1Api | None = None
        self._apps_api: client.AppsV1Api | None = None
        self._custom_api: client.CustomObjectsApi | None = None

    @property
    def k8s_client(self) -> client.ApiClient:
        if self._k8s_client is None:
            self._k8s_client = get_kubernetes_client()
        return self._k8s_client

    @property
    def core_api(self) -> client.CoreV1Api:
        if self._core_api is None:
            self._core_api = client.CoreV1Api(self.k8s_client)
        return self._core_api

    @property
    def apps_api(self) -> client.AppsV1Api:
        if self._apps_api is None:
            self._apps_api = client.AppsV1Api(self.k8s_client)
        return self._apps_api

    @property
    def custom_api(self) -> client.CustomObjectsApi:
        if self._custom_api is None:
            self._custom_api = client.CustomObjectsApi(self.k8s_client)
        return self._custom_api

    @staticmethod
    async def _read(func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except ApiException as e:
            if is_not_found(e):
                return None
            raise

    # JWKS custom resources

    async def get_target(self, namespace: str, name: str) -> dict[str, Any] | None:
        return await self._read(
            self.custom_api.get_namespaced_custom_object,
            group=JWKS_GROUP,
            version=JWKS_VERSION,
            namespace=namespace,
            plural=JWKS_PLURAL,
            name=name,
        )

    async def patch_target_status(
        self, namespace: str, name: str, status: dict[str, Any]
    ) -> dict[str, Any]:
        return await asyncio.to_thread(
            self.custom_api.patch_namespaced_custom_object_status,
            group=JWKS_GROUP,
            version=JWKS_VERSION,
            namespace=namespace,
            plural=JWKS_PLURAL,
            name=name,
            body={"status": status},
        )

    async def replace_target_status(
        self, namespace: str, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        """Replace the status subresource; fails with 409 on a stale resourceVersion."""
        return await asyncio.to_thread(
            self.custom_api.replace_namespaced_custom_object_status,
            group=JWKS_GROUP,
            version=JWKS_VERSION,
            namespace=namespace,
            plural=JWKS_PLURAL,
            name=name,
            body=body,
        )

    # Secrets

    async def get_secret(self, namespace: str, name: str) -> client.V1Secret | None:
        return await self._read(
            self.core_api.read_namespaced_secret, name=name, namespace=namespace
        )

    # ConfigMaps

    async def get_config_map(
        self, namespace: str, name: str
    ) -> client.V1ConfigMap | None:
        return await self._read(
            self.core_api.read_namespaced_config_map, name=name, namespace=namespace
        )

    async def create_config_map(
        self, namespace: str, body: client.V1ConfigMap
    ) -> client.V1ConfigMap:
        return await asyncio.to_thread(
            self.core_api.create_namespaced_config_map, namespace=namespace, body=body
        )

    async def replace_config_map(
        self, namespace: str, name: str, body: client.V1ConfigMap
    ) -> client.V1ConfigMap:
        return await asyncio.to_thread(
            self.core_api.replace_namespaced_config_map,
            name=name,
            namespace=namespace,
            body=body,
        )

    async def delete_config_map(self, namespace: str, name: str) -> None:
        await asyncio.to_thread(
            self.core_api.delete_namespaced_config_map, name=name, namespace=namespace
        )

    # Deployments

    async def get_deployment(
        self, namespace: str, name: str
    ) -> client.V1Deployment | None:
        return await self._read(
            self.apps_api.read_namespaced_deployment, name=name, namespace=namespace
        )

    async def create_deployment(
        self, namespace: str, body: client.V1Deployment
    ) -> client.V1Deployment:
        return await asyncio.to_thread(
            self.apps_api.create_namespaced_deployment, namespace=namespace, body=body
        )

    async def replace_deployment(
        self, namespace: str, name: str, body: client.V1Deployment
    ) -> client.V1Deployment:
        return await asyncio.to_thread(
            self.apps_api.replace_namespaced_deployment,
            name=name,
            namespace=namespace,
            body=body,
        )

    async def delete_deployment(self, namespace: str, name: str) -> None:
        await asyncio.to_thread(
            self.apps_api.delete_namespaced_deployment, name=name, namespace=namespace
        )

    # Services

    async def get_service(self, namespace: str, name: str) -> client.V1Service | None:
        return await self._read(
            self.core_api.read_namespaced_service, name=name, namespace=namespace
        )

    async def create_service(
        self, namespace: str, body: client.V1Service
    ) -> client.V1Service:
        return await asyncio.to_thread(
            self.core_api.create_namespaced_service, namespace=namespace, body=body
        )

    async def replace_service(
        self, namespace: str, name: str, body: client.V1Service
    ) -> client.V1Service:
        return await asyncio.to_thread(
            self.core_api.replace_namespaced_service,
            name=name,
            namespace=namespace,
            body=body,
        )

    async def delete_service(self, namespace: str, name: str) -> None:
        await asyncio.to_thread(
            self.core_api.delete_namespaced_service, name=name, namespace=namespace
        )

    # Pods

    async def list_pods(
        self, namespace: str, selector: dict[str, str]
    ) -> list[client.V1Pod]:
        label_selector = ",".join(f"{k}={v}" for k, v in sorted(selector.items()))
        pods = await asyncio.to_thread(
            self.core_api.list_namespaced_pod,
            namespace=namespace,
            label_selector=label_selector,
        )
        return list(pods.items or [])
