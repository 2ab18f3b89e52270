"""
nginx Deployment and Service management.

The Deployment mounts the nginx ConfigMap and the key set ConfigMap. Mounted
ConfigMap updates alone do not make nginx pick up new content, so each pass
hashes both ConfigMaps, records the hashes on the pod template and stamps a
restart annotation whenever they change.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

from kubernetes import client

from jwks_operator.constants import (
    APP_LABEL_KEY,
    DEFAULT_LIMIT_CPU,
    DEFAULT_LIMIT_MEMORY,
    DEFAULT_NGINX_IMAGE,
    DEFAULT_NGINX_PORT,
    DEFAULT_NGINX_REPLICAS,
    DEFAULT_REQUEST_CPU,
    DEFAULT_REQUEST_MEMORY,
    JWKS_CONFIG_LABEL_KEY,
    JWKS_CONFIGMAP_HASH_ANNOTATION,
    JWKS_CONFIGMAP_KEY,
    JWKS_DATA_VOLUME,
    JWKS_MOUNT_PATH,
    LEGACY_DEPLOYMENT_PREFIX,
    LIVENESS_INITIAL_DELAY,
    LIVENESS_PERIOD,
    LIVENESS_PROBE_PATH,
    MANAGED_BY_LABEL_KEY,
    MANAGED_BY_LABEL_VALUE,
    NGINX_CONFIG_MOUNT_PATH,
    NGINX_CONFIG_VOLUME,
    NGINX_CONFIGMAP_HASH_ANNOTATION,
    NGINX_CONTAINER_NAME,
    READINESS_INITIAL_DELAY,
    READINESS_PERIOD,
    READINESS_PROBE_PATH,
    RESTARTED_AT_ANNOTATION,
)
from jwks_operator.errors import ArtifactNotFoundError
from jwks_operator.observability.logging import OperatorLogger
from jwks_operator.services.configmap_manager import content_hash
from jwks_operator.utils.durations import format_timestamp
from jwks_operator.utils.kubernetes import ResourceStore

logger = OperatorLogger(__name__)


@dataclass(frozen=True)
class NginxSettings:
    """Shape of the serving workload."""

    image: str = DEFAULT_NGINX_IMAGE
    port: int = DEFAULT_NGINX_PORT
    replicas: int = DEFAULT_NGINX_REPLICAS
    request_cpu: str = DEFAULT_REQUEST_CPU
    request_memory: str = DEFAULT_REQUEST_MEMORY
    limit_cpu: str = DEFAULT_LIMIT_CPU
    limit_memory: str = DEFAULT_LIMIT_MEMORY

    def resource_requirements(self) -> client.V1ResourceRequirements:
        return client.V1ResourceRequirements(
            requests={"cpu": self.request_cpu, "memory": self.request_memory},
            limits={"cpu": self.limit_cpu, "memory": self.limit_memory},
        )


def build_labels(name: str) -> dict[str, str]:
    return {
        APP_LABEL_KEY: name,
        JWKS_CONFIG_LABEL_KEY: name,
        MANAGED_BY_LABEL_KEY: MANAGED_BY_LABEL_VALUE,
    }


def build_selector_labels(name: str) -> dict[str, str]:
    return {APP_LABEL_KEY: name, JWKS_CONFIG_LABEL_KEY: name}


def _resources_equal(
    current: client.V1ResourceRequirements | None,
    desired: client.V1ResourceRequirements,
) -> bool:
    if current is None:
        return False
    return dict(current.requests or {}) == dict(desired.requests or {}) and dict(
        current.limits or {}
    ) == dict(desired.limits or {})


class NginxManager:
    """Converges the nginx Deployment and Service of a JWKS resource."""

    def __init__(self, store: ResourceStore, nginx: NginxSettings | None = None):
        self.store = store
        self.nginx = nginx or NginxSettings()

    # Deployment

    def build_container(self) -> client.V1Container:
        port = self.nginx.port
        return client.V1Container(
            name=NGINX_CONTAINER_NAME,
            image=self.nginx.image,
            command=["nginx", "-g", "daemon off;"],
            ports=[
                client.V1ContainerPort(
                    name="http", container_port=port, protocol="TCP"
                )
            ],
            volume_mounts=[
                client.V1VolumeMount(
                    name=NGINX_CONFIG_VOLUME,
                    mount_path=NGINX_CONFIG_MOUNT_PATH,
                    read_only=True,
                ),
                client.V1VolumeMount(
                    name=JWKS_DATA_VOLUME,
                    mount_path=JWKS_MOUNT_PATH,
                    sub_path=JWKS_CONFIGMAP_KEY,
                    read_only=True,
                ),
            ],
            resources=self.nginx.resource_requirements(),
            liveness_probe=client.V1Probe(
                http_get=client.V1HTTPGetAction(path=LIVENESS_PROBE_PATH, port=port),
                initial_delay_seconds=LIVENESS_INITIAL_DELAY,
                period_seconds=LIVENESS_PERIOD,
            ),
            readiness_probe=client.V1Probe(
                http_get=client.V1HTTPGetAction(path=READINESS_PROBE_PATH, port=port),
                initial_delay_seconds=READINESS_INITIAL_DELAY,
                period_seconds=READINESS_PERIOD,
            ),
        )

    @staticmethod
    def build_volumes(
        nginx_config_map: str, jwks_config_map: str
    ) -> list[client.V1Volume]:
        return [
            client.V1Volume(
                name=NGINX_CONFIG_VOLUME,
                config_map=client.V1ConfigMapVolumeSource(name=nginx_config_map),
            ),
            client.V1Volume(
                name=JWKS_DATA_VOLUME,
                config_map=client.V1ConfigMapVolumeSource(
                    name=jwks_config_map,
                    items=[
                        client.V1KeyToPath(
                            key=JWKS_CONFIGMAP_KEY, path=JWKS_CONFIGMAP_KEY
                        )
                    ],
                ),
            ),
        ]

    def build_deployment(
        self,
        name: str,
        namespace: str,
        nginx_config_map: str,
        jwks_config_map: str,
        annotations: dict[str, str] | None = None,
    ) -> client.V1Deployment:
        selector_labels = build_selector_labels(name)
        return client.V1Deployment(
            api_version="apps/v1",
            kind="Deployment",
            metadata=client.V1ObjectMeta(
                name=name, namespace=namespace, labels=build_labels(name)
            ),
            spec=client.V1DeploymentSpec(
                replicas=self.nginx.replicas,
                selector=client.V1LabelSelector(match_labels=selector_labels),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(
                        labels=dict(selector_labels),
                        annotations=dict(annotations or {}),
                    ),
                    spec=client.V1PodSpec(
                        containers=[self.build_container()],
                        volumes=self.build_volumes(nginx_config_map, jwks_config_map),
                    ),
                ),
            ),
        )

    async def _config_map_hashes(
        self, namespace: str, nginx_config_map: str, jwks_config_map: str
    ) -> dict[str, str]:
        hashes = {}
        for annotation, cm_name in (
            (NGINX_CONFIGMAP_HASH_ANNOTATION, nginx_config_map),
            (JWKS_CONFIGMAP_HASH_ANNOTATION, jwks_config_map),
        ):
            config_map = await self.store.get_config_map(namespace, cm_name)
            if config_map is None:
                raise ArtifactNotFoundError(
                    f"ConfigMap {namespace}/{cm_name} required by the nginx "
                    "deployment does not exist"
                )
            hashes[annotation] = content_hash(config_map)
        return hashes

    async def ensure_deployment(
        self,
        name: str,
        namespace: str,
        nginx_config_map: str,
        jwks_config_map: str,
    ) -> bool:
        """
        Create the nginx Deployment or bring it back in line.

        Returns:
            True if the Deployment was created or updated
        """
        hashes = await self._config_map_hashes(
            namespace, nginx_config_map, jwks_config_map
        )
        deployment = await self.store.get_deployment(namespace, name)

        if deployment is None:
            body = self.build_deployment(
                name, namespace, nginx_config_map, jwks_config_map, hashes
            )
            await self.store.create_deployment(namespace, body)
            logger.info(f"Created nginx deployment {namespace}/{name}")
            return True

        if not self._apply_drift(deployment, hashes, nginx_config_map, jwks_config_map):
            logger.debug(f"nginx deployment {namespace}/{name} is up to date")
            return False

        await self.store.replace_deployment(namespace, name, deployment)
        logger.info(f"Updated nginx deployment {namespace}/{name}")
        return True

    def _apply_drift(
        self,
        deployment: client.V1Deployment,
        hashes: dict[str, str],
        nginx_config_map: str,
        jwks_config_map: str,
    ) -> bool:
        """Patch ``deployment`` in place; returns whether anything changed."""
        template = deployment.spec.template
        if template.metadata is None:
            template.metadata = client.V1ObjectMeta()
        annotations = dict(template.metadata.annotations or {})
        changed = False

        for annotation, value in hashes.items():
            if annotations.get(annotation) != value:
                annotations[annotation] = value
                changed = True

        wanted = {
            NGINX_CONFIG_VOLUME: nginx_config_map,
            JWKS_DATA_VOLUME: jwks_config_map,
        }
        for volume in template.spec.volumes or []:
            if volume.name in wanted and volume.config_map is not None:
                if volume.config_map.name != wanted[volume.name]:
                    volume.config_map.name = wanted[volume.name]
                    changed = True

        if template.spec.containers:
            container = template.spec.containers[0]
            desired = self.nginx.resource_requirements()
            if not _resources_equal(container.resources, desired):
                container.resources = desired
                changed = True

        if changed:
            annotations[RESTARTED_AT_ANNOTATION] = format_timestamp(datetime.now(UTC))
            template.metadata.annotations = annotations
        return changed

    async def delete_deployment(self, name: str, namespace: str) -> None:
        await self.store.delete_deployment(namespace, name)
        logger.info(f"Deleted nginx deployment {namespace}/{name}")

    # Service

    def build_service(self, name: str, namespace: str) -> client.V1Service:
        return client.V1Service(
            api_version="v1",
            kind="Service",
            metadata=client.V1ObjectMeta(
                name=name, namespace=namespace, labels=build_labels(name)
            ),
            spec=client.V1ServiceSpec(
                type="ClusterIP",
                selector={APP_LABEL_KEY: name},
                ports=[
                    client.V1ServicePort(
                        name="http",
                        port=DEFAULT_NGINX_PORT,
                        target_port=self.nginx.port,
                        protocol="TCP",
                    )
                ],
            ),
        )

    async def _expected_selector(self, name: str, namespace: str) -> dict[str, str]:
        """Selector matching the pods of the current (or legacy named) Deployment."""
        deployment = await self.store.get_deployment(namespace, name)
        if deployment is None:
            deployment = await self.store.get_deployment(
                namespace, f"{LEGACY_DEPLOYMENT_PREFIX}{name}"
            )

        app = name
        if deployment is not None:
            template_labels = (
                deployment.spec.template.metadata.labels
                if deployment.spec.template.metadata
                else None
            ) or {}
            app = template_labels.get(APP_LABEL_KEY) or name
        return {APP_LABEL_KEY: app}

    async def ensure_service(self, name: str, namespace: str) -> bool:
        """
        Create the nginx Service or correct a drifted selector.

        Returns:
            True if the Service was created or updated
        """
        service = await self.store.get_service(namespace, name)
        if service is None:
            await self.store.create_service(namespace, self.build_service(name, namespace))
            logger.info(f"Created nginx service {namespace}/{name}")
            return True

        expected = await self._expected_selector(name, namespace)
        if dict(service.spec.selector or {}) == expected:
            return False

        logger.info(
            f"Correcting selector of service {namespace}/{name} to {expected}"
        )
        service.spec.selector = expected
        await self.store.replace_service(namespace, name, service)
        return True

    async def delete_service(self, name: str, namespace: str) -> None:
        await self.store.delete_service(namespace, name)
        logger.info(f"Deleted nginx service {namespace}/{name}")
