"""
ConfigMap management for key sets and nginx configuration.

The key set lives in ``binaryData["jwks.json"]`` of its ConfigMap; the nginx
configuration in ``data["default.conf"]``. Writes are skipped when the stored
content already matches, so a steady-state pass never touches the API and
never changes the content hashes that trigger nginx reloads.
"""

import base64
import hashlib

from kubernetes import client

from jwks_operator.constants import (
    JWKS_CONFIG_LABEL_KEY,
    JWKS_CONFIGMAP_KEY,
    MANAGED_BY_LABEL_KEY,
    MANAGED_BY_LABEL_VALUE,
    NGINX_CONFIGMAP_KEY,
)
from jwks_operator.errors import MalformedInputError
from jwks_operator.models import JSONWebKeySet
from jwks_operator.observability.logging import OperatorLogger
from jwks_operator.utils.kubernetes import ResourceStore

logger = OperatorLogger(__name__)


def content_hash(config_map: client.V1ConfigMap | None) -> str:
    """SHA-256 over the sorted ``key=value`` lines of data and binaryData."""
    lines: list[str] = []
    if config_map is not None:
        entries = dict(config_map.data or {})
        entries.update(config_map.binary_data or {})
        lines = [f"{key}={entries[key]}\n" for key in sorted(entries)]
    return hashlib.sha256("".join(lines).encode("utf-8")).hexdigest()


def read_key_set_document(config_map: client.V1ConfigMap) -> bytes | None:
    """Return the stored key set bytes from binaryData or data."""
    binary = (config_map.binary_data or {}).get(JWKS_CONFIGMAP_KEY)
    if binary is not None:
        try:
            return base64.b64decode(binary)
        except ValueError as e:
            raise MalformedInputError(
                f"ConfigMap binaryData '{JWKS_CONFIGMAP_KEY}' is not base64: {e}",
                cause=e,
            ) from e
    text = (config_map.data or {}).get(JWKS_CONFIGMAP_KEY)
    if text is not None:
        return text.encode("utf-8")
    return None


class ConfigMapManager:
    """Reads and converges the ConfigMaps derived from a JWKS resource."""

    def __init__(self, store: ResourceStore):
        self.store = store

    @staticmethod
    def _labels(owner: str | None) -> dict[str, str]:
        labels = {MANAGED_BY_LABEL_KEY: MANAGED_BY_LABEL_VALUE}
        if owner:
            labels[JWKS_CONFIG_LABEL_KEY] = owner
        return labels

    async def exists(self, namespace: str, name: str) -> bool:
        return await self.store.get_config_map(namespace, name) is not None

    async def get_key_set(self, namespace: str, name: str) -> JSONWebKeySet | None:
        """
        Read the stored key set.

        Returns None when the ConfigMap does not exist.

        Raises:
            MalformedInputError: If the ConfigMap exists without a parsable key set
        """
        config_map = await self.store.get_config_map(namespace, name)
        if config_map is None:
            return None
        document = read_key_set_document(config_map)
        if document is None:
            raise MalformedInputError(
                f"ConfigMap {namespace}/{name} has no '{JWKS_CONFIGMAP_KEY}' entry"
            )
        return JSONWebKeySet.from_json(document)

    async def update_key_set(
        self,
        namespace: str,
        name: str,
        key_set: JSONWebKeySet,
        owner: str | None = None,
    ) -> bool:
        """
        Store the key set, creating the ConfigMap if needed.

        Returns:
            True if the ConfigMap was created or changed
        """
        document = key_set.to_json().encode("utf-8")
        encoded = base64.b64encode(document).decode("ascii")
        config_map = await self.store.get_config_map(namespace, name)

        if config_map is None:
            body = client.V1ConfigMap(
                metadata=client.V1ObjectMeta(
                    name=name, namespace=namespace, labels=self._labels(owner)
                ),
                binary_data={JWKS_CONFIGMAP_KEY: encoded},
            )
            await self.store.create_config_map(namespace, body)
            logger.info(
                f"Created key set ConfigMap {namespace}/{name}",
                config_map=name,
                key_count=len(key_set.keys),
            )
            return True

        if read_key_set_document(config_map) == document:
            logger.debug(f"Key set ConfigMap {namespace}/{name} is up to date")
            return False

        config_map.binary_data = dict(config_map.binary_data or {})
        config_map.binary_data[JWKS_CONFIGMAP_KEY] = encoded
        if config_map.data and JWKS_CONFIGMAP_KEY in config_map.data:
            config_map.data = {
                k: v for k, v in config_map.data.items() if k != JWKS_CONFIGMAP_KEY
            }
        await self.store.replace_config_map(namespace, name, config_map)
        logger.info(
            f"Updated key set ConfigMap {namespace}/{name}",
            config_map=name,
            key_count=len(key_set.keys),
        )
        return True

    async def ensure_nginx_config(
        self, namespace: str, name: str, content: str, owner: str | None = None
    ) -> bool:
        """
        Store the nginx configuration text.

        Returns:
            True if the ConfigMap was created or changed
        """
        config_map = await self.store.get_config_map(namespace, name)

        if config_map is None:
            body = client.V1ConfigMap(
                metadata=client.V1ObjectMeta(
                    name=name, namespace=namespace, labels=self._labels(owner)
                ),
                data={NGINX_CONFIGMAP_KEY: content},
            )
            await self.store.create_config_map(namespace, body)
            logger.info(f"Created nginx ConfigMap {namespace}/{name}", config_map=name)
            return True

        if (config_map.data or {}).get(NGINX_CONFIGMAP_KEY) == content:
            logger.debug(f"nginx ConfigMap {namespace}/{name} is up to date")
            return False

        config_map.data = dict(config_map.data or {})
        config_map.data[NGINX_CONFIGMAP_KEY] = content
        await self.store.replace_config_map(namespace, name, config_map)
        logger.info(f"Updated nginx ConfigMap {namespace}/{name}", config_map=name)
        return True

    async def delete(self, namespace: str, name: str) -> None:
        await self.store.delete_config_map(namespace, name)
        logger.info(f"Deleted ConfigMap {namespace}/{name}", config_map=name)
