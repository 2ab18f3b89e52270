"""Unit tests for key set and nginx ConfigMap management."""

import base64
import json

import pytest
from kubernetes import client

from jwks_operator.errors import MalformedInputError
from jwks_operator.models import JWK, JSONWebKeySet
from jwks_operator.services.configmap_manager import (
    ConfigMapManager,
    content_hash,
    read_key_set_document,
)
from tests.helpers import JWKS_CONFIG_MAP, NAMESPACE, NGINX_CONFIG_MAP


def key_set(*kids: str) -> JSONWebKeySet:
    return JSONWebKeySet(
        keys=[JWK(kty="RSA", kid=kid, n="AQAB", e="AQAB") for kid in kids]
    )


@pytest.fixture
def manager(store):
    return ConfigMapManager(store)


class TestContentHash:
    def test_independent_of_key_order(self):
        a = client.V1ConfigMap(data={"a": "1", "b": "2"})
        b = client.V1ConfigMap(data={"b": "2", "a": "1"})
        assert content_hash(a) == content_hash(b)

    def test_covers_binary_data(self):
        a = client.V1ConfigMap(binary_data={"jwks.json": "AAAA"})
        b = client.V1ConfigMap(binary_data={"jwks.json": "AAAB"})
        assert content_hash(a) != content_hash(b)

    def test_missing_config_map_hashes_empty(self):
        assert content_hash(None) == content_hash(client.V1ConfigMap())


class TestKeySet:
    @pytest.mark.asyncio
    async def test_create_stores_binary_data(self, manager, store):
        changed = await manager.update_key_set(
            NAMESPACE, JWKS_CONFIG_MAP, key_set("a"), owner="example"
        )

        assert changed
        config_map = store.config_maps[(NAMESPACE, JWKS_CONFIG_MAP)]
        assert config_map.metadata.labels == {
            "app.kubernetes.io/managed-by": "jwks-operator",
            "jwks-config": "example",
        }
        document = json.loads(base64.b64decode(config_map.binary_data["jwks.json"]))
        assert [k["kid"] for k in document["keys"]] == ["a"]

    @pytest.mark.asyncio
    async def test_identical_content_is_written_once(self, manager, store):
        for _ in range(3):
            await manager.update_key_set(NAMESPACE, JWKS_CONFIG_MAP, key_set("a"))

        assert store.calls["create_config_map"] == 1
        assert store.calls["replace_config_map"] == 0

    @pytest.mark.asyncio
    async def test_changed_content_is_replaced(self, manager, store):
        await manager.update_key_set(NAMESPACE, JWKS_CONFIG_MAP, key_set("a"))
        changed = await manager.update_key_set(
            NAMESPACE, JWKS_CONFIG_MAP, key_set("a", "b")
        )

        assert changed
        assert store.calls["replace_config_map"] == 1
        stored = await manager.get_key_set(NAMESPACE, JWKS_CONFIG_MAP)
        assert [k.kid for k in stored.keys] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_legacy_text_entry_moves_to_binary_data(self, manager, store):
        store.config_maps[(NAMESPACE, JWKS_CONFIG_MAP)] = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=JWKS_CONFIG_MAP, namespace=NAMESPACE),
            data={"jwks.json": '{"keys": []}', "other": "kept"},
        )

        await manager.update_key_set(NAMESPACE, JWKS_CONFIG_MAP, key_set("a"))

        config_map = store.config_maps[(NAMESPACE, JWKS_CONFIG_MAP)]
        assert config_map.data == {"other": "kept"}
        assert "jwks.json" in config_map.binary_data

    @pytest.mark.asyncio
    async def test_get_missing_config_map(self, manager):
        assert await manager.get_key_set(NAMESPACE, "nope") is None

    @pytest.mark.asyncio
    async def test_get_without_entry_is_malformed(self, manager, store):
        store.config_maps[(NAMESPACE, JWKS_CONFIG_MAP)] = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=JWKS_CONFIG_MAP), data={"x": "y"}
        )
        with pytest.raises(MalformedInputError):
            await manager.get_key_set(NAMESPACE, JWKS_CONFIG_MAP)

    def test_read_text_entry(self):
        config_map = client.V1ConfigMap(data={"jwks.json": '{"keys": []}'})
        assert read_key_set_document(config_map) == b'{"keys": []}'


class TestNginxConfig:
    @pytest.mark.asyncio
    async def test_create_then_noop(self, manager, store):
        assert await manager.ensure_nginx_config(NAMESPACE, NGINX_CONFIG_MAP, "conf")
        assert not await manager.ensure_nginx_config(NAMESPACE, NGINX_CONFIG_MAP, "conf")

        assert store.calls["create_config_map"] == 1
        assert store.calls["replace_config_map"] == 0
        config_map = store.config_maps[(NAMESPACE, NGINX_CONFIG_MAP)]
        assert config_map.data == {"default.conf": "conf"}

    @pytest.mark.asyncio
    async def test_changed_content_is_replaced(self, manager, store):
        await manager.ensure_nginx_config(NAMESPACE, NGINX_CONFIG_MAP, "conf")
        assert await manager.ensure_nginx_config(NAMESPACE, NGINX_CONFIG_MAP, "conf2")
        assert store.calls["replace_config_map"] == 1

    @pytest.mark.asyncio
    async def test_delete(self, manager, store):
        await manager.ensure_nginx_config(NAMESPACE, NGINX_CONFIG_MAP, "conf")
        await manager.delete(NAMESPACE, NGINX_CONFIG_MAP)
        assert not await manager.exists(NAMESPACE, NGINX_CONFIG_MAP)
