"""Shared pytest fixtures for JWKS operator tests."""

import base64

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from kubernetes import client

from jwks_operator.constants import JWKS_CONFIGMAP_KEY
from tests.helpers import (
    FakeResourceStore,
    build_certificate,
    build_secret,
    certificate_pem,
    private_key_pem,
)


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ec_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def rsa_certificate(rsa_key) -> x509.Certificate:
    return build_certificate(rsa_key)


@pytest.fixture(scope="session")
def other_rsa_certificate(other_rsa_key) -> x509.Certificate:
    return build_certificate(other_rsa_key, common_name="rotated.example.com")


@pytest.fixture
def tls_secret(rsa_certificate, rsa_key) -> client.V1Secret:
    return build_secret(certificate_pem(rsa_certificate), private_key_pem(rsa_key))


@pytest.fixture
def store() -> FakeResourceStore:
    return FakeResourceStore()


@pytest.fixture
def serving_transport(store):
    """httpx transport that answers like the nginx Service in front of ``store``."""
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        namespace = request.url.host.split(".")[1]
        for (ns, _), config_map in store.config_maps.items():
            if ns != namespace:
                continue
            encoded = (config_map.binary_data or {}).get(JWKS_CONFIGMAP_KEY)
            if encoded is not None:
                return httpx.Response(
                    200,
                    content=base64.b64decode(encoded),
                    headers={"Content-Type": "application/json"},
                )
        return httpx.Response(404, text="not found")

    transport = httpx.MockTransport(handler)
    transport.requests = requests
    return transport
