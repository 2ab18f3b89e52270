"""
Key material extraction from certificate secrets.

Parses the PEM encoded certificate and private key held in a
``kubernetes.io/tls`` style secret. Only RSA keys are supported; anything
else fails with ``UnsupportedKeyTypeError`` instead of being skipped.
"""

import base64
import re
from dataclasses import dataclass

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from kubernetes import client

from jwks_operator.constants import (
    ERROR_MISSING_SECRET_KEY,
    SECRET_TLS_CERT_KEY,
    SECRET_TLS_KEY_KEY,
)
from jwks_operator.errors import MalformedInputError, UnsupportedKeyTypeError

_PEM_BEGIN = re.compile(rb"-----BEGIN ([A-Z0-9 ]+)-----")


@dataclass
class CertificateMaterial:
    """Certificate (and optionally private key) decoded for one pass."""

    certificate: x509.Certificate
    private_key: rsa.RSAPrivateKey | None = None


def _first_block_type(pem: bytes) -> str | None:
    match = _PEM_BEGIN.search(pem)
    return match.group(1).decode("ascii") if match else None


def parse_certificate(pem: bytes) -> x509.Certificate:
    """
    Parse the first PEM block, which must be a CERTIFICATE.

    Raises:
        MalformedInputError: If the data is not a PEM encoded certificate
    """
    block_type = _first_block_type(pem)
    if block_type is None:
        raise MalformedInputError("Failed to decode PEM block containing certificate")
    if block_type != "CERTIFICATE":
        raise MalformedInputError(
            f"Expected a CERTIFICATE PEM block, found {block_type}"
        )
    try:
        return x509.load_pem_x509_certificate(pem)
    except ValueError as e:
        raise MalformedInputError(f"Failed to parse certificate: {e}", cause=e) from e


def parse_private_key(pem: bytes) -> rsa.RSAPrivateKey:
    """
    Parse an RSA private key in PKCS#1 or PKCS#8 form.

    Raises:
        MalformedInputError: If the data cannot be decoded
        UnsupportedKeyTypeError: If the key is not RSA
    """
    if _first_block_type(pem) is None:
        raise MalformedInputError("Failed to decode PEM block containing private key")
    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError) as e:
        raise MalformedInputError(f"Failed to parse private key: {e}", cause=e) from e
    except UnsupportedAlgorithm as e:
        raise UnsupportedKeyTypeError(
            f"Unsupported private key algorithm: {e}", cause=e
        ) from e

    if not isinstance(key, rsa.RSAPrivateKey):
        raise UnsupportedKeyTypeError(
            f"Private key is {type(key).__name__}, only RSA keys are supported"
        )
    return key


def rsa_public_key(certificate: x509.Certificate) -> rsa.RSAPublicKey:
    """Return the certificate's public key, which must be RSA."""
    try:
        key = certificate.public_key()
    except UnsupportedAlgorithm as e:
        raise UnsupportedKeyTypeError(
            f"Unsupported certificate key algorithm: {e}", cause=e
        ) from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise UnsupportedKeyTypeError(
            "Certificate does not contain an RSA public key"
        )
    return key


def _b64url_uint(value: str) -> int:
    padded = value + "=" * (-len(value) % 4)
    return int.from_bytes(base64.urlsafe_b64decode(padded), "big")


def rsa_public_key_from_jwk(key: dict) -> rsa.RSAPublicKey:
    """
    Rebuild an RSA public key from the ``n`` and ``e`` members of a JWK.

    Raises:
        UnsupportedKeyTypeError: If the key is not RSA
        MalformedInputError: If the modulus or exponent cannot be decoded
    """
    if key.get("kty") != "RSA":
        raise UnsupportedKeyTypeError(f"Unsupported key type: {key.get('kty')}")
    n, e = key.get("n"), key.get("e")
    if not n or not e:
        raise MalformedInputError("RSA key is missing modulus or exponent")
    try:
        numbers = rsa.RSAPublicNumbers(e=_b64url_uint(e), n=_b64url_uint(n))
        return numbers.public_key()
    except ValueError as err:
        raise MalformedInputError(
            f"Invalid RSA modulus or exponent: {err}", cause=err
        ) from err


def secret_value(secret: client.V1Secret, key: str) -> bytes:
    """
    Return one decoded entry of a secret.

    The Kubernetes client hands ``data`` back base64 encoded.

    Raises:
        MalformedInputError: If the entry is missing or not valid base64
    """
    data = secret.data or {}
    encoded = data.get(key)
    if not encoded:
        raise MalformedInputError(
            ERROR_MISSING_SECRET_KEY.format(secret.metadata.name, key)
        )
    try:
        return base64.b64decode(encoded, validate=True)
    except ValueError as e:
        raise MalformedInputError(
            f"Secret entry '{key}' is not valid base64: {e}", cause=e
        ) from e


def certificate_from_secret(secret: client.V1Secret) -> CertificateMaterial:
    return CertificateMaterial(
        certificate=parse_certificate(secret_value(secret, SECRET_TLS_CERT_KEY))
    )


def private_key_from_secret(secret: client.V1Secret) -> rsa.RSAPrivateKey:
    return parse_private_key(secret_value(secret, SECRET_TLS_KEY_KEY))
