"""
JWKS generation from X.509 certificates.

Generation is pure and deterministic: the same certificate bytes always
produce the same JWK, including its ``kid``, which is the first 16 hex
characters of the SHA-1 fingerprint of the certificate DER.
"""

import base64
import hashlib

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from kubernetes import client

from jwks_operator.constants import (
    JWK_ALGORITHM,
    JWK_KEY_OPS,
    JWK_KEY_TYPE,
    JWK_USE,
    KID_LENGTH,
)
from jwks_operator.errors import GenerationFailedError
from jwks_operator.models import JWK, JSONWebKeySet
from jwks_operator.services.key_material import certificate_from_secret, rsa_public_key


def b64url_uint(value: int) -> str:
    """Encode an unsigned integer as minimal big-endian bytes, base64url, unpadded."""
    raw = value.to_bytes(max(1, (value.bit_length() + 7) // 8), "big")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def certificate_der(certificate: x509.Certificate) -> bytes:
    return certificate.public_bytes(serialization.Encoding.DER)


def compute_kid(certificate: x509.Certificate) -> str:
    """Key ID: leading lowercase hex characters of the SHA-1 DER fingerprint."""
    return hashlib.sha1(certificate_der(certificate)).hexdigest()[:KID_LENGTH]


def generate_jwk(certificate: x509.Certificate, include_chain: bool = True) -> JWK:
    """
    Build the JWK for a certificate's RSA public key.

    Raises:
        UnsupportedKeyTypeError: If the certificate key is not RSA
    """
    numbers = rsa_public_key(certificate).public_numbers()
    jwk = JWK(
        kty=JWK_KEY_TYPE,
        use=JWK_USE,
        key_ops=list(JWK_KEY_OPS),
        alg=JWK_ALGORITHM,
        kid=compute_kid(certificate),
        n=b64url_uint(numbers.n),
        e=b64url_uint(numbers.e),
    )

    if include_chain:
        der = certificate_der(certificate)
        jwk.x5c = [base64.b64encode(der).decode("ascii")]
        jwk.x5t = _b64url(hashlib.sha1(der).digest())
        jwk.x5t_s256 = _b64url(hashlib.sha256(der).digest())

    return jwk


def generate_key_set(certificate: x509.Certificate) -> JSONWebKeySet:
    """
    Generate a single-key set from a certificate.

    Raises:
        GenerationFailedError: If no key could be produced
    """
    key_set = JSONWebKeySet(keys=[generate_jwk(certificate)])
    if key_set.is_empty():
        raise GenerationFailedError("Generated JWKS contains no keys")
    return key_set


def generate_from_secret(secret: client.V1Secret) -> JSONWebKeySet:
    """Decode ``tls.crt`` from a secret and generate its key set."""
    return generate_key_set(certificate_from_secret(secret).certificate)
