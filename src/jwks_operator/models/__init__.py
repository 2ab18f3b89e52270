"""
Models package - Pydantic models for type-safe resource handling.

Defines data models for:
- JWKS resource specification and status
- JSON Web Keys and key sets
"""

from .jwk import JWK, JSONWebKeySet
from .jwks import JWKSSpec, JWKSStatus, JWKSTarget, normalize_endpoint

__all__ = [
    "JWK",
    "JSONWebKeySet",
    "JWKSSpec",
    "JWKSStatus",
    "JWKSTarget",
    "normalize_endpoint",
]
