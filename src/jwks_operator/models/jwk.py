"""
JSON Web Key models.

A key set is an ordered list of keys; order is meaningful because rolling
updates append new keys after the ones already published.
"""

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from jwks_operator.errors import MalformedInputError


class JWK(BaseModel):
    """One RSA public key as published in a key set."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    kty: str = Field(..., description="Key type")
    use: str | None = Field(None, description="Intended use of the key")
    key_ops: list[str] | None = Field(None, description="Permitted key operations")
    alg: str | None = Field(None, description="Signature algorithm")
    kid: str = Field("", description="Key ID derived from the certificate")
    n: str | None = Field(None, description="RSA modulus, base64url without padding")
    e: str | None = Field(None, description="RSA exponent, base64url without padding")
    x5c: list[str] | None = Field(
        None, description="Certificate chain, standard base64 DER"
    )
    x5t: str | None = Field(None, description="SHA-1 certificate thumbprint")
    x5t_s256: str | None = Field(
        None, alias="x5t#S256", description="SHA-256 certificate thumbprint"
    )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class JSONWebKeySet(BaseModel):
    """Ordered collection of JWKs."""

    keys: list[JWK] = Field(default_factory=list)

    @property
    def kids(self) -> set[str]:
        return {key.kid for key in self.keys}

    def is_empty(self) -> bool:
        return not self.keys

    def to_dict(self) -> dict[str, Any]:
        return {"keys": [key.to_dict() for key in self.keys]}

    def to_json(self) -> str:
        """Serialize as the canonical two-space indented document."""
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, document: str | bytes) -> "JSONWebKeySet":
        """
        Parse a stored or served key set document.

        Raises:
            MalformedInputError: If the document is not a JSON key set
        """
        try:
            payload = json.loads(document)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedInputError(f"Key set is not valid JSON: {e}", cause=e) from e
        if not isinstance(payload, dict) or not isinstance(
            payload.get("keys", []), list
        ):
            raise MalformedInputError("Key set document has no 'keys' list")
        try:
            return cls.model_validate({"keys": payload.get("keys", [])})
        except ValueError as e:
            raise MalformedInputError(f"Key set has invalid entries: {e}", cause=e) from e
