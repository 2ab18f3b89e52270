"""
Pydantic models for JWKS custom resources.

This module defines type-safe data models for the JWKS resource
specification and status, plus a snapshot type bundling both with the
metadata a reconciliation pass needs.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from jwks_operator.constants import (
    CONDITION_FALSE,
    CONDITION_READY,
    DEFAULT_ENDPOINT,
    REASON_VERIFICATION_FAILED,
)
from jwks_operator.utils.durations import parse_timestamp


def normalize_endpoint(endpoint: str | None) -> str:
    """Default an empty endpoint and make sure it starts with a slash."""
    if not endpoint:
        return DEFAULT_ENDPOINT
    if not endpoint.startswith("/"):
        endpoint = "/" + endpoint
    return endpoint


class JWKSSpec(BaseModel):
    """Desired state of a JWKS resource."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    certificate_secret: str = Field(
        ...,
        alias="certificateSecret",
        description="Secret holding tls.crt and tls.key",
    )
    config_map_name: str = Field(
        ..., alias="configMapName", description="ConfigMap storing the key set"
    )
    nginx_config_map_name: str | None = Field(
        None,
        alias="nginxConfigMapName",
        description="ConfigMap for the nginx configuration; unset disables serving",
    )
    endpoint: str = Field(
        DEFAULT_ENDPOINT, description="HTTP path of the key set (always /jwks.json)"
    )
    update_strategy: str | None = Field(
        None, alias="updateStrategy", description="rolling or immediate"
    )
    keep_old_keys: bool | None = Field(
        None, alias="keepOldKeys", description="Keep old keys on rolling updates"
    )
    old_keys_ttl: str | None = Field(
        None, alias="oldKeysTTL", description="Retention for old keys"
    )
    reconcile_interval: str | None = Field(None, alias="reconcileInterval")
    jwks_update_interval: str | None = Field(None, alias="jwksUpdateInterval")
    jwks_verification_interval: str | None = Field(
        None, alias="jwksVerificationInterval"
    )

    @field_validator("certificate_secret", "config_map_name")
    @classmethod
    def validate_required_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v

    @field_validator("nginx_config_map_name")
    @classmethod
    def blank_means_unset(cls, v: str | None) -> str | None:
        return v or None

    @field_validator("endpoint", mode="before")
    @classmethod
    def validate_endpoint(cls, v: Any) -> str:
        return normalize_endpoint(v)

    @property
    def serving_enabled(self) -> bool:
        return self.nginx_config_map_name is not None


class JWKSStatus(BaseModel):
    """Observed state of a JWKS resource."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    conditions: list[dict[str, Any]] = Field(default_factory=list)
    last_update_time: datetime | None = Field(None, alias="lastUpdateTime")
    last_key_id: str | None = Field(None, alias="lastKeyID")
    key_count: int | None = Field(None, alias="keyCount")
    nginx_config_updated: datetime | None = Field(None, alias="nginxConfigUpdated")
    jwks_verified: datetime | None = Field(None, alias="jwksVerified")
    verification_cycle: int | None = Field(
        None,
        alias="verificationCycle",
        description="Scheduling counter driving the fast cadence after restarts",
    )

    @field_validator(
        "last_update_time", "nginx_config_updated", "jwks_verified", mode="before"
    )
    @classmethod
    def parse_time(cls, v: Any) -> datetime | None:
        return parse_timestamp(v)

    @field_validator("conditions", mode="before")
    @classmethod
    def drop_malformed_conditions(cls, v: Any) -> list[dict[str, Any]]:
        if not isinstance(v, list):
            return []
        return [c for c in v if isinstance(c, dict)]

    def get_condition(self, condition_type: str) -> dict[str, Any] | None:
        for condition in self.conditions:
            if condition.get("type") == condition_type:
                return condition
        return None

    @property
    def ready_observed_generation(self) -> int:
        ready = self.get_condition(CONDITION_READY)
        if ready is None:
            return 0
        return int(ready.get("observedGeneration") or 0)

    @property
    def last_pass_failed(self) -> bool:
        """
        True while Ready=False was reported by a failed update phase.

        Failed verifications are excluded, verify-only passes retry those.
        """
        ready = self.get_condition(CONDITION_READY)
        return (
            ready is not None
            and ready.get("status") == CONDITION_FALSE
            and ready.get("reason") != REASON_VERIFICATION_FAILED
        )


class JWKSTarget(BaseModel):
    """Snapshot of one JWKS resource, owned by a single reconciliation pass."""

    name: str
    namespace: str
    generation: int = 0
    resource_version: str | None = None
    spec: JWKSSpec
    status: JWKSStatus = Field(default_factory=JWKSStatus)

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> "JWKSTarget":
        """Build a snapshot from a raw custom object as returned by the API."""
        metadata = body.get("metadata") or {}
        return cls(
            name=metadata["name"],
            namespace=metadata["namespace"],
            generation=int(metadata.get("generation") or 0),
            resource_version=metadata.get("resourceVersion"),
            spec=JWKSSpec.model_validate(body.get("spec") or {}),
            status=JWKSStatus.model_validate(body.get("status") or {}),
        )
