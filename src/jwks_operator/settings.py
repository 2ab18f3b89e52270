"""Centralized operator settings using pydantic-settings.

This module provides a single source of truth for all operator configuration
loaded from environment variables. Uses pydantic for automatic validation,
type coercion, and documentation.
"""

import re
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from jwks_operator.constants import (
    DEFAULT_CACHE_MAX_AGE,
    DEFAULT_LIMIT_CPU,
    DEFAULT_LIMIT_MEMORY,
    DEFAULT_NGINX_IMAGE,
    DEFAULT_NGINX_REPLICAS,
    DEFAULT_REQUEST_CPU,
    DEFAULT_REQUEST_MEMORY,
    SUPPORTED_STRATEGIES,
)
from jwks_operator.utils.durations import parse_duration

_LOG_LEVELS = {"DEBUG", "INFO", "WARN", "WARNING", "ERROR", "CRITICAL"}
_PLAIN_SECONDS = re.compile(r"\d+(?:\.\d+)?")


class Settings(BaseSettings):
    """Operator configuration loaded from environment variables.

    All settings have sensible defaults for production use. Override via
    environment variables as documented per field. Interval settings accept
    Go duration strings (``"5m"``, ``"6h"``) or plain seconds.
    """

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Operator identification
    operator_name: str = Field(
        default="jwks-operator",
        description="Name of the operator deployment, used for peering",
        validation_alias="OPERATOR_NAME",
    )
    pod_namespace: str = Field(
        default="jwks-system",
        description="Namespace of the operator pod",
        validation_alias="POD_NAMESPACE",
    )

    # Logging configuration
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        validation_alias="JSON_LOGS",
        description="Enable JSON formatted logging for structured log aggregation",
    )
    correlation_ids: bool = Field(
        default=True,
        validation_alias="CORRELATION_IDS",
        description="Enable correlation IDs in logs for request tracing",
    )
    log_health_probes: bool = Field(
        default=False,
        validation_alias="LOG_HEALTH_PROBES",
        description="Log health probe and metrics requests",
    )

    # Namespace watching
    namespaces: str = Field(
        default="",
        validation_alias="JWKS_OPERATOR_NAMESPACES",
        description="Comma-separated list of namespaces to watch (empty = all namespaces)",
    )

    # Metrics and observability
    metrics_port: int = Field(
        default=8081,
        validation_alias="METRICS_PORT",
        description="Port for Prometheus metrics endpoint",
    )
    metrics_host: str = Field(
        default="0.0.0.0",
        validation_alias="METRICS_HOST",
        description="Host address to bind metrics server",
    )

    # Scheduling defaults (seconds)
    reconcile_interval: float = Field(
        default=300.0,
        validation_alias="RECONCILE_INTERVAL",
        description="Default interval between reconciliations",
    )
    jwks_update_interval: float = Field(
        default=6 * 3600.0,
        validation_alias="JWKS_UPDATE_INTERVAL",
        description="Default interval between full key set regenerations",
    )
    jwks_verification_interval: float = Field(
        default=60.0,
        validation_alias="JWKS_VERIFICATION_INTERVAL",
        description="Default interval between verifications of the served key set",
    )

    # Key rotation defaults
    default_update_strategy: str = Field(
        default="rolling",
        validation_alias="DEFAULT_UPDATE_STRATEGY",
        description="Update strategy used when a resource does not set one",
    )
    default_keep_old_keys: bool = Field(
        default=True,
        validation_alias="DEFAULT_KEEP_OLD_KEYS",
        description="Keep previously published keys during rolling updates",
    )
    max_old_keys: int = Field(
        default=3,
        validation_alias="MAX_OLD_KEYS",
        description="Maximum number of old keys to retain (not enforced yet)",
    )
    old_keys_ttl: float = Field(
        default=720 * 3600.0,
        validation_alias="OLD_KEYS_TTL",
        description="How long old keys are retained (not enforced yet)",
    )
    cleanup_on_delete: bool = Field(
        default=False,
        validation_alias="CLEANUP_ON_DELETE",
        description="Delete the key set and nginx ConfigMaps when a JWKS is deleted",
    )

    # nginx serving workload
    nginx_image: str = Field(
        default=DEFAULT_NGINX_IMAGE,
        validation_alias="NGINX_IMAGE",
        description="Container image used to serve the key set",
    )
    nginx_replicas: int = Field(
        default=DEFAULT_NGINX_REPLICAS,
        validation_alias="NGINX_REPLICAS",
        description="Replica count of the serving deployment",
    )
    nginx_cache_max_age: int = Field(
        default=DEFAULT_CACHE_MAX_AGE,
        validation_alias="NGINX_CACHE_MAX_AGE",
        description="Cache-Control max-age in seconds for the served key set",
    )
    nginx_request_cpu: str = Field(
        default=DEFAULT_REQUEST_CPU, validation_alias="NGINX_REQUEST_CPU"
    )
    nginx_request_memory: str = Field(
        default=DEFAULT_REQUEST_MEMORY, validation_alias="NGINX_REQUEST_MEMORY"
    )
    nginx_limit_cpu: str = Field(
        default=DEFAULT_LIMIT_CPU, validation_alias="NGINX_LIMIT_CPU"
    )
    nginx_limit_memory: str = Field(
        default=DEFAULT_LIMIT_MEMORY, validation_alias="NGINX_LIMIT_MEMORY"
    )

    # Verification of the served key set
    verification_timeout: float = Field(
        default=10.0,
        validation_alias="VERIFICATION_TIMEOUT",
        description="HTTP timeout for fetching the served key set",
    )
    verification_retry_count: int = Field(
        default=3,
        validation_alias="VERIFICATION_RETRY_COUNT",
        description="Verification attempts per pass",
    )
    verification_retry_delay: float = Field(
        default=2.0,
        validation_alias="VERIFICATION_RETRY_DELAY",
        description="Delay between verification attempts",
    )
    verification_context_timeout: float = Field(
        default=30.0,
        validation_alias="VERIFICATION_CONTEXT_TIMEOUT",
        description="Overall time budget for all verification attempts",
    )
    cluster_domain: str = Field(
        default="svc.cluster.local",
        validation_alias="CLUSTER_DOMAIN",
        description="DNS suffix used to reach in-cluster services",
    )

    @field_validator(
        "reconcile_interval",
        "jwks_update_interval",
        "jwks_verification_interval",
        "old_keys_ttl",
        "verification_timeout",
        "verification_retry_delay",
        "verification_context_timeout",
        mode="before",
    )
    @classmethod
    def _parse_interval(cls, value: Any) -> float:
        # Environment values arrive as strings; a bare number means seconds
        if isinstance(value, str) and _PLAIN_SECONDS.fullmatch(value.strip()):
            value = float(value)
        seconds = parse_duration(value)
        if seconds <= 0:
            raise ValueError("interval must be positive")
        return seconds

    @field_validator("default_update_strategy")
    @classmethod
    def _validate_strategy(cls, value: str) -> str:
        if value not in SUPPORTED_STRATEGIES:
            raise ValueError(
                f"update strategy must be one of {', '.join(SUPPORTED_STRATEGIES)}"
            )
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        if value.upper() not in _LOG_LEVELS:
            raise ValueError(f"unknown log level: {value}")
        return value.upper()

    @field_validator("metrics_port")
    @classmethod
    def _validate_port(cls, value: int) -> int:
        if not 1 <= value <= 65535:
            raise ValueError(f"port must be between 1 and 65535, got {value}")
        return value

    @field_validator(
        "nginx_replicas",
        "nginx_cache_max_age",
        "verification_retry_count",
        "max_old_keys",
    )
    @classmethod
    def _validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError(f"must be non-negative, got {value}")
        return value

    @field_validator(
        "nginx_request_cpu",
        "nginx_request_memory",
        "nginx_limit_cpu",
        "nginx_limit_memory",
    )
    @classmethod
    def _validate_quantity(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("resource quantity cannot be empty")
        return value.strip()

    @property
    def watched_namespaces(self) -> list[str] | None:
        """Parse watched namespaces from comma-separated string.

        Returns:
            List of namespace names, or None to watch all namespaces
        """
        if self.namespaces:
            return [ns.strip() for ns in self.namespaces.split(",") if ns.strip()]
        return None


# Global settings instance - initialized once at module import
settings = Settings()
