"""
Operator error hierarchy with categorization and retry logic.

This module defines the error types used throughout the JWKS operator,
providing clear categorization and integration with kopf's retry mechanisms.
Every failure kind a reconciliation pass can hit has its own class carrying
the status reason it is reported under.
"""

import kopf

from jwks_operator.constants import (
    REASON_CONFIGMAP_UPDATE_FAILED,
    REASON_GENERATION_FAILED,
    REASON_INVALID_CONFIGURATION,
    REASON_NGINX_CONFIG_FAILED,
    REASON_NGINX_DEPLOYMENT_FAILED,
    REASON_NGINX_SERVICE_FAILED,
    REASON_SECRET_NOT_FOUND,
    REASON_VERIFICATION_FAILED,
)


class OperatorError(Exception):
    """
    Base error class for all operator-related exceptions.

    Provides categorization, retry behavior, and user guidance for resolution.
    """

    def __init__(
        self,
        message: str,
        category: str,
        retryable: bool = True,
        delay: int = 30,
        user_action: str | None = None,
        cause: Exception | None = None,
    ):
        """
        Initialize operator error.

        Args:
            message: Human-readable error description
            category: Error category (validation, api, configuration, jwks)
            retryable: Whether the failure is expected to clear up on its own
            delay: Suggested retry delay in seconds
            user_action: What user should do to resolve the issue
            cause: Underlying exception that caused this error
        """
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.delay = delay
        self.user_action = user_action
        self.cause = cause

    def as_kopf_error(self):
        """Convert to appropriate kopf exception type."""
        if self.retryable:
            return kopf.TemporaryError(str(self), delay=self.delay)
        else:
            return kopf.PermanentError(str(self))

    def __str__(self) -> str:
        """Enhanced string representation with user guidance."""
        base_msg = super().__str__()
        if self.user_action:
            return f"{base_msg}\nAction required: {self.user_action}"
        return base_msg


class TemporaryError(OperatorError):
    """Temporary error that should be retried."""

    def __init__(self, message: str, delay: int = 30, user_action: str | None = None):
        super().__init__(
            message=message,
            category="temporary",
            retryable=True,
            delay=delay,
            user_action=user_action
            or "Wait for automatic retry or check system status",
        )


class KubernetesAPIError(OperatorError):
    """Error communicating with Kubernetes API."""

    def __init__(
        self,
        message: str,
        reason: str | None = None,
        retryable: bool = True,
        status: int | None = None,
    ):
        if reason:
            message = f"{message} (reason: {reason})"

        # Some K8s errors are not retryable
        non_retryable_reasons = {"Forbidden", "Unauthorized", "Invalid"}
        if reason in non_retryable_reasons:
            retryable = False

        super().__init__(
            message=f"Kubernetes API error: {message}",
            category="external",
            retryable=retryable,
            delay=60,
            user_action="Check RBAC permissions and cluster connectivity",
        )
        self.status = status


class JWKSError(OperatorError):
    """
    Failure of one reconciliation phase.

    ``reason`` is the status condition reason the failure is reported
    under, ``error_type`` the metrics label it is counted under.
    """

    reason = "ReconciliationFailed"
    error_type = "reconciliation_failed"
    transient = False

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        user_action: str | None = None,
    ):
        super().__init__(
            message=message,
            category="jwks",
            retryable=self.transient,
            delay=30 if self.transient else 60,
            user_action=user_action,
            cause=cause,
        )


class SourceNotFoundError(JWKSError):
    """The certificate secret does not exist (yet)."""

    reason = REASON_SECRET_NOT_FOUND
    error_type = "secret_not_found"
    transient = True


class GenerationFailedError(JWKSError):
    """The key set could not be generated from the certificate."""

    reason = REASON_GENERATION_FAILED
    error_type = "jwks_generation_failed"


class KeySetUpdateFailedError(JWKSError):
    """The key set ConfigMap could not be written."""

    reason = REASON_CONFIGMAP_UPDATE_FAILED
    error_type = "configmap_update_failed"


class ServingConfigUpdateFailedError(JWKSError):
    """The nginx configuration ConfigMap could not be written."""

    reason = REASON_NGINX_CONFIG_FAILED
    error_type = "nginx_config_update_failed"


class ServingWorkloadFailedError(JWKSError):
    """The nginx deployment could not be converged."""

    reason = REASON_NGINX_DEPLOYMENT_FAILED
    error_type = "nginx_deployment_failed"


class ServingEndpointFailedError(JWKSError):
    """The nginx service could not be converged."""

    reason = REASON_NGINX_SERVICE_FAILED
    error_type = "nginx_service_failed"


class VerificationFailedError(JWKSError):
    """The served key set does not prove ownership of the private key."""

    reason = REASON_VERIFICATION_FAILED
    error_type = "jwks_verification_failed"
    transient = True


class InvalidConfigurationError(JWKSError):
    """The resource or operator configuration is not usable."""

    reason = REASON_INVALID_CONFIGURATION
    error_type = "invalid_configuration"

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(
            message,
            cause=cause,
            user_action="Review and correct the JWKS resource specification",
        )


class ArtifactNotFoundError(JWKSError):
    """A derived resource expected to exist is missing."""

    error_type = "artifact_not_found"
    transient = True


class MalformedInputError(JWKSError):
    """PEM or JSON input could not be decoded."""

    reason = REASON_GENERATION_FAILED
    error_type = "malformed_input"


class UnsupportedKeyTypeError(JWKSError):
    """A key uses an algorithm other than RSA."""

    reason = REASON_GENERATION_FAILED
    error_type = "unsupported_key_type"


def is_retryable(error: BaseException) -> bool:
    """Return True when the failure is expected to resolve on a later pass."""
    return isinstance(error, OperatorError) and error.retryable
