"""
Error handling module for the JWKS operator.

This module provides the error hierarchy that integrates with kopf
and classifies reconciliation failures by kind and retryability.
"""

from .operator_errors import (
    ArtifactNotFoundError,
    GenerationFailedError,
    InvalidConfigurationError,
    JWKSError,
    KeySetUpdateFailedError,
    KubernetesAPIError,
    MalformedInputError,
    OperatorError,
    ServingConfigUpdateFailedError,
    ServingEndpointFailedError,
    ServingWorkloadFailedError,
    SourceNotFoundError,
    TemporaryError,
    UnsupportedKeyTypeError,
    VerificationFailedError,
    is_retryable,
)

__all__ = [
    "OperatorError",
    "TemporaryError",
    "KubernetesAPIError",
    "JWKSError",
    "SourceNotFoundError",
    "GenerationFailedError",
    "KeySetUpdateFailedError",
    "ServingConfigUpdateFailedError",
    "ServingWorkloadFailedError",
    "ServingEndpointFailedError",
    "VerificationFailedError",
    "InvalidConfigurationError",
    "ArtifactNotFoundError",
    "MalformedInputError",
    "UnsupportedKeyTypeError",
    "is_retryable",
]
