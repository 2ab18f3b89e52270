"""
Service layer for the JWKS operator.

This module provides the reconciler and the services it drives: key
material parsing, key set generation and rotation, ConfigMap and nginx
management, verification of the served key set and pass scheduling. All of
it is kept separate from the kopf handler layer.
"""

from .base_reconciler import BaseReconciler
from .configmap_manager import ConfigMapManager
from .jwks_reconciler import JWKSReconciler, PassResult
from .nginx_config import NginxConfigGenerator
from .nginx_manager import NginxManager, NginxSettings
from .scheduler import Action, Intervals, ReconciliationScheduler, ScheduleDecision
from .verifier import JWKSVerifier, VerificationResult, VerificationSettings

__all__ = [
    "Action",
    "BaseReconciler",
    "ConfigMapManager",
    "Intervals",
    "JWKSReconciler",
    "JWKSVerifier",
    "NginxConfigGenerator",
    "NginxManager",
    "NginxSettings",
    "PassResult",
    "ReconciliationScheduler",
    "ScheduleDecision",
    "VerificationResult",
    "VerificationSettings",
]
