"""
Constants used throughout the JWKS operator.

This module defines all constant values used by the operator including:
- Custom resource coordinates and finalizer names
- Resource labels and annotations
- Serving workload defaults
- Status reasons and message templates
"""

# Custom resource coordinates
JWKS_GROUP = "example.com"
JWKS_VERSION = "v1alpha1"
JWKS_PLURAL = "jwks"
JWKS_KIND = "JWKS"

# Finalizer used by the delete handler
JWKS_FINALIZER = "jwks-operator.example.com/cleanup"

# Label constants for resource identification and management
APP_LABEL_KEY = "app"
JWKS_CONFIG_LABEL_KEY = "jwks-config"
MANAGED_BY_LABEL_KEY = "app.kubernetes.io/managed-by"
MANAGED_BY_LABEL_VALUE = "jwks-operator"

# Pod template annotations used to force nginx to reload mounted content
NGINX_CONFIGMAP_HASH_ANNOTATION = "jwks-operator.example.com/nginx-configmap-hash"
JWKS_CONFIGMAP_HASH_ANNOTATION = "jwks-operator.example.com/jwks-configmap-hash"
RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"

# Source secret keys
SECRET_TLS_CERT_KEY = "tls.crt"
SECRET_TLS_KEY_KEY = "tls.key"

# ConfigMap keys
JWKS_CONFIGMAP_KEY = "jwks.json"
NGINX_CONFIGMAP_KEY = "default.conf"

# Serving workload defaults
DEFAULT_NGINX_IMAGE = "nginx:1.25-alpine"
DEFAULT_NGINX_PORT = 80
DEFAULT_NGINX_REPLICAS = 1
DEFAULT_CACHE_MAX_AGE = 3600
NGINX_CONTAINER_NAME = "nginx"
NGINX_CONFIG_VOLUME = "nginx-config"
JWKS_DATA_VOLUME = "jwks-data"
NGINX_CONFIG_MOUNT_PATH = "/etc/nginx/conf.d"
NGINX_HTML_ROOT = "/usr/share/nginx/html"
JWKS_MOUNT_PATH = f"{NGINX_HTML_ROOT}/jwks.json"
LEGACY_DEPLOYMENT_PREFIX = "nginx-"

DEFAULT_REQUEST_CPU = "50m"
DEFAULT_REQUEST_MEMORY = "64Mi"
DEFAULT_LIMIT_CPU = "200m"
DEFAULT_LIMIT_MEMORY = "128Mi"

# Probe settings (path, initial delay, period)
LIVENESS_PROBE_PATH = "/healthz"
LIVENESS_INITIAL_DELAY = 10
LIVENESS_PERIOD = 10
READINESS_PROBE_PATH = "/jwks.json"
READINESS_INITIAL_DELAY = 5
READINESS_PERIOD = 5

# Endpoint served by nginx
DEFAULT_ENDPOINT = "/jwks.json"

# Update strategies
STRATEGY_ROLLING = "rolling"
STRATEGY_IMMEDIATE = "immediate"
SUPPORTED_STRATEGIES = (STRATEGY_ROLLING, STRATEGY_IMMEDIATE)

# JWK parameters
JWK_KEY_TYPE = "RSA"
JWK_USE = "sig"
JWK_KEY_OPS = ["verify"]
JWK_ALGORITHM = "RS512"
KID_LENGTH = 16

# Verification token
VERIFICATION_ISSUER = "jwks-operator-verification"
VERIFICATION_SUBJECT = "test"
VERIFICATION_TOKEN_TTL = 300  # 5 minutes
READINESS_POLL_ATTEMPTS = 5
READINESS_POLL_INTERVAL = 2.0

# Scheduling (in seconds)
FIRST_FAST_DELAY = 10.0
SECOND_FAST_DELAY = 30.0
RESTART_THRESHOLD = 30 * 60
STUCK_COUNTER_WINDOW = 5 * 60
SECRET_MISSING_REQUEUE = 30.0
FAILURE_BACKOFF = 60.0
COUNTER_UPDATE_TIMEOUT = 5.0

# Condition type constants (following Kubernetes conventions)
CONDITION_READY = "Ready"

# Condition status constants
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"

# Status reasons
REASON_RECONCILED = "Reconciled"
REASON_VERIFIED = "JWKSVerified"
REASON_SECRET_NOT_FOUND = "SecretNotFound"
REASON_GENERATION_FAILED = "JWKSGenerationFailed"
REASON_CONFIGMAP_UPDATE_FAILED = "ConfigMapUpdateFailed"
REASON_NGINX_CONFIG_FAILED = "NginxConfigUpdateFailed"
REASON_NGINX_DEPLOYMENT_FAILED = "NginxDeploymentFailed"
REASON_NGINX_SERVICE_FAILED = "NginxServiceFailed"
REASON_VERIFICATION_FAILED = "JWKSVerificationFailed"
REASON_INVALID_CONFIGURATION = "InvalidConfiguration"

# Message templates
SUCCESS_RECONCILIATION = "JWKS successfully updated"
SUCCESS_VERIFICATION = "JWKS served by nginx matches the certificate private key"
ERROR_MISSING_SECRET = "Secret '{}' not found in namespace '{}'"
ERROR_MISSING_SECRET_KEY = "Secret '{}' has no '{}' entry"
