"""
JWKS Operator - keeps a served JSON Web Key Set in sync with a rotating certificate.

This operator provides:
- Certificate to JWKS generation with deterministic key IDs
- Rolling and immediate key rotation strategies
- An nginx workload that serves the key set inside the cluster
- Continuous end-to-end verification of the served key set
"""

__version__ = "0.1.0"
