"""
Handlers package - Contains the Kopf handlers for JWKS resources.

- jwks.py: per-resource reconciliation daemon, change wake-ups and deletion
"""
