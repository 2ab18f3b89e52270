"""
Utility modules for the JWKS operator.

- durations: Go-style duration parsing and status timestamps
- kubernetes: client configuration and the async resource store
- retry: fixed-delay retry for awaitables
"""
