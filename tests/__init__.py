"""
Tests package - Unit test suite for the JWKS operator.

Contains:
- unit/: Unit tests for individual components and end-to-end passes
  against an in-memory resource store
- helpers.py: Certificate builders and the fake resource store
"""
