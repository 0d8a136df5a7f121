"""Cryptographic primitives used by the envelope, provisioning and session layers."""
