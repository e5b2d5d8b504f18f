"""Tenant API-key issuance, rotation, verification and grace-period sweep."""

from billing_core.credentials.keys import generate_api_key, hash_api_key, key_prefix
from billing_core.credentials.vault import CredentialVault, KeyStatus, RotationResult, SweepResult

__all__ = [
    "CredentialVault",
    "KeyStatus",
    "RotationResult",
    "SweepResult",
    "generate_api_key",
    "hash_api_key",
    "key_prefix",
]
