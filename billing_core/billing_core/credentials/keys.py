"""API-key material: generation, bcrypt hashing and display prefixes.

Key format: ``lh_`` followed by 32 random bytes in hex (67 characters).
Only the bcrypt hash and the first 8 characters are ever stored.
"""

from __future__ import annotations

import secrets

import bcrypt

API_KEY_PREFIX = "lh_"
KEY_BYTES = 32
PREFIX_LENGTH = 8

# Fixed adaptive cost factor.  Raising it invalidates nothing (bcrypt hashes
# carry their own cost) but slows every verification.
BCRYPT_ROUNDS = 10

# bcrypt only looks at the first 72 bytes of its input.
_BCRYPT_MAX_BYTES = 72

_dummy_hash: bytes | None = None


def generate_api_key() -> str:
    """Return a fresh plaintext key from the OS CSPRNG."""
    return API_KEY_PREFIX + secrets.token_hex(KEY_BYTES)


def hash_api_key(api_key: str) -> str:
    """Return the salted bcrypt hash of *api_key* as text."""
    return bcrypt.hashpw(api_key.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("ascii")


def key_prefix(api_key: str) -> str:
    """Return the non-secret display prefix of *api_key*."""
    return api_key[:PREFIX_LENGTH]


def check_api_key(candidate: str, hashed: str | None) -> bool:
    """Compare *candidate* against a stored bcrypt hash.

    When *hashed* is ``None`` a comparison against a throwaway hash is still
    performed, so the call costs the same whether or not a key exists.
    Malformed hashes and oversized candidates compare as a mismatch.
    """
    global _dummy_hash  # noqa: PLW0603
    raw = candidate.encode("utf-8")
    if len(raw) > _BCRYPT_MAX_BYTES:
        return False
    if hashed is None:
        if _dummy_hash is None:
            _dummy_hash = bcrypt.hashpw(b"dummy-api-key", bcrypt.gensalt(rounds=BCRYPT_ROUNDS))
        bcrypt.checkpw(raw, _dummy_hash)
        return False
    try:
        return bcrypt.checkpw(raw, hashed.encode("ascii"))
    except ValueError:
        return False
