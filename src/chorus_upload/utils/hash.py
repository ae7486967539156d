# src/chorus_upload/utils/hash.py
"""Content hashing helpers."""

from __future__ import annotations

import hashlib


def sha256_digest(data: bytes) -> bytes:
    """Return the SHA-256 digest of the supplied data."""
    return hashlib.sha256(data).digest()


def content_address(data: bytes) -> str:
    """Return the hex SHA-256 digest used as the storage key for ``data``."""
    return sha256_digest(data).hex()
