"""Client-side helpers for producing signed uploads.

These mirror what a wallet does before calling the upload endpoint: hash the
file with SHA-256 and sign the digest with the account's posting key.
"""

from __future__ import annotations

from urllib.parse import quote

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, decode_dss_signature

from chorus_upload.services.signature import (
    DEFAULT_RECOVERY_BYTE,
    Signature,
    private_key_from_seed,
    public_key_hex,
)
from chorus_upload.utils.hash import sha256_digest


def generate_private_key() -> ec.EllipticCurvePrivateKey:
    """Generate a fresh secp256k1 private key."""
    return ec.generate_private_key(ec.SECP256K1())


def sign_digest(private_key: ec.EllipticCurvePrivateKey, digest: bytes) -> Signature:
    """Sign a 32-byte SHA-256 digest."""
    der = private_key.sign(digest, ec.ECDSA(Prehashed(hashes.SHA256())))
    r, s = decode_dss_signature(der)
    return Signature(recovery=DEFAULT_RECOVERY_BYTE, r=r, s=s)


def sign_payload(private_key: ec.EllipticCurvePrivateKey, data: bytes) -> str:
    """Return the hex signature the upload endpoint expects for ``data``."""
    return sign_digest(private_key, sha256_digest(data)).to_hex()


def upload_path(account_name: str, signature_hex: str) -> str:
    """Return the endpoint path for a signed upload."""
    return f"/{quote(account_name)}/{signature_hex}"


__all__ = [
    "generate_private_key",
    "private_key_from_seed",
    "public_key_hex",
    "sign_digest",
    "sign_payload",
    "upload_path",
]
