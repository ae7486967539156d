# src/chorus_upload/services/signature.py
"""Signature parsing and verification for signed uploads.

Uploads are signed with the account's secp256k1 posting key over the SHA-256
digest of the file. Signatures travel as 65 bytes of hex: a recovery byte
followed by the 32-byte ``r`` and ``s`` values.
"""

from __future__ import annotations

import binascii
import hashlib
import logging
from dataclasses import dataclass
from typing import Final

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, encode_dss_signature

from chorus_upload.core.settings import Settings

logger = logging.getLogger(__name__)

SIGNATURE_BYTES: Final[int] = 65
SCALAR_BYTES: Final[int] = 32
COMPRESSED_POINT_BYTES: Final[int] = 33
CHECKSUM_BYTES: Final[int] = 4
SECP256K1_ORDER: Final[int] = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
DEFAULT_RECOVERY_BYTE: Final[int] = 31  # 27 + 4 (compressed key), recovery id 0


class SignatureParseError(ValueError):
    """Raised when a hex signature cannot be decoded into (recovery, r, s)."""


class PublicKeyError(ValueError):
    """Raised when a ledger public key string cannot be decoded."""


@dataclass(frozen=True)
class Signature:
    """Compact secp256k1 signature."""

    recovery: int
    r: int
    s: int

    @classmethod
    def from_hex(cls, signature_hex: str) -> Signature:
        """Decode a 65-byte hex signature.

        Raises:
            SignatureParseError: For any malformed input; no other error escapes.
        """
        if not isinstance(signature_hex, str):
            raise SignatureParseError("Signature must be a hex string")
        try:
            raw = binascii.unhexlify(signature_hex.strip())
        except (binascii.Error, ValueError) as err:
            raise SignatureParseError(f"Invalid hex encoding: {err}") from err

        if len(raw) != SIGNATURE_BYTES:
            raise SignatureParseError(
                f"Signature must be {SIGNATURE_BYTES} bytes, got {len(raw)}"
            )

        r = int.from_bytes(raw[1 : 1 + SCALAR_BYTES], "big")
        s = int.from_bytes(raw[1 + SCALAR_BYTES :], "big")
        if not (0 < r < SECP256K1_ORDER and 0 < s < SECP256K1_ORDER):
            raise SignatureParseError("Signature values out of range")
        return cls(recovery=raw[0], r=r, s=s)

    def to_hex(self) -> str:
        return (
            bytes([self.recovery])
            + self.r.to_bytes(SCALAR_BYTES, "big")
            + self.s.to_bytes(SCALAR_BYTES, "big")
        ).hex()

    @property
    def der(self) -> bytes:
        return encode_dss_signature(self.r, self.s)


def parse_public_key(key_text: str, prefix: str = "STM") -> ec.EllipticCurvePublicKey:
    """Decode a ledger public key.

    Ledger keys are ``<prefix><base58(compressed point + checksum)>``. Plain
    hex-encoded SEC1 points are accepted as well.

    Raises:
        PublicKeyError: If the key is not a valid secp256k1 point.
    """
    cleaned = (key_text or "").strip()
    try:
        if prefix and cleaned.startswith(prefix):
            raw = base58.b58decode(cleaned[len(prefix) :])
            if len(raw) != COMPRESSED_POINT_BYTES + CHECKSUM_BYTES:
                raise PublicKeyError(f"Unexpected public key length {len(raw)}")
            point = raw[:COMPRESSED_POINT_BYTES]
        else:
            point = bytes.fromhex(cleaned)
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), point)
    except PublicKeyError:
        raise
    except ValueError as err:
        raise PublicKeyError(f"Invalid public key {cleaned!r}: {err}") from err


def public_key_hex(public_key: ec.EllipticCurvePublicKey) -> str:
    """Return the compressed SEC1 encoding of a public key as hex."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint,
    ).hex()


def private_key_from_seed(seed: str) -> ec.EllipticCurvePrivateKey:
    """Derive a deterministic private key whose scalar is ``sha256(seed)``."""
    scalar = int.from_bytes(hashlib.sha256(seed.encode("utf-8")).digest(), "big")
    return ec.derive_private_key(scalar, ec.SECP256K1())


class SignatureVerifier:
    """Verify upload signatures against posting keys."""

    def __init__(self, test_signer_key: ec.EllipticCurvePublicKey | None = None) -> None:
        self._test_signer_key = test_signer_key

    @classmethod
    def from_settings(cls, config: Settings) -> SignatureVerifier:
        if not config.allow_test_signer_key:
            return cls()
        logger.warning("Test signer key is enabled; do not use this configuration in production")
        return cls(private_key_from_seed(config.test_signer_seed).public_key())

    @property
    def test_signer_enabled(self) -> bool:
        return self._test_signer_key is not None

    @staticmethod
    def parse(signature_hex: str) -> Signature:
        """Parse a hex signature, raising only :class:`SignatureParseError`."""
        return Signature.from_hex(signature_hex)

    @staticmethod
    def verify(signature: Signature, digest: bytes, public_key: ec.EllipticCurvePublicKey) -> bool:
        """Return True if ``signature`` is valid for the SHA-256 ``digest``."""
        try:
            public_key.verify(signature.der, digest, ec.ECDSA(Prehashed(hashes.SHA256())))
            return True
        except (InvalidSignature, ValueError):
            return False

    def verify_any(
        self,
        signature: Signature,
        digest: bytes,
        posting_key: ec.EllipticCurvePublicKey,
    ) -> bool:
        """Accept the posting key or, when enabled, the test signer key."""
        if self.verify(signature, digest, posting_key):
            return True
        if self._test_signer_key is not None:
            return self.verify(signature, digest, self._test_signer_key)
        return False
