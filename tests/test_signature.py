import base58
import pytest

from chorus_upload.core.settings import Settings
from chorus_upload.services.signature import (
    PublicKeyError,
    Signature,
    SignatureParseError,
    SignatureVerifier,
    parse_public_key,
    private_key_from_seed,
    public_key_hex,
)
from chorus_upload.utils.hash import sha256_digest
from chorus_upload.utils.upload_client import generate_private_key, sign_digest, sign_payload


@pytest.mark.parametrize(
    "signature_hex",
    [
        "",
        "zz",
        "abc",
        "00" * 64,
        "00" * 66,
        "1f" + "00" * 64,
        "1f" + "ff" * 64,
        "é" * 130,
        "1f" + "gg" * 64,
    ],
)
def test_parse_rejects_malformed_signatures(signature_hex: str) -> None:
    """Malformed signatures surface only as SignatureParseError."""
    with pytest.raises(SignatureParseError):
        SignatureVerifier.parse(signature_hex)


def test_parse_accepts_client_signature() -> None:
    key = generate_private_key()
    signature_hex = sign_payload(key, b"payload")

    signature = SignatureVerifier.parse(signature_hex)

    assert signature.recovery == 31
    assert signature.to_hex() == signature_hex


def test_verify_checks_digest_and_key() -> None:
    key = generate_private_key()
    other = generate_private_key()
    digest = sha256_digest(b"payload")
    signature = sign_digest(key, digest)

    assert SignatureVerifier.verify(signature, digest, key.public_key()) is True
    assert SignatureVerifier.verify(signature, sha256_digest(b"other"), key.public_key()) is False
    assert SignatureVerifier.verify(signature, digest, other.public_key()) is False


def test_test_signer_key_only_accepted_when_enabled() -> None:
    test_key = private_key_from_seed("")
    posting = generate_private_key()
    digest = sha256_digest(b"payload")
    signature = sign_digest(test_key, digest)

    assert SignatureVerifier().verify_any(signature, digest, posting.public_key()) is False
    enabled = SignatureVerifier(test_key.public_key())
    assert enabled.verify_any(signature, digest, posting.public_key()) is True


def test_verifier_from_settings_respects_flag() -> None:
    assert not SignatureVerifier.from_settings(Settings()).test_signer_enabled
    assert SignatureVerifier.from_settings(Settings(ALLOW_TEST_SIGNER_KEY=True)).test_signer_enabled


def test_private_key_from_seed_is_deterministic() -> None:
    first = public_key_hex(private_key_from_seed("seed").public_key())
    second = public_key_hex(private_key_from_seed("seed").public_key())

    assert first == second
    assert first != public_key_hex(private_key_from_seed("").public_key())


def test_parse_public_key_accepts_hex_and_prefixed_base58() -> None:
    key = generate_private_key().public_key()
    point = bytes.fromhex(public_key_hex(key))
    prefixed = "STM" + base58.b58encode(point + b"\x00" * 4).decode()

    assert public_key_hex(parse_public_key(public_key_hex(key))) == public_key_hex(key)
    assert public_key_hex(parse_public_key(prefixed, "STM")) == public_key_hex(key)


@pytest.mark.parametrize("key_text", ["", "zz", "STM111", "05" + "11" * 32, "STM0OIl"])
def test_parse_public_key_rejects_invalid(key_text: str) -> None:
    with pytest.raises(PublicKeyError):
        parse_public_key(key_text, "STM")


def test_signature_hex_roundtrip_preserves_values() -> None:
    signature = Signature(recovery=32, r=12345, s=67890)

    assert Signature.from_hex(signature.to_hex()) == signature
