# src/chorus_upload/scripts/sign_upload.py
"""
Sign a file for upload.

Prints the content address, the hex signature and the endpoint path to POST
the file to. The signing key is either a hex private scalar or derived from a
seed (the same derivation as the test signer key).
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from cryptography.hazmat.primitives.asymmetric import ec

from chorus_upload.utils.hash import content_address
from chorus_upload.utils.upload_client import (
    private_key_from_seed,
    public_key_hex,
    sign_payload,
    upload_path,
)


def load_private_key(args: argparse.Namespace) -> ec.EllipticCurvePrivateKey:
    """Build the signing key from command line arguments."""
    if args.private_key_hex:
        scalar = int(args.private_key_hex, 16)
        return ec.derive_private_key(scalar, ec.SECP256K1())
    return private_key_from_seed(args.seed)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sign a file for the upload endpoint")
    parser.add_argument("account", help="Ledger account name")
    parser.add_argument("file", type=Path, help="File to sign")
    key_group = parser.add_mutually_exclusive_group()
    key_group.add_argument("--private-key-hex", help="Hex-encoded secp256k1 private scalar")
    key_group.add_argument("--seed", default="", help="Seed for a deterministic key (default: empty)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        data = args.file.read_bytes()
        private_key = load_private_key(args)
    except (OSError, ValueError) as err:
        print(f"error: {err}", file=sys.stderr)
        return 1

    signature_hex = sign_payload(private_key, data)
    print(f"public_key: {public_key_hex(private_key.public_key())}")
    print(f"address:    {content_address(data)}")
    print(f"signature:  {signature_hex}")
    print(f"path:       {upload_path(args.account, signature_hex)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
