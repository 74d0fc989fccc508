#!/usr/bin/env python3
"""Generate and rotate RS256 signing keys.

Usage:
    # Single key as environment values (base64: encoded PEM):
    python scripts/generate_keys.py env --kid 2025-01

    # Fresh key-set JSON document (JWT_KEYSET_JSON or the Secrets Manager value):
    python scripts/generate_keys.py keyset --kid 2025-01 --output keyset.json

    # Rotate an existing key set: new active key, old one moved to "previous"
    python scripts/generate_keys.py rotate --input keyset.json --kid 2025-02 --output keyset.json

The previous active key keeps only its public half and gets a retiredAt
timestamp, so tokens it signed still verify until they expire.
"""
from __future__ import annotations

import argparse
import base64
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from berthauth.service.errors import ConfigurationError  # noqa: E402
from berthauth.service.keystore import RotationPolicy, parse_key_set  # noqa: E402

DEFAULT_KEY_BITS = 2048


def generate_key_pair(bits: int = DEFAULT_KEY_BITS) -> Tuple[str, str]:
    """Return (private_pem, public_pem) for a new RSA key."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


def _b64(pem: str) -> str:
    return "base64:" + base64.b64encode(pem.encode()).decode()


def environment_values(kid: str, private_pem: str, public_pem: str) -> Dict[str, str]:
    return {
        "JWT_ACTIVE_KID": kid,
        "JWT_PRIVATE_KEY": _b64(private_pem),
        "JWT_PUBLIC_KEY": _b64(public_pem),
    }


def new_key_set(kid: str, private_pem: str, public_pem: str) -> Dict[str, Any]:
    return {
        "activeKid": kid,
        "keys": {kid: {"publicKey": public_pem, "privateKey": private_pem}},
        "previous": [],
    }


def rotate_key_set(
    document: Dict[str, Any],
    kid: str,
    private_pem: str,
    public_pem: str,
    *,
    retired_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Make ``kid`` the active key and retire the current one."""
    old_kid = document.get("activeKid")
    keys = document.get("keys") or {}
    if not old_kid or old_kid not in keys:
        raise ConfigurationError("input key set has no valid activeKid")
    if kid == old_kid or kid in keys:
        raise ConfigurationError(f"kid '{kid}' is already in the key set")

    retired = (retired_at or datetime.now(timezone.utc)).isoformat().replace("+00:00", "Z")
    previous = [
        entry for entry in document.get("previous") or [] if entry.get("kid") not in keys
    ]
    for old, spec in keys.items():
        entry = {"kid": old, "publicKey": spec["publicKey"]}
        entry["retiredAt"] = spec.get("retiredAt") or retired
        previous.insert(0, entry)

    rotated = {
        "activeKid": kid,
        "keys": {kid: {"publicKey": public_pem, "privateKey": private_pem}},
        "previous": previous,
    }
    # Refuse to write a document the service would reject at boot
    parse_key_set(rotated, policy=RotationPolicy(grace_seconds=None))
    return rotated


def _write(content: str, output: Optional[str]) -> None:
    if output:
        Path(output).write_text(content)
        print(f"Wrote {output}", file=sys.stderr)
    else:
        print(content)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Generate and rotate RS256 signing keys",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    env_parser = subparsers.add_parser("env", help="print a single key as environment values")
    keyset_parser = subparsers.add_parser("keyset", help="print a new key-set JSON document")
    rotate_parser = subparsers.add_parser("rotate", help="rotate an existing key-set JSON document")
    rotate_parser.add_argument("--input", required=True, help="existing key-set JSON file")

    for sub in (env_parser, keyset_parser, rotate_parser):
        sub.add_argument("--kid", required=True, help="key id for the new key")
        sub.add_argument("--bits", type=int, default=DEFAULT_KEY_BITS, help="RSA key size")
        sub.add_argument("--output", help="write to this file instead of stdout")

    args = parser.parse_args(argv)
    if args.bits < DEFAULT_KEY_BITS:
        print(f"Error: --bits must be at least {DEFAULT_KEY_BITS}", file=sys.stderr)
        return 1

    private_pem, public_pem = generate_key_pair(args.bits)
    try:
        if args.command == "env":
            values = environment_values(args.kid, private_pem, public_pem)
            _write("\n".join(f"{name}={value}" for name, value in values.items()), args.output)
        elif args.command == "keyset":
            _write(json.dumps(new_key_set(args.kid, private_pem, public_pem), indent=2), args.output)
        else:
            document = json.loads(Path(args.input).read_text())
            rotated = rotate_key_set(document, args.kid, private_pem, public_pem)
            _write(json.dumps(rotated, indent=2), args.output)
    except (ConfigurationError, OSError, json.JSONDecodeError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
