# reverify/tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Caller identity (who is the subject / officer behind a request) is issued by
# the login system, which is outside this service. The two agree on a compact
# signed token:
#
#     id1.<payload_b64url>.<signature_b64url>
#
# Where:
#   - payload is canonical JSON (sorted keys, no whitespace)
#   - signature = Ed25519.sign(payload_bytes)
#
# Claims:
#   sub         subject or officer identifier
#   role        "subject" | "officer" | "admin"
#   name        display name (used as the WebAuthn user display name)
#   issued_at   epoch seconds
#   expires_at  epoch seconds
#
# This module only signs and checks signatures. Claim semantics (expiry,
# roles) are enforced in identity.py.
# -----------------------------------------------------------------------------

import base64
import json
from typing import Tuple

from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat

TOKEN_PREFIX = "id1"


def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 WITHOUT padding (header friendly)."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """
    Decode URL-safe Base64 with optional missing padding.

    Padding is restored automatically to allow lenient decoding.
    """
    s = str(s).strip()
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s.encode("ascii"))


# -----------------------------------------------------------------------------
# Key loading
# -----------------------------------------------------------------------------
def load_ed25519_private_key_from_b64(sk_b64: str) -> Ed25519PrivateKey:
    """
    Load a raw Ed25519 private key from Base64.

    The key MUST be exactly 32 bytes (raw Ed25519 seed): no PEM, no headers.
    """
    raw = base64.b64decode(sk_b64.strip(), validate=True)
    if len(raw) != 32:
        raise ValueError("Ed25519 raw private key must be 32 bytes (base64 of 32 bytes)")
    return Ed25519PrivateKey.from_private_bytes(raw)


def generate_ed25519_key_b64() -> str:
    sk = Ed25519PrivateKey.generate()
    raw = sk.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
    return base64.b64encode(raw).decode("ascii")


# -----------------------------------------------------------------------------
# Wire format
# -----------------------------------------------------------------------------
def encode_token(payload_bytes: bytes, sig: bytes) -> str:
    return f"{TOKEN_PREFIX}." + b64url_encode(payload_bytes) + "." + b64url_encode(sig)


def decode_token(token: str) -> Tuple[bytes, bytes]:
    """
    Parse a token into payload bytes and signature.

    Format validation only; cryptographic verification happens separately.
    """
    parts = str(token).split(".")
    if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
        raise ValueError("bad token format")

    payload_bytes = b64url_decode(parts[1])
    sig = b64url_decode(parts[2])
    return payload_bytes, sig


def canonical_json(payload_obj: dict) -> bytes:
    return json.dumps(payload_obj, separators=(",", ":"), sort_keys=True).encode("utf-8")


def sign_token(sk: Ed25519PrivateKey, payload_obj: dict) -> str:
    payload_bytes = canonical_json(payload_obj)
    return encode_token(payload_bytes, sk.sign(payload_bytes))


def verify_token(pk: Ed25519PublicKey, token: str) -> dict:
    """
    Verify a token and return its decoded payload.

    Raises:
      - ValueError / InvalidSignature on failure

    Callers MUST validate claims themselves.
    """
    payload_bytes, sig = decode_token(token)
    pk.verify(sig, payload_bytes)
    obj = json.loads(payload_bytes.decode("utf-8"))
    if not isinstance(obj, dict):
        raise ValueError("token payload must be an object")
    return obj
