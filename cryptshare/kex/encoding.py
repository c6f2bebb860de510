# =============================================================================
# Canonical encoding, key serialization and ECDSA helpers for CryptShare-KEX
# =============================================================================
"""
Every signed handshake field passes through this module:
- base64 for bytes on the wire
- canonical JSON (sorted keys, compact separators) for signing
- P-256 public keys as uncompressed X9.62 points
- ECDSA P-256 over SHA-256, DER signatures
"""

from __future__ import annotations

import base64
import json
import os
import time
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .errors import AuthenticationFailed, ValidationError


CURVE = ec.SECP256R1()
NONCE_BYTES = 16
IV_BYTES = 12
_POINT_BYTES = 65  # 0x04 || X || Y


# =============================================================================
# Encoding and canonical JSON
# =============================================================================

def b64_encode(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


def b64_decode(data: str, *, field: str = "value") -> bytes:
    if not isinstance(data, str) or not data:
        raise ValidationError(f"{field} must be a non-empty base64 string")
    try:
        return base64.b64decode(data.encode("utf-8"), validate=True)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"{field} is not valid base64") from e


def canon_json_bytes(obj: Any) -> bytes:
    # Deterministic serialization for signing and AAD
    return json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")


def sha256(*parts: bytes) -> bytes:
    h = hashes.Hash(hashes.SHA256())
    for p in parts:
        h.update(p)
    return h.finalize()


def now_ms() -> int:
    return int(time.time() * 1000)


def random_nonce(length: int = NONCE_BYTES) -> str:
    return b64_encode(os.urandom(length))


def conversation_id(user_a: str, user_b: str) -> str:
    """
    Order-independent id for a user pair, so both sides share one counter.

    The first id is length-prefixed, so ids that contain the separator
    cannot collide ("a-b" with "c" vs "a" with "b-c").
    """
    lo, hi = sorted((str(user_a), str(user_b)))
    return f"{len(lo)}:{lo}-{hi}"


# =============================================================================
# Public key serialization
# =============================================================================

def serialize_public_key(key: ec.EllipticCurvePublicKey) -> str:
    raw = key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )
    return b64_encode(raw)


def load_public_key(pub_b64: str, *, field: str = "public key") -> ec.EllipticCurvePublicKey:
    raw = b64_decode(pub_b64, field=field)
    if len(raw) != _POINT_BYTES:
        raise ValidationError(f"invalid {field} length")
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, raw)
    except ValueError as e:
        raise ValidationError(f"{field} is not a point on P-256") from e


def ecdh(private_key: ec.EllipticCurvePrivateKey, peer_public: ec.EllipticCurvePublicKey) -> bytes:
    return private_key.exchange(ec.ECDH(), peer_public)


# =============================================================================
# Signatures
# =============================================================================

def sign_bytes(priv_sign: ec.EllipticCurvePrivateKey, data: bytes) -> str:
    return b64_encode(priv_sign.sign(data, ec.ECDSA(hashes.SHA256())))


def verify_bytes(pub_sign: ec.EllipticCurvePublicKey, data: bytes, sig_b64: str) -> None:
    """Raise AuthenticationFailed unless sig_b64 is a valid signature over data."""
    try:
        sig = b64_decode(sig_b64, field="signature")
    except ValidationError as e:
        raise AuthenticationFailed("malformed signature") from e
    try:
        pub_sign.verify(sig, data, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature as e:
        raise AuthenticationFailed("signature verification failed") from e
