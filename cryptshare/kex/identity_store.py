"""
Encrypted identity files.

The file holds both private keys as raw PKCS#8 DER, encrypted with AES-GCM
under a scrypt-derived key. Writes are atomic and chmod 600 best-effort.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .encoding import b64_decode, b64_encode, canon_json_bytes, serialize_public_key
from .errors import DecryptionFailed
from .events import log_security_event
from .identity import IdentityKeypair


logger = logging.getLogger(__name__)

_ID_FILE_VERSION = "cryptshare.id.v1"
_ID_AAD = b"CryptShare.identity.v1"


def _atomic_write_json(path: str, doc: dict, *, mode: int = 0o600) -> None:
    d = os.path.dirname(os.path.abspath(path)) or "."
    os.makedirs(d, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".tmp.", dir=d)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(doc, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
        try:
            os.chmod(path, mode)
        except OSError:
            logger.warning("could not restrict permissions on %s", path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


def _kdf_scrypt(password: bytes, salt: bytes, *, n: int, r: int, p: int) -> bytes:
    return Scrypt(salt=salt, length=32, n=n, r=r, p=p).derive(password)


def _private_der(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _load_private_der(raw: bytes) -> ec.EllipticCurvePrivateKey:
    key = serialization.load_der_private_key(raw, password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ValueError("identity key is not an EC key")
    return key


def save_identity_encrypted(
    path: str,
    password: bytes,
    user_id: str,
    identity: IdentityKeypair,
    *,
    scrypt_n: int = 2**14,
    scrypt_r: int = 8,
    scrypt_p: int = 1,
) -> None:
    if not isinstance(password, (bytes, bytearray)) or len(password) < 8:
        raise ValueError("password must be bytes and should be at least 8 bytes")

    plaintext = canon_json_bytes({
        "user_id": str(user_id),
        "signing_private": b64_encode(_private_der(identity.signing_private)),
        "agreement_private": b64_encode(_private_der(identity.agreement_private)),
    })

    salt = os.urandom(16)
    key = _kdf_scrypt(bytes(password), salt, n=scrypt_n, r=scrypt_r, p=scrypt_p)
    nonce = os.urandom(12)
    ct = AESGCM(key).encrypt(nonce, plaintext, _ID_AAD)

    doc = {
        "v": _ID_FILE_VERSION,
        "kdf": "scrypt",
        "kdf_params": {"n": scrypt_n, "r": scrypt_r, "p": scrypt_p},
        "salt": b64_encode(salt),
        "nonce": b64_encode(nonce),
        "ciphertext": b64_encode(ct),
        # public halves stay readable for directory registration
        "signing_public": serialize_public_key(identity.signing_public),
        "agreement_public": serialize_public_key(identity.agreement_public),
    }
    _atomic_write_json(path, doc, mode=0o600)
    log_security_event("KEY_GENERATION", peer_id=user_id, stored=True)


def load_identity_encrypted(path: str, password: bytes) -> Tuple[str, IdentityKeypair]:
    with open(path, "r", encoding="utf-8") as f:
        doc = json.load(f)

    if doc.get("v") != _ID_FILE_VERSION or doc.get("kdf") != "scrypt":
        raise ValueError("unsupported identity file format")

    params = doc.get("kdf_params") or {}
    key = _kdf_scrypt(
        bytes(password),
        b64_decode(doc["salt"], field="salt"),
        n=int(params.get("n", 2**14)),
        r=int(params.get("r", 8)),
        p=int(params.get("p", 1)),
    )
    try:
        plaintext = AESGCM(key).decrypt(
            b64_decode(doc["nonce"], field="nonce"),
            b64_decode(doc["ciphertext"], field="ciphertext"),
            _ID_AAD,
        )
    except InvalidTag as e:
        raise DecryptionFailed("wrong password or corrupted identity file") from e

    obj = json.loads(plaintext.decode("utf-8"))
    identity = IdentityKeypair(
        signing_private=_load_private_der(b64_decode(obj["signing_private"])),
        agreement_private=_load_private_der(b64_decode(obj["agreement_private"])),
    )
    return obj["user_id"], identity
