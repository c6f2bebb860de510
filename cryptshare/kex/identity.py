"""
Long-term identity keys and per-handshake ephemeral keys (NIST P-256).

An identity holds two independent keypairs:
- signing (ECDSA over SHA-256): authenticates handshake messages
- agreement (ECDH): feeds the conversation key derivation
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives.asymmetric import ec

from .encoding import (
    CURVE,
    ecdh,
    load_public_key,
    serialize_public_key,
    sign_bytes,
)


@dataclass(frozen=True)
class PublicKeys:
    """What the identity directory publishes for a user."""
    signing_public: ec.EllipticCurvePublicKey
    agreement_public: ec.EllipticCurvePublicKey

    def to_dict(self) -> dict:
        return {
            "signing_public": serialize_public_key(self.signing_public),
            "agreement_public": serialize_public_key(self.agreement_public),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PublicKeys":
        return cls(
            signing_public=load_public_key(data["signing_public"], field="signing_public"),
            agreement_public=load_public_key(data["agreement_public"], field="agreement_public"),
        )

    def same_as(self, other: "PublicKeys") -> bool:
        return self.to_dict() == other.to_dict()


@dataclass(frozen=True, repr=False)
class IdentityKeypair:
    signing_private: ec.EllipticCurvePrivateKey
    agreement_private: ec.EllipticCurvePrivateKey

    @classmethod
    def generate(cls) -> "IdentityKeypair":
        return cls(
            signing_private=ec.generate_private_key(CURVE),
            agreement_private=ec.generate_private_key(CURVE),
        )

    @property
    def signing_public(self) -> ec.EllipticCurvePublicKey:
        return self.signing_private.public_key()

    @property
    def agreement_public(self) -> ec.EllipticCurvePublicKey:
        return self.agreement_private.public_key()

    def public_keys(self) -> PublicKeys:
        return PublicKeys(self.signing_public, self.agreement_public)

    def sign(self, data: bytes) -> str:
        return sign_bytes(self.signing_private, data)

    def exchange(self, peer_agreement_public: ec.EllipticCurvePublicKey) -> bytes:
        return ecdh(self.agreement_private, peer_agreement_public)

    def __repr__(self) -> str:
        return f"IdentityKeypair(signing_public={serialize_public_key(self.signing_public)[:16]}...)"


class EphemeralKeypair:
    """
    Single-use agreement keypair.

    discard() drops the private half; exchange() afterwards is an error, so a
    finished handshake can never be re-run with the same ephemeral key.
    """

    __slots__ = ("_private", "public")

    def __init__(self, private: Optional[ec.EllipticCurvePrivateKey] = None):
        self._private = private or ec.generate_private_key(CURVE)
        self.public = self._private.public_key()

    @property
    def public_b64(self) -> str:
        return serialize_public_key(self.public)

    @property
    def discarded(self) -> bool:
        return self._private is None

    def exchange(self, peer_public: ec.EllipticCurvePublicKey) -> bytes:
        if self._private is None:
            raise RuntimeError("ephemeral key already discarded")
        return ecdh(self._private, peer_public)

    def discard(self) -> None:
        self._private = None

    def __repr__(self) -> str:
        state = "discarded" if self.discarded else "live"
        return f"EphemeralKeypair({state})"
