"""
Persistent conversation keys.

ECDH over the two long-term agreement keys, then HKDF-SHA256 with a fixed
domain-separation salt. The result depends only on the unordered user pair,
so either side can recompute it at any time and read history written before
the current process existed.

These keys have no forward secrecy: a leaked long-term agreement key exposes
every message sealed under the conversation key. Live traffic uses the
handshake's SessionKey instead.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .aead import KEY_BYTES, AeadCodec
from .encoding import conversation_id, sha256
from .identity import IdentityKeypair


logger = logging.getLogger(__name__)

_SALT = sha256(b"CryptShare-ConversationKey-v1")
_INFO = b"CryptShare-Conversation"


@dataclass(frozen=True, repr=False)
class ConversationKey:
    key: bytes

    def codec(self) -> AeadCodec:
        return AeadCodec(self.key)

    def __repr__(self) -> str:
        return "ConversationKey(...)"


def derive_conversation_key(
    my_identity: IdentityKeypair,
    peer_agreement_public: ec.EllipticCurvePublicKey,
) -> ConversationKey:
    shared = my_identity.exchange(peer_agreement_public)
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=_SALT,
        info=_INFO,
    )
    return ConversationKey(hkdf.derive(shared))


class ConversationKeyDeriver:
    """Memoizing front for derive_conversation_key(), keyed by canonical pair id."""

    def __init__(self, my_id: str, my_identity: IdentityKeypair):
        self.my_id = my_id
        self._identity = my_identity
        self._cache: dict[str, ConversationKey] = {}
        self._lock = threading.Lock()

    def derive(self, peer_agreement_public: ec.EllipticCurvePublicKey) -> ConversationKey:
        return derive_conversation_key(self._identity, peer_agreement_public)

    def get_or_derive(
        self,
        peer_id: str,
        peer_agreement_public: ec.EllipticCurvePublicKey,
    ) -> ConversationKey:
        cache_key = conversation_id(self.my_id, peer_id)
        with self._lock:
            cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        ck = self.derive(peer_agreement_public)
        with self._lock:
            ck = self._cache.setdefault(cache_key, ck)
        logger.debug("conversation key derived for %s", cache_key)
        return ck

    def cached(self, peer_id: str) -> Optional[ConversationKey]:
        return self._cache.get(conversation_id(self.my_id, peer_id))

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
        logger.info("conversation key cache cleared")
