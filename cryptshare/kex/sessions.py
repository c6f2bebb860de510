"""
In-memory session state, keyed by peer id.

Two kinds of entries, deliberately distinct types:
- PendingHandshake: exists between message 1 and message 3; may hold an
  ephemeral private key (initiator) or derived-but-unconfirmed key bytes
  (responder). It has no AEAD accessor.
- SessionKey: confirmed only. The only session type that yields a codec.

Nothing here is ever persisted. clear_all() runs on logout.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Literal, Optional

from .aead import AeadCodec
from .encoding import now_ms
from .identity import EphemeralKeypair, PublicKeys


logger = logging.getLogger(__name__)

Role = Literal["initiator", "responder"]


@dataclass(frozen=True, repr=False)
class SessionKey:
    key: bytes
    initiator_nonce: str
    responder_nonce: str
    role: Role
    created_at: int

    def codec(self) -> AeadCodec:
        return AeadCodec(self.key)

    def metadata(self) -> dict:
        return {
            "role": self.role,
            "created_at": self.created_at,
            "initiator_nonce": self.initiator_nonce,
            "responder_nonce": self.responder_nonce,
        }

    def __repr__(self) -> str:
        return f"SessionKey(role={self.role!r}, created_at={self.created_at})"


@dataclass(repr=False)
class PendingHandshake:
    role: Role
    created_at: int
    initiator_nonce: str
    responder_nonce: Optional[str] = None
    peer_keys: Optional[PublicKeys] = None
    ephemeral: Optional[EphemeralKeypair] = None
    unconfirmed_key: Optional[bytes] = field(default=None)

    def confirm(self, now: int) -> SessionKey:
        """Turn the responder's unconfirmed key into a SessionKey, then forget it."""
        if self.role != "responder" or self.unconfirmed_key is None or self.responder_nonce is None:
            raise RuntimeError("only a responder's derived key can be confirmed")
        sk = SessionKey(
            key=self.unconfirmed_key,
            initiator_nonce=self.initiator_nonce,
            responder_nonce=self.responder_nonce,
            role="responder",
            created_at=now,
        )
        self.discard()
        return sk

    def discard(self) -> None:
        if self.ephemeral is not None:
            self.ephemeral.discard()
            self.ephemeral = None
        self.unconfirmed_key = None

    def __repr__(self) -> str:
        return f"PendingHandshake(role={self.role!r}, created_at={self.created_at})"


class SessionStore:
    """
    Per-peer dictionaries. Each operation touches one peer's slot only, so
    handshakes with different peers never contend.
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._sessions: dict[str, SessionKey] = {}
        self._pending: dict[str, PendingHandshake] = {}

    # Confirmed keys

    def get(self, peer_id: str) -> Optional[SessionKey]:
        return self._sessions.get(peer_id)

    def has(self, peer_id: str) -> bool:
        return peer_id in self._sessions

    def put(self, peer_id: str, session: SessionKey) -> None:
        if not isinstance(session, SessionKey):
            raise TypeError("only confirmed SessionKey values can be stored")
        self._sessions[peer_id] = session
        logger.debug("session key stored for peer=%s role=%s", peer_id, session.role)

    def remove(self, peer_id: str) -> bool:
        return self._sessions.pop(peer_id, None) is not None

    def active_peers(self) -> list[str]:
        return list(self._sessions)

    def metadata(self, peer_id: str) -> Optional[dict]:
        session = self._sessions.get(peer_id)
        if session is None:
            return None
        return {"peer_id": peer_id, **session.metadata()}

    # Pending handshakes

    def put_pending(self, peer_id: str, pending: PendingHandshake) -> None:
        previous = self._pending.get(peer_id)
        if previous is not None and previous is not pending:
            previous.discard()
        self._pending[peer_id] = pending

    def get_pending(self, peer_id: str) -> Optional[PendingHandshake]:
        return self._pending.get(peer_id)

    def remove_pending(self, peer_id: str) -> Optional[PendingHandshake]:
        """Safe at any state; the removed entry's key material is dropped."""
        pending = self._pending.pop(peer_id, None)
        if pending is not None:
            pending.discard()
        return pending

    def evict_expired_pending(self, max_age_ms: int) -> list[str]:
        cutoff = self._clock() - max_age_ms
        expired = [p for p, st in list(self._pending.items()) if st.created_at < cutoff]
        for peer_id in expired:
            self.remove_pending(peer_id)
            logger.info("expired pending handshake removed: peer=%s", peer_id)
        return expired

    def clear_all(self) -> None:
        for peer_id in list(self._pending):
            self.remove_pending(peer_id)
        self._sessions.clear()
        logger.info("all session keys cleared")
