"""
SecureChannel: the surface a messaging client talks to.

- live traffic:  establish_session() then encrypt_for_peer / decrypt_from_peer
                 under the confirmed handshake SessionKey
- history:       encrypt_for_conversation / decrypt_from_conversation under the
                 static ConversationKey, which any device holding the identity
                 can recompute later

Every inbound envelope is decrypted first (the AAD binds routing, nonce,
timestamp and sequence), then gated by the replay validator. A message that
fails either step commits nothing.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Union

from .aead import AeadCodec
from .config import KexSettings
from .conversation import ConversationKeyDeriver
from .directory import IdentityDirectory, fetch_public_keys
from .encoding import b64_decode, b64_encode, conversation_id, now_ms, random_nonce
from .errors import AuthenticationFailed, DecryptionFailed, HandshakeTimeout, NoSession, ValidationError
from .events import log_security_event
from .handshake import HandshakeEngine, PendingSweeper, SendFn
from .identity import IdentityKeypair, PublicKeys
from .messages import AppEnvelope, parse_envelope, parse_message
from .replay import ReplayPolicy, ReplayValidator
from .sessions import SessionKey, SessionStore


logger = logging.getLogger(__name__)

Plaintext = Union[bytes, str]


class SecureChannel:
    def __init__(
        self,
        user_id: str,
        identity: IdentityKeypair,
        directory: IdentityDirectory,
        send: SendFn,
        *,
        settings: Optional[KexSettings] = None,
        sessions: Optional[SessionStore] = None,
        replay: Optional[ReplayValidator] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.settings = settings or KexSettings()
        self.replay = replay or ReplayValidator(clock=clock)
        self.engine = HandshakeEngine(
            user_id,
            identity,
            directory,
            send,
            sessions=sessions or SessionStore(clock=clock),
            replay=self.replay,
            settings=self.settings,
            clock=clock,
        )
        self.user_id = self.engine.user_id
        self.directory = directory
        self.conversations = ConversationKeyDeriver(self.user_id, identity)
        self._clock = clock
        self._policy = ReplayPolicy.for_messages(self.settings.message_window_ms)
        self._outgoing: dict[str, int] = {}
        self._sweeper = PendingSweeper(self.engine)

    @property
    def sessions(self) -> SessionStore:
        return self.engine.sessions

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        self._sweeper.start()

    async def close(self) -> None:
        await self._sweeper.stop()

    async def establish_session(
        self,
        peer_id: str,
        peer_keys: Optional[PublicKeys] = None,
        *,
        timeout: Optional[float] = None,
    ) -> SessionKey:
        waiter = await self.engine.initiate(peer_id, peer_keys)
        if timeout is None:
            return await waiter
        try:
            return await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError as e:
            self.engine.abort(peer_id)
            log_security_event("KEY_EXCHANGE_TIMEOUT", peer_id=peer_id, timeout_s=timeout)
            raise HandshakeTimeout(f"no confirmed session after {timeout}s", peer_id=peer_id) from e

    def logout(self) -> None:
        peers = self.sessions.active_peers()
        self.engine.reset()
        self.conversations.clear()
        self._outgoing.clear()
        log_security_event("SESSION_KEYS_CLEARED", peer_id=None, peers=len(peers))

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    async def handle(self, message: Any) -> Optional[bytes]:
        """Route any inbound wire message. Returns plaintext for application envelopes."""
        msg = parse_message(message)
        if not isinstance(msg, AppEnvelope):
            await self.engine.handle(msg)
            return None
        if msg.key_kind == "conversation":
            return await self.decrypt_from_conversation(msg)
        return await self.decrypt_from_peer(msg)

    # -------------------------------------------------------------------------
    # Session-key traffic
    # -------------------------------------------------------------------------

    async def encrypt_for_peer(self, peer_id: str, plaintext: Plaintext) -> dict:
        session = self.sessions.get(peer_id)
        if session is None:
            raise NoSession("no confirmed session key for peer", peer_id=peer_id)
        return self._seal("session", session.codec(), peer_id, plaintext)

    async def decrypt_from_peer(self, envelope: Any) -> bytes:
        env = self._inbound(envelope, "session")
        session = self.sessions.get(env.sender_id)
        if session is None:
            raise NoSession("no confirmed session key for peer", peer_id=env.sender_id)
        plaintext = self._open(session.codec(), env)
        self._gate(env)
        return plaintext

    # -------------------------------------------------------------------------
    # Conversation-key traffic
    # -------------------------------------------------------------------------

    async def encrypt_for_conversation(self, peer_id: str, plaintext: Plaintext) -> dict:
        ck = await self._conversation_key(peer_id)
        return self._seal("conversation", ck.codec(), peer_id, plaintext)

    async def decrypt_from_conversation(self, envelope: Any, *, check_replay: bool = True) -> bytes:
        """check_replay=False reads stored history, where every message is old by definition."""
        env = self._inbound(envelope, "conversation")
        ck = await self._conversation_key(env.sender_id)
        plaintext = self._open(ck.codec(), env)
        if check_replay:
            self._gate(env)
        return plaintext

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _conversation_key(self, peer_id: str):
        cached = self.conversations.cached(peer_id)
        if cached is not None:
            return cached
        keys = await fetch_public_keys(self.directory, peer_id)
        return self.conversations.get_or_derive(peer_id, keys.agreement_public)

    def _next_sequence(self, peer_id: str) -> int:
        conv = conversation_id(self.user_id, peer_id)
        seq = self._outgoing.get(conv, 0) + 1
        self._outgoing[conv] = seq
        return seq

    def _seal(self, key_kind: str, codec: AeadCodec, peer_id: str, plaintext: Plaintext) -> dict:
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        nonce = random_nonce()
        timestamp = self._clock()
        sequence = self._next_sequence(peer_id)
        aad = AppEnvelope.associated_data(
            key_kind=key_kind,
            sender_id=self.user_id,
            receiver_id=peer_id,
            nonce=nonce,
            timestamp=timestamp,
            sequence=sequence,
        )
        iv, ct = codec.seal(plaintext, aad)
        env = AppEnvelope(
            key_kind=key_kind,
            sender_id=self.user_id,
            receiver_id=peer_id,
            ciphertext=b64_encode(ct),
            iv=b64_encode(iv),
            nonce=nonce,
            timestamp=timestamp,
            sequence=sequence,
        )
        log_security_event("MESSAGE_SENT", peer_id=peer_id, kind=key_kind, sequence=sequence)
        return env.to_wire()

    def _inbound(self, envelope: Any, key_kind: str) -> AppEnvelope:
        env = parse_envelope(envelope)
        if env.key_kind != key_kind:
            raise ValidationError(f"expected a {key_kind} envelope, got {env.key_kind}", peer_id=env.sender_id)
        if env.receiver_id != self.user_id or env.sender_id == self.user_id:
            raise AuthenticationFailed("envelope is not addressed to this user", peer_id=env.sender_id)
        return env

    def _open(self, codec: AeadCodec, env: AppEnvelope) -> bytes:
        try:
            plaintext = codec.open(
                b64_decode(env.iv, field="iv"),
                b64_decode(env.ciphertext, field="ciphertext"),
                env.aad(),
            )
        except DecryptionFailed as e:
            log_security_event("MESSAGE_DECRYPTION_FAILED", peer_id=env.sender_id, kind=env.key_kind)
            e.peer_id = env.sender_id
            raise
        return plaintext

    def _gate(self, env: AppEnvelope) -> None:
        self.replay.require(
            nonce=env.nonce,
            timestamp=env.timestamp,
            sequence=env.sequence,
            conversation_id=conversation_id(env.sender_id, env.receiver_id),
            policy=self._policy,
            peer_id=env.sender_id,
        )
        log_security_event("MESSAGE_RECEIVED", peer_id=env.sender_id, kind=env.key_kind, sequence=env.sequence)
