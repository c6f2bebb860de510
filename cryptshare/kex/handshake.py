# =============================================================================
# CryptShare-KEX handshake engine
# =============================================================================
"""
Three signed messages establish a confirmed session key per peer:

  initiator                                   responder
  ---------                                   ---------
  initiate():  eph_i, N_i
      ---- KexInit{eph_i, N_i, ts, ids, sig} ---->
                                              on_init(): verify, eph_r, N_r
                                              K = HKDF(ECDH(eph_r, eph_i))
      <--- KexResponse{eph_r, N_r, N_i, ..., sig} --
  on_response(): verify, K = HKDF(ECDH(eph_i, eph_r))
  H = SHA256(K || "CONFIRM" || N_i || N_r || ids)
      ---- KexConfirm{H, ts, ids, sig} ---------->
  K confirmed                                 on_confirm(): recompute H, compare
                                              K confirmed

Key derivation (both sides, fixed nonce order):
  salt = SHA256(N_i || N_r || protocol_version)
  info = "session:<initiator_id>:<responder_id>"
  K    = HKDF-SHA256(ECDH shared secret, salt, info, 32 bytes)

Authentication
- Signing keys always come from the identity directory (or the keys the caller
  passed to initiate()), never from the message.
- Each signature covers the canonical encoding of every other field, so
  substituting an ephemeral key or an identifier breaks verification.

Failure
- AuthenticationFailed / KeyConfirmationFailed abort the attempt for that
  peer and clear pending state.
- A failing signer or transport aborts the attempt with KexError.
- ValidationError and ReplayRejected affect the single message only; a
  message that arrives for an attempt abandoned mid-handler is a
  ValidationError and leaves the store untouched.
- Nothing is retried here; re-initiating always draws a new ephemeral key.
"""

from __future__ import annotations

import asyncio
import contextlib
import hmac
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .aead import KEY_BYTES
from .config import KexSettings
from .directory import IdentityDirectory, _maybe_await, fetch_public_keys
from .encoding import b64_decode, b64_encode, load_public_key, now_ms, random_nonce, sha256, verify_bytes
from .errors import (
    AuthenticationFailed,
    HandshakeCollision,
    HandshakeTimeout,
    KexError,
    KeyConfirmationFailed,
    ValidationError,
)
from .events import log_security_event
from .identity import EphemeralKeypair, IdentityKeypair, PublicKeys
from .messages import KexConfirm, KexInit, KexResponse, parse_message
from .replay import ReplayPolicy, ReplayValidator
from .sessions import PendingHandshake, SessionKey, SessionStore


logger = logging.getLogger(__name__)

SendFn = Callable[[str, dict], Union[None, Awaitable[None]]]
SignFn = Callable[[bytes], Union[str, Awaitable[str]]]


# =============================================================================
# Key schedule
# =============================================================================

def derive_session_key(
    shared_secret: bytes,
    *,
    initiator_nonce: str,
    responder_nonce: str,
    protocol_version: str,
    initiator_id: str,
    responder_id: str,
) -> bytes:
    salt = sha256(
        b64_decode(initiator_nonce, field="initiator nonce"),
        b64_decode(responder_nonce, field="responder nonce"),
        protocol_version.encode("utf-8"),
    )
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        info=f"session:{initiator_id}:{responder_id}".encode("utf-8"),
    )
    return hkdf.derive(shared_secret)


def confirmation_hash(
    session_key: bytes,
    *,
    initiator_nonce: str,
    responder_nonce: str,
    sender_id: str,
    receiver_id: str,
) -> bytes:
    return sha256(
        session_key,
        b"CONFIRM",
        b64_decode(initiator_nonce, field="initiator nonce"),
        b64_decode(responder_nonce, field="responder nonce"),
        sender_id.encode("utf-8"),
        receiver_id.encode("utf-8"),
    )


# =============================================================================
# Engine
# =============================================================================

class HandshakeEngine:
    """
    Per-peer state machine for one local identity.

    initiate() returns a future that resolves to the confirmed SessionKey, or
    raises whatever aborted the attempt. Inbound handshake messages enter via
    handle().
    """

    def __init__(
        self,
        user_id: str,
        identity: IdentityKeypair,
        directory: IdentityDirectory,
        send: SendFn,
        *,
        sessions: Optional[SessionStore] = None,
        replay: Optional[ReplayValidator] = None,
        settings: Optional[KexSettings] = None,
        clock: Callable[[], int] = now_ms,
        signer: Optional[SignFn] = None,
    ):
        if not user_id:
            raise ValueError("user_id must be non-empty")
        self.user_id = str(user_id)
        self.directory = directory
        self.settings = settings or KexSettings()
        self.sessions = sessions or SessionStore(clock=clock)
        self.replay = replay or ReplayValidator(clock=clock)
        self._identity = identity
        self._send = send
        self._sign = signer or identity.sign
        self._clock = clock
        self._policy = ReplayPolicy.for_handshake(self.settings.handshake_window_ms)
        self._waiters: dict[str, asyncio.Future] = {}

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def initiate(self, peer_id: str, peer_keys: Optional[PublicKeys] = None) -> asyncio.Future:
        """
        Send KexInit to peer_id and return the attempt's future.

        - confirmed session already present: an already-resolved future
        - attempt already in flight: the existing future (coalesced)
        """
        peer_id = str(peer_id)
        if not peer_id or peer_id == self.user_id:
            raise ValidationError("cannot open a session with an empty or own id")

        loop = asyncio.get_running_loop()
        session = self.sessions.get(peer_id)
        if session is not None:
            done = loop.create_future()
            done.set_result(session)
            return done

        waiter = self._waiters.get(peer_id)
        if self.sessions.get_pending(peer_id) is not None:
            if waiter is None or waiter.done():
                waiter = self._waiters[peer_id] = loop.create_future()
            return waiter

        waiter = self._waiters[peer_id] = loop.create_future()

        ephemeral = EphemeralKeypair()
        init = KexInit(
            v=self.settings.protocol_version,
            ephemeral_public=ephemeral.public_b64,
            nonce=random_nonce(),
            timestamp=self._clock(),
            sender_id=self.user_id,
            receiver_id=peer_id,
        )
        pending = PendingHandshake(
            role="initiator",
            created_at=self._clock(),
            initiator_nonce=init.nonce,
            peer_keys=peer_keys,
            ephemeral=ephemeral,
        )
        self.sessions.put_pending(peer_id, pending)

        try:
            init = await self._signed(peer_id, init)
            self._ensure_current(peer_id, pending)
            log_security_event("KEY_EXCHANGE_INIT", peer_id=peer_id, nonce=init.nonce)
            await self._transmit(peer_id, init)
        except KexError as e:
            # surfaced through the returned future
            self._abort_attempt(peer_id, e, pending)
            logger.warning("kex_init to peer=%s not sent: %s", peer_id, e)
        return waiter

    async def handle(self, message: Any) -> None:
        """Single entry point for inbound handshake messages."""
        msg = parse_message(message)
        if isinstance(msg, KexInit):
            await self.on_init(msg)
        elif isinstance(msg, KexResponse):
            await self.on_response(msg)
        elif isinstance(msg, KexConfirm):
            await self.on_confirm(msg)
        else:
            raise ValidationError(f"not a handshake message: {msg.type}")

    def abort(self, peer_id: str) -> None:
        """Abandon an in-progress exchange; safe at any state."""
        self.sessions.remove_pending(peer_id)
        waiter = self._waiters.pop(peer_id, None)
        if waiter is not None and not waiter.done():
            waiter.cancel()

    def reset(self) -> None:
        """Drop every pending attempt and confirmed key; in-flight waiters are cancelled."""
        for peer_id in list(self._waiters):
            self.abort(peer_id)
        self.sessions.clear_all()

    def sweep(self) -> list[str]:
        """Evict pending handshakes older than the pending TTL, and stale replay state."""
        expired = self.sessions.evict_expired_pending(self.settings.pending_ttl_ms)
        for peer_id in expired:
            log_security_event("KEY_EXCHANGE_TIMEOUT", peer_id=peer_id)
            self._fail_waiter(peer_id, HandshakeTimeout("pending handshake expired", peer_id=peer_id))
        self.replay.evict_expired()
        return expired

    def in_flight(self, peer_id: str) -> bool:
        return self.sessions.get_pending(peer_id) is not None

    # -------------------------------------------------------------------------
    # Message handlers
    #
    # Every await may interleave with abort(), sweep() or a new initiate();
    # after each one the handler re-checks that its PendingHandshake is still
    # the stored one before reading or clearing it.
    # -------------------------------------------------------------------------

    async def on_init(self, msg: KexInit) -> None:
        peer_id = msg.sender_id
        self._check_envelope(msg)
        keys = await self._keys_for(peer_id, None)
        self._authenticate(msg, keys)
        peer_eph = load_public_key(msg.ephemeral_public, field="ephemeral public key")
        self._gate_replay(msg.nonce, msg)

        pending = self.sessions.get_pending(peer_id)
        if pending is not None and pending.role == "initiator":
            # Simultaneous open: the lower user id keeps the initiator role
            if self.user_id < peer_id:
                raise HandshakeCollision("both sides initiated; keeping initiator role", peer_id=peer_id)
            logger.info("yielding initiator role to peer=%s", peer_id)
            self.sessions.remove_pending(peer_id)

        ephemeral = EphemeralKeypair()
        my_nonce = random_nonce()
        try:
            key = derive_session_key(
                ephemeral.exchange(peer_eph),
                initiator_nonce=msg.nonce,
                responder_nonce=my_nonce,
                protocol_version=self.settings.protocol_version,
                initiator_id=peer_id,
                responder_id=self.user_id,
            )
            response = KexResponse(
                v=self.settings.protocol_version,
                ephemeral_public=ephemeral.public_b64,
                nonce=my_nonce,
                initiator_nonce=msg.nonce,
                timestamp=self._clock(),
                sender_id=self.user_id,
                receiver_id=peer_id,
            )
        finally:
            # The derived key is all the responder needs from here on
            ephemeral.discard()

        superseded = self.sessions.get_pending(peer_id)
        try:
            response = await self._signed(peer_id, response)
        except KexError as e:
            if self.sessions.get_pending(peer_id) is superseded:
                self._abort_attempt(peer_id, e)
            raise
        if self.sessions.get_pending(peer_id) is not superseded:
            # a local initiate() started while we were signing; it wins
            raise ValidationError("handshake attempt was abandoned", peer_id=peer_id)

        responder = PendingHandshake(
            role="responder",
            created_at=self._clock(),
            initiator_nonce=msg.nonce,
            responder_nonce=my_nonce,
            peer_keys=keys,
            unconfirmed_key=key,
        )
        self.sessions.put_pending(peer_id, responder)
        log_security_event("KEY_EXCHANGE_RESPONSE", peer_id=peer_id, nonce=my_nonce)
        try:
            await self._transmit(peer_id, response)
        except KexError as e:
            self._abort_attempt(peer_id, e, responder)
            raise

    async def on_response(self, msg: KexResponse) -> None:
        peer_id = msg.sender_id
        self._check_envelope(msg)
        pending = self.sessions.get_pending(peer_id)
        if pending is None or pending.role != "initiator" or pending.ephemeral is None:
            raise ValidationError("no pending initiator handshake for peer", peer_id=peer_id)
        if not hmac.compare_digest(msg.initiator_nonce, pending.initiator_nonce):
            raise ValidationError("response does not answer the current attempt", peer_id=peer_id)

        keys = await self._keys_for(peer_id, pending.peer_keys, pending)
        self._ensure_current(peer_id, pending)
        self._authenticate(msg, keys, pending)
        peer_eph = load_public_key(msg.ephemeral_public, field="ephemeral public key")
        self._gate_replay(msg.nonce, msg)

        key = derive_session_key(
            pending.ephemeral.exchange(peer_eph),
            initiator_nonce=pending.initiator_nonce,
            responder_nonce=msg.nonce,
            protocol_version=self.settings.protocol_version,
            initiator_id=self.user_id,
            responder_id=peer_id,
        )
        digest = confirmation_hash(
            key,
            initiator_nonce=pending.initiator_nonce,
            responder_nonce=msg.nonce,
            sender_id=self.user_id,
            receiver_id=peer_id,
        )
        confirm = KexConfirm(
            v=self.settings.protocol_version,
            confirmation_hash=b64_encode(digest),
            timestamp=self._clock(),
            sender_id=self.user_id,
            receiver_id=peer_id,
        )
        try:
            confirm = await self._signed(peer_id, confirm)
        except KexError as e:
            self._abort_attempt(peer_id, e, pending)
            raise
        self._ensure_current(peer_id, pending)

        session = SessionKey(
            key=key,
            initiator_nonce=pending.initiator_nonce,
            responder_nonce=msg.nonce,
            role="initiator",
            created_at=self._clock(),
        )
        self.sessions.remove_pending(peer_id)
        self.sessions.put(peer_id, session)
        try:
            await self._transmit(peer_id, confirm)
        except KexError as e:
            if self.sessions.get(peer_id) is session:
                self.sessions.remove(peer_id)
            log_security_event("KEY_EXCHANGE_FAILED", peer_id=peer_id, reason=type(e).__name__)
            self._fail_waiter(peer_id, e)
            raise
        log_security_event("KEY_EXCHANGE_COMPLETE", peer_id=peer_id, role="initiator")
        self._resolve_waiter(peer_id, session)

    async def on_confirm(self, msg: KexConfirm) -> None:
        peer_id = msg.sender_id
        self._check_envelope(msg)
        pending = self.sessions.get_pending(peer_id)
        if pending is None or pending.role != "responder" or pending.unconfirmed_key is None:
            raise ValidationError("no pending responder handshake for peer", peer_id=peer_id)

        keys = await self._keys_for(peer_id, pending.peer_keys, pending)
        self._ensure_current(peer_id, pending)
        self._authenticate(msg, keys, pending)
        self._gate_replay(msg.confirmation_hash, msg)

        expected = confirmation_hash(
            pending.unconfirmed_key,
            initiator_nonce=pending.initiator_nonce,
            responder_nonce=pending.responder_nonce,
            sender_id=peer_id,
            receiver_id=self.user_id,
        )
        if not hmac.compare_digest(expected, b64_decode(msg.confirmation_hash, field="confirmation hash")):
            log_security_event("KEY_CONFIRMATION_FAILED", peer_id=peer_id)
            exc = KeyConfirmationFailed("derived session keys diverged", peer_id=peer_id)
            self._abort_attempt(peer_id, exc, pending)
            raise exc

        session = pending.confirm(self._clock())
        self.sessions.remove_pending(peer_id)
        self.sessions.put(peer_id, session)
        log_security_event("KEY_EXCHANGE_COMPLETE", peer_id=peer_id, role="responder")
        self._resolve_waiter(peer_id, session)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _check_envelope(self, msg) -> None:
        # Single-message checks; nothing here touches pending state
        if msg.v != self.settings.protocol_version:
            raise ValidationError(f"unsupported protocol version: {msg.v}", peer_id=msg.sender_id)
        if msg.receiver_id != self.user_id:
            raise ValidationError("handshake addressed to another user", peer_id=msg.sender_id)
        if msg.sender_id == self.user_id:
            raise ValidationError("handshake claims to come from ourselves")

    def _ensure_current(self, peer_id: str, pending: PendingHandshake) -> None:
        if self.sessions.get_pending(peer_id) is not pending:
            raise ValidationError("handshake attempt was abandoned", peer_id=peer_id)

    async def _keys_for(
        self,
        peer_id: str,
        supplied: Optional[PublicKeys],
        pending: Optional[PendingHandshake] = None,
    ) -> PublicKeys:
        if supplied is not None:
            return supplied
        try:
            return await fetch_public_keys(self.directory, peer_id)
        except AuthenticationFailed as e:
            self._abort_attempt(peer_id, e, pending)
            raise

    def _authenticate(self, msg, keys: PublicKeys, pending: Optional[PendingHandshake] = None) -> None:
        peer_id = msg.sender_id
        age = abs(self._clock() - msg.timestamp)
        if age > self._policy.window_ms:
            log_security_event("REPLAY_ATTACK_TIMESTAMP", peer_id=peer_id, age_ms=age, message=msg.type)
            exc = AuthenticationFailed(f"stale {msg.type} timestamp ({age} ms old)", peer_id=peer_id)
            self._abort_attempt(peer_id, exc, pending)
            raise exc
        try:
            verify_bytes(keys.signing_public, msg.signing_bytes(), msg.signature)
        except AuthenticationFailed as e:
            log_security_event("SIGNATURE_VERIFICATION_FAILED", peer_id=peer_id, message=msg.type)
            e.peer_id = peer_id
            self._abort_attempt(peer_id, e, pending)
            raise

    def _gate_replay(self, nonce: str, msg) -> None:
        self.replay.require(
            nonce=nonce,
            timestamp=msg.timestamp,
            policy=self._policy,
            peer_id=msg.sender_id,
        )

    async def _signed(self, peer_id: str, msg):
        try:
            signature = await _maybe_await(self._sign(msg.signing_bytes()))
        except Exception as e:
            raise KexError(f"signing failed: {e}", peer_id=peer_id) from e
        return msg.with_signature(signature)

    async def _transmit(self, peer_id: str, msg) -> None:
        try:
            await _maybe_await(self._send(peer_id, msg.to_wire()))
        except Exception as e:
            raise KexError(f"transport send failed: {e}", peer_id=peer_id) from e

    def _abort_attempt(
        self,
        peer_id: str,
        exc: KexError,
        pending: Optional[PendingHandshake] = None,
    ) -> None:
        """
        Clear the attempt for peer_id and fail its waiter.

        With pending given, only that attempt is aborted: if it was already
        cleared or replaced, the store and the waiter are left alone.
        """
        current = self.sessions.get_pending(peer_id)
        if pending is not None and current is not pending:
            return
        if current is not None:
            self.sessions.remove_pending(peer_id)
            log_security_event("KEY_EXCHANGE_FAILED", peer_id=peer_id, reason=type(exc).__name__)
        self._fail_waiter(peer_id, exc)

    def _fail_waiter(self, peer_id: str, exc: KexError) -> None:
        waiter = self._waiters.pop(peer_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_exception(exc)

    def _resolve_waiter(self, peer_id: str, session: SessionKey) -> None:
        waiter = self._waiters.pop(peer_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(session)


class PendingSweeper:
    """Periodic engine.sweep() on the running event loop."""

    def __init__(self, engine: HandshakeEngine, interval_s: Optional[float] = None):
        self._engine = engine
        self._interval = interval_s or engine.settings.sweep_interval_s
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self._engine.sweep()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
