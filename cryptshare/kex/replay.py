"""
Triple-layer anti-replay validator.

Layers
- nonce:      a nonce is accepted once; it is remembered until its expiry
- timestamp:  |now - timestamp| must stay inside the policy window
- sequence:   strictly increasing per conversation (gaps allowed)

Every layer that a message carries must pass, and a layer the policy requires
but the message lacks is itself a rejection. A rejected message commits none
of its side effects.

Expiry is driven by two heaps of (expires_at, key) so that eviction is a
deterministic function of the injected clock, not of timers.
"""

from __future__ import annotations

import contextlib
import heapq
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .encoding import now_ms
from .errors import ReplayRejected
from .events import log_security_event


logger = logging.getLogger(__name__)

MISSING_NONCE = "MISSING_NONCE"
MISSING_TIMESTAMP = "MISSING_TIMESTAMP"
MISSING_SEQUENCE = "MISSING_SEQUENCE"
MISSING_CONVERSATION = "MISSING_CONVERSATION"
INVALID_TIMESTAMP = "INVALID_TIMESTAMP"
INVALID_SEQUENCE = "INVALID_SEQUENCE"
DUPLICATE_NONCE = "DUPLICATE_NONCE"
STALE_TIMESTAMP = "STALE_TIMESTAMP"
SEQUENCE_NOT_INCREASING = "SEQUENCE_NOT_INCREASING"

_LOCK_STRIPES = 64

_REASON_EVENTS = {
    DUPLICATE_NONCE: "REPLAY_ATTACK_NONCE",
    STALE_TIMESTAMP: "REPLAY_ATTACK_TIMESTAMP",
    SEQUENCE_NOT_INCREASING: "REPLAY_ATTACK_SEQUENCE",
}


@dataclass(frozen=True)
class ReplayPolicy:
    """Which layers a message class must carry, and its freshness window."""
    window_ms: int
    require_nonce: bool = True
    require_sequence: bool = True

    @classmethod
    def for_messages(cls, window_ms: int = 5 * 60 * 1000) -> "ReplayPolicy":
        return cls(window_ms=window_ms, require_nonce=True, require_sequence=True)

    @classmethod
    def for_handshake(cls, window_ms: int = 30_000) -> "ReplayPolicy":
        return cls(window_ms=window_ms, require_nonce=True, require_sequence=False)


@dataclass(frozen=True)
class ReplayVerdict:
    accepted: bool
    reasons: tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return self.accepted


@dataclass
class _SequenceState:
    last: int
    expires_at: int


class ReplayValidator:
    """
    Process-wide replay state, injected wherever messages are accepted.

    Sequence state is guarded by a fixed pool of locks striped on the
    conversation id. The nonce table has its own lock, held only for the
    membership test and the insert.
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock

        self._nonces: dict[str, int] = {}
        self._nonce_heap: list[tuple[int, str]] = []
        self._nonce_lock = threading.Lock()

        self._sequences: dict[str, _SequenceState] = {}
        self._sequence_heap: list[tuple[int, str]] = []
        self._sequence_heap_lock = threading.Lock()
        self._conv_locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    # -------------------------------------------------------------------------
    # Checking
    # -------------------------------------------------------------------------

    def check(
        self,
        *,
        nonce: Optional[str],
        timestamp: Optional[int],
        sequence: Optional[int] = None,
        conversation_id: Optional[str] = None,
        policy: ReplayPolicy,
    ) -> ReplayVerdict:
        now = self._clock()
        reasons: list[str] = []

        if timestamp is None:
            reasons.append(MISSING_TIMESTAMP)
        elif not _is_int(timestamp):
            reasons.append(INVALID_TIMESTAMP)
        elif abs(now - timestamp) > policy.window_ms:
            reasons.append(STALE_TIMESTAMP)

        if not nonce:
            if policy.require_nonce:
                reasons.append(MISSING_NONCE)
            nonce = None

        use_sequence = sequence is not None or policy.require_sequence
        if use_sequence:
            if sequence is None:
                reasons.append(MISSING_SEQUENCE)
            elif not _is_int(sequence) or sequence < 0:
                reasons.append(INVALID_SEQUENCE)
            if not conversation_id:
                reasons.append(MISSING_CONVERSATION)

        conv_lock = (
            self._conversation_lock(conversation_id)
            if use_sequence and conversation_id
            else contextlib.nullcontext()
        )
        with conv_lock:
            if nonce is not None:
                with self._nonce_lock:
                    self._evict_nonces(now)
                    if nonce in self._nonces:
                        reasons.append(DUPLICATE_NONCE)

            if use_sequence and conversation_id and _is_int(sequence):
                state = self._sequences.get(conversation_id)
                if state is not None and state.expires_at >= now and sequence <= state.last:
                    reasons.append(SEQUENCE_NOT_INCREASING)

            if reasons:
                return ReplayVerdict(False, tuple(reasons))

            # Commit. Entries live at least as long as the message could still
            # pass the timestamp layer.
            expires_at = max(now, timestamp) + policy.window_ms
            if nonce is not None:
                with self._nonce_lock:
                    if nonce in self._nonces:
                        return ReplayVerdict(False, (DUPLICATE_NONCE,))
                    self._nonces[nonce] = expires_at
                    heapq.heappush(self._nonce_heap, (expires_at, nonce))
            if use_sequence:
                self._sequences[conversation_id] = _SequenceState(sequence, expires_at)
                with self._sequence_heap_lock:
                    heapq.heappush(self._sequence_heap, (expires_at, conversation_id))

        return ReplayVerdict(True)

    def require(
        self,
        *,
        nonce: Optional[str],
        timestamp: Optional[int],
        sequence: Optional[int] = None,
        conversation_id: Optional[str] = None,
        policy: ReplayPolicy,
        peer_id: Optional[str] = None,
    ) -> None:
        """check() that raises ReplayRejected and records the security events."""
        verdict = self.check(
            nonce=nonce,
            timestamp=timestamp,
            sequence=sequence,
            conversation_id=conversation_id,
            policy=policy,
        )
        if verdict:
            return
        for reason in verdict.reasons:
            event = _REASON_EVENTS.get(reason, "INVALID_MESSAGE")
            log_security_event(
                event,
                peer_id=peer_id,
                reason=reason,
                nonce=nonce,
                sequence=sequence,
                conversation=conversation_id,
            )
        raise ReplayRejected(verdict.reasons, peer_id=peer_id)

    # -------------------------------------------------------------------------
    # Expiry and inspection
    # -------------------------------------------------------------------------

    def evict_expired(self) -> int:
        now = self._clock()
        with self._nonce_lock:
            n = self._evict_nonces(now)
        return n + self._evict_sequences(now)

    def last_sequence(self, conversation_id: str) -> Optional[int]:
        state = self._sequences.get(conversation_id)
        return state.last if state is not None else None

    def has_nonce(self, nonce: str) -> bool:
        return nonce in self._nonces

    def stats(self) -> dict:
        return {
            "active_nonces": len(self._nonces),
            "tracked_conversations": len(self._sequences),
        }

    def clear(self) -> None:
        with self._nonce_lock:
            self._nonces.clear()
            self._nonce_heap.clear()
        with self._sequence_heap_lock:
            self._sequences.clear()
            self._sequence_heap.clear()
        logger.debug("replay state cleared")

    def _conversation_lock(self, conversation_id: str) -> threading.Lock:
        # Two conversations may share a stripe; a lock is never held across stripes
        return self._conv_locks[hash(conversation_id) % _LOCK_STRIPES]

    def _evict_nonces(self, now: int) -> int:
        # caller holds _nonce_lock
        evicted = 0
        heap = self._nonce_heap
        while heap and heap[0][0] < now:
            expires_at, nonce = heapq.heappop(heap)
            if self._nonces.get(nonce) == expires_at:
                del self._nonces[nonce]
                evicted += 1
        return evicted

    def _evict_sequences(self, now: int) -> int:
        evicted = 0
        heap = self._sequence_heap
        while True:
            with self._sequence_heap_lock:
                if not heap or heap[0][0] >= now:
                    break
                expires_at, conv = heapq.heappop(heap)
            with self._conversation_lock(conv):
                state = self._sequences.get(conv)
                if state is not None and state.expires_at == expires_at:
                    del self._sequences[conv]
                    evicted += 1
        return evicted


def _is_int(x: object) -> bool:
    return isinstance(x, int) and not isinstance(x, bool)
