import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

import sys, os
target_path = os.path.abspath(os.path.join(os.path.dirname(os.path.abspath(__file__)), "../.."))
if target_path not in sys.path:
    sys.path.insert(0, target_path)

from cryptshare.kex import ReplayPolicy, ReplayRejected, ReplayValidator
from cryptshare.kex.encoding import conversation_id, random_nonce
from cryptshare.kex.events import SECURITY_LOGGER
from cryptshare.kex.replay import (
    DUPLICATE_NONCE,
    MISSING_CONVERSATION,
    MISSING_NONCE,
    MISSING_SEQUENCE,
    MISSING_TIMESTAMP,
    SEQUENCE_NOT_INCREASING,
    STALE_TIMESTAMP,
)

from harness import FakeClock

MESSAGES = ReplayPolicy.for_messages()
HANDSHAKE = ReplayPolicy.for_handshake()
CONV = conversation_id("alice", "bob")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def validator(clock):
    return ReplayValidator(clock=clock)


def check(validator, clock, *, seq=None, nonce=None, ts=None, policy=MESSAGES, conv=CONV):
    return validator.check(
        nonce=nonce or random_nonce(),
        timestamp=clock() if ts is None else ts,
        sequence=seq,
        conversation_id=conv,
        policy=policy,
    )


# -----------------------------------------------------------------------------
# Sequence layer
# -----------------------------------------------------------------------------

def test_sequence_equal_is_rejected(validator, clock):
    assert check(validator, clock, seq=5)
    verdict = check(validator, clock, seq=5)
    assert not verdict
    assert verdict.reasons == (SEQUENCE_NOT_INCREASING,)


def test_sequence_lower_is_rejected(validator, clock):
    assert check(validator, clock, seq=5)
    assert not check(validator, clock, seq=3)


def test_sequence_higher_is_accepted_and_gaps_allowed(validator, clock):
    assert check(validator, clock, seq=5)
    assert check(validator, clock, seq=6)
    assert check(validator, clock, seq=40)
    assert validator.last_sequence(CONV) == 40


def test_sequences_are_tracked_per_conversation(validator, clock):
    assert check(validator, clock, seq=5, conv=conversation_id("alice", "bob"))
    assert check(validator, clock, seq=1, conv=conversation_id("alice", "carol"))


def test_conversation_id_is_order_independent():
    assert conversation_id("bob", "alice") == conversation_id("alice", "bob") == "5:alice-bob"


def test_conversation_id_is_unambiguous_with_separator_in_ids():
    assert conversation_id("a-b", "c") != conversation_id("a", "b-c")
    assert conversation_id("x", "1:y") != conversation_id("x:1", "y")


# -----------------------------------------------------------------------------
# Timestamp and nonce layers
# -----------------------------------------------------------------------------

def test_stale_timestamp_rejected_with_fresh_nonce(validator, clock):
    verdict = check(validator, clock, seq=1, ts=clock() - MESSAGES.window_ms - 1_000)
    assert verdict.reasons == (STALE_TIMESTAMP,)


def test_future_timestamp_outside_window_rejected(validator, clock):
    verdict = check(validator, clock, seq=1, ts=clock() + MESSAGES.window_ms + 1)
    assert STALE_TIMESTAMP in verdict.reasons


def test_handshake_window_is_tighter(validator, clock):
    assert not check(validator, clock, ts=clock() - 31_000, policy=HANDSHAKE)
    assert check(validator, clock, ts=clock() - 29_000, policy=HANDSHAKE)


def test_duplicate_nonce_rejected(validator, clock):
    nonce = random_nonce()
    assert check(validator, clock, seq=1, nonce=nonce)
    verdict = check(validator, clock, seq=2, nonce=nonce)
    assert verdict.reasons == (DUPLICATE_NONCE,)


def test_every_failing_layer_is_reported(validator, clock):
    nonce = random_nonce()
    assert check(validator, clock, seq=5, nonce=nonce)
    verdict = check(validator, clock, seq=5, nonce=nonce, ts=clock() - 10 * 60 * 1000)
    assert set(verdict.reasons) == {STALE_TIMESTAMP, DUPLICATE_NONCE, SEQUENCE_NOT_INCREASING}


def test_missing_fields_are_rejections(validator):
    verdict = validator.check(nonce=None, timestamp=None, sequence=None, conversation_id=None, policy=MESSAGES)
    assert set(verdict.reasons) == {MISSING_NONCE, MISSING_TIMESTAMP, MISSING_SEQUENCE, MISSING_CONVERSATION}


def test_handshake_policy_needs_no_sequence(validator, clock):
    assert validator.check(nonce=random_nonce(), timestamp=clock(), policy=HANDSHAKE)


# -----------------------------------------------------------------------------
# Atomicity and expiry
# -----------------------------------------------------------------------------

def test_rejected_message_commits_nothing(validator, clock):
    assert check(validator, clock, seq=5)

    nonce = random_nonce()
    assert not check(validator, clock, seq=4, nonce=nonce)
    assert not validator.has_nonce(nonce)
    assert validator.last_sequence(CONV) == 5

    # the same nonce is still usable by a valid message
    assert check(validator, clock, seq=6, nonce=nonce)


def test_expired_nonces_are_evicted(validator, clock):
    nonce = random_nonce()
    assert validator.check(nonce=nonce, timestamp=clock(), policy=HANDSHAKE)
    assert validator.has_nonce(nonce)

    clock.advance(HANDSHAKE.window_ms + 1)
    assert validator.evict_expired() == 1
    assert not validator.has_nonce(nonce)
    assert validator.stats() == {"active_nonces": 0, "tracked_conversations": 0}


def test_nonce_outlives_its_timestamp_window(validator, clock):
    nonce = random_nonce()
    ts = clock()
    assert validator.check(nonce=nonce, timestamp=ts, policy=HANDSHAKE)

    clock.advance(HANDSHAKE.window_ms)
    verdict = validator.check(nonce=nonce, timestamp=ts, policy=HANDSHAKE)
    assert verdict.reasons == (DUPLICATE_NONCE,)


def test_expired_sequence_state_is_forgotten(validator, clock):
    assert check(validator, clock, seq=9)
    clock.advance(MESSAGES.window_ms + 1)

    assert validator.evict_expired() == 2  # one nonce, one conversation
    assert validator.last_sequence(CONV) is None
    assert check(validator, clock, seq=1)


# -----------------------------------------------------------------------------
# require(): exception and security events
# -----------------------------------------------------------------------------

def test_require_raises_and_logs_critical(validator, clock, caplog):
    caplog.set_level(logging.DEBUG, logger=SECURITY_LOGGER)
    nonce = random_nonce()
    validator.require(nonce=nonce, timestamp=clock(), sequence=1, conversation_id=CONV, policy=MESSAGES)

    with pytest.raises(ReplayRejected) as exc:
        validator.require(nonce=nonce, timestamp=clock(), sequence=2, conversation_id=CONV,
                          policy=MESSAGES, peer_id="alice")

    assert exc.value.reasons == (DUPLICATE_NONCE,)
    assert exc.value.peer_id == "alice"

    records = [r for r in caplog.records if getattr(r, "security_event", None) == "REPLAY_ATTACK_NONCE"]
    assert len(records) == 1
    assert records[0].levelno == logging.CRITICAL
    assert nonce not in records[0].getMessage()


# -----------------------------------------------------------------------------
# Concurrent callers
# -----------------------------------------------------------------------------

def run_together(n_threads, fn):
    barrier = threading.Barrier(n_threads)

    def worker(i):
        barrier.wait()
        return fn(i)

    with ThreadPoolExecutor(max_workers=n_threads) as pool:
        return list(pool.map(worker, range(n_threads)))


def test_same_nonce_from_many_threads_accepted_once(validator, clock):
    nonce = random_nonce()
    ts = clock()

    verdicts = run_together(16, lambda i: validator.check(nonce=nonce, timestamp=ts, policy=HANDSHAKE))

    assert sum(bool(v) for v in verdicts) == 1
    assert all(v.reasons == (DUPLICATE_NONCE,) for v in verdicts if not v)


def test_same_sequence_from_many_threads_accepted_once(validator, clock):
    verdicts = run_together(8, lambda i: check(validator, clock, seq=7))

    assert sum(bool(v) for v in verdicts) == 1
    assert all(v.reasons == (SEQUENCE_NOT_INCREASING,) for v in verdicts if not v)
    assert validator.last_sequence(CONV) == 7


def test_conversation_locks_do_not_grow(validator, clock):
    before = len(validator._conv_locks)
    for i in range(500):
        assert check(validator, clock, seq=1, conv=conversation_id("alice", f"peer{i}"))
    assert len(validator._conv_locks) == before
