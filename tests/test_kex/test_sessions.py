import pytest

import sys, os
target_path = os.path.abspath(os.path.join(os.path.dirname(os.path.abspath(__file__)), "../.."))
if target_path not in sys.path:
    sys.path.insert(0, target_path)

from cryptshare.kex import EphemeralKeypair, PendingHandshake, SessionKey, SessionStore
from cryptshare.kex.encoding import random_nonce

from harness import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return SessionStore(clock=clock)


def responder_pending(clock) -> PendingHandshake:
    return PendingHandshake(
        role="responder",
        created_at=clock(),
        initiator_nonce=random_nonce(),
        responder_nonce=random_nonce(),
        unconfirmed_key=os.urandom(32),
    )


def test_only_confirmed_keys_can_be_stored(store, clock):
    with pytest.raises(TypeError):
        store.put("bob", responder_pending(clock))
    assert not store.has("bob")


def test_confirm_promotes_and_forgets_pending_key(store, clock):
    pending = responder_pending(clock)
    key = pending.unconfirmed_key

    session = pending.confirm(clock())
    store.put("alice", session)

    assert isinstance(session, SessionKey)
    assert session.key == key and session.role == "responder"
    assert pending.unconfirmed_key is None
    assert store.get("alice") is session
    assert store.metadata("alice")["peer_id"] == "alice"
    assert "key" not in store.metadata("alice")


def test_initiator_pending_cannot_be_confirmed(clock):
    pending = PendingHandshake(role="initiator", created_at=clock(), initiator_nonce=random_nonce(),
                               ephemeral=EphemeralKeypair())
    with pytest.raises(RuntimeError):
        pending.confirm(clock())


def test_remove_pending_discards_ephemeral(store, clock):
    eph = EphemeralKeypair()
    store.put_pending("bob", PendingHandshake(role="initiator", created_at=clock(),
                                              initiator_nonce=random_nonce(), ephemeral=eph))

    assert store.remove_pending("bob") is not None
    assert eph.discarded
    with pytest.raises(RuntimeError):
        eph.exchange(EphemeralKeypair().public)

    # safe when nothing is pending
    assert store.remove_pending("bob") is None


def test_replacing_pending_discards_previous(store, clock):
    first = EphemeralKeypair()
    store.put_pending("bob", PendingHandshake(role="initiator", created_at=clock(),
                                              initiator_nonce=random_nonce(), ephemeral=first))
    store.put_pending("bob", responder_pending(clock))
    assert first.discarded


def test_evict_expired_pending(store, clock):
    store.put_pending("old", responder_pending(clock))
    clock.advance(50_000)
    store.put_pending("new", responder_pending(clock))
    clock.advance(20_000)

    assert store.evict_expired_pending(60_000) == ["old"]
    assert store.get_pending("old") is None
    assert store.get_pending("new") is not None


def test_clear_all(store, clock):
    store.put("alice", responder_pending(clock).confirm(clock()))
    store.put_pending("bob", responder_pending(clock))

    store.clear_all()
    assert store.active_peers() == []
    assert store.get_pending("bob") is None


def test_session_repr_hides_key(clock):
    session = responder_pending(clock).confirm(clock())
    assert session.key.hex() not in repr(session)
