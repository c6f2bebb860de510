import pytest

import sys, os
target_path = os.path.abspath(os.path.join(os.path.dirname(os.path.abspath(__file__)), "../.."))
if target_path not in sys.path:
    sys.path.insert(0, target_path)

from cryptshare.kex import InMemoryDirectory

from harness import FakeClock, Relay, make_peer


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def directory():
    return InMemoryDirectory()


@pytest.fixture
def relay():
    return Relay()


@pytest.fixture
def alice(directory, relay, clock):
    return make_peer("alice", directory, relay, clock)


@pytest.fixture
def bob(directory, relay, clock):
    return make_peer("bob", directory, relay, clock)
