import logging

import pytest

import sys, os
target_path = os.path.abspath(os.path.join(os.path.dirname(os.path.abspath(__file__)), "../.."))
if target_path not in sys.path:
    sys.path.insert(0, target_path)

from cryptshare.kex.events import EVENT_SEVERITY, SECURITY_LOGGER, log_security_event


def test_event_severity_and_structured_fields(caplog):
    caplog.set_level(logging.DEBUG, logger=SECURITY_LOGGER)
    log_security_event("KEY_CONFIRMATION_FAILED", peer_id="mallory", role="responder")

    record, = caplog.records
    assert record.levelno == logging.CRITICAL
    assert record.security_event == "KEY_CONFIRMATION_FAILED"
    assert record.peer_id == "mallory"
    assert record.details == {"role": "responder"}


def test_nonces_are_truncated(caplog):
    caplog.set_level(logging.DEBUG, logger=SECURITY_LOGGER)
    nonce = "N" * 24
    log_security_event("KEY_EXCHANGE_INIT", peer_id="bob", nonce=nonce)

    record, = caplog.records
    assert record.details["nonce"] == "N" * 16 + "..."
    assert nonce not in record.getMessage()


@pytest.mark.parametrize("field", ["key", "session_key", "plaintext", "shared_secret"])
def test_sensitive_fields_are_refused(field):
    with pytest.raises(ValueError, match="sensitive"):
        log_security_event("MESSAGE_SENT", peer_id="bob", **{field: "secret"})


def test_unknown_event_is_refused():
    with pytest.raises(ValueError, match="unknown"):
        log_security_event("SOMETHING_ELSE")


def test_attack_events_are_critical():
    for event in ("REPLAY_ATTACK_NONCE", "REPLAY_ATTACK_TIMESTAMP", "REPLAY_ATTACK_SEQUENCE",
                  "SIGNATURE_VERIFICATION_FAILED"):
        assert EVENT_SEVERITY[event] == logging.CRITICAL
