"""
Security event logging.

Events go to the "cryptshare.security" logger with a fixed severity per event
type. Callers pass identifiers and short diagnostics only: plaintext, keys and
raw shared secrets must never reach a log record.
"""

from __future__ import annotations

import logging
from typing import Any, Optional


SECURITY_LOGGER = "cryptshare.security"

logger = logging.getLogger(SECURITY_LOGGER)

# Event type -> severity
EVENT_SEVERITY: dict[str, int] = {
    # Key management
    "KEY_GENERATION": logging.INFO,
    "KEY_EXCHANGE_INIT": logging.INFO,
    "KEY_EXCHANGE_RESPONSE": logging.INFO,
    "KEY_EXCHANGE_COMPLETE": logging.INFO,
    "KEY_EXCHANGE_FAILED": logging.WARNING,
    "KEY_EXCHANGE_TIMEOUT": logging.WARNING,
    "KEY_CONFIRMATION_FAILED": logging.CRITICAL,
    "SESSION_KEYS_CLEARED": logging.INFO,
    "IDENTITY_KEY_CHANGED": logging.CRITICAL,
    # Messaging
    "MESSAGE_SENT": logging.DEBUG,
    "MESSAGE_RECEIVED": logging.DEBUG,
    "MESSAGE_DECRYPTION_FAILED": logging.ERROR,
    # Attacks
    "REPLAY_ATTACK_NONCE": logging.CRITICAL,
    "REPLAY_ATTACK_TIMESTAMP": logging.CRITICAL,
    "REPLAY_ATTACK_SEQUENCE": logging.CRITICAL,
    "SIGNATURE_VERIFICATION_FAILED": logging.CRITICAL,
    "INVALID_MESSAGE": logging.WARNING,
}

# Detail keys that may never be logged
_FORBIDDEN_KEYS = frozenset({
    "key", "session_key", "private_key", "shared_secret", "plaintext", "password",
})

_NONCE_PREFIX = 16


def log_security_event(
    event: str,
    *,
    peer_id: Optional[str] = None,
    **details: Any,
) -> None:
    if event not in EVENT_SEVERITY:
        raise ValueError(f"unknown security event: {event}")
    leaked = _FORBIDDEN_KEYS.intersection(details)
    if leaked:
        raise ValueError(f"refusing to log sensitive fields: {sorted(leaked)}")

    safe = {k: _short(k, v) for k, v in sorted(details.items())}
    logger.log(
        EVENT_SEVERITY[event],
        "%s peer=%s %s",
        event,
        peer_id or "-",
        " ".join(f"{k}={v}" for k, v in safe.items()),
        extra={"security_event": event, "peer_id": peer_id, "details": safe},
    )


def _short(name: str, value: Any) -> Any:
    if "nonce" in name and isinstance(value, str) and len(value) > _NONCE_PREFIX:
        return value[:_NONCE_PREFIX] + "..."
    return value
