"""
Error taxonomy for CryptShare-KEX.

Scope of each error:
- ValidationError:        one message, no state mutation
- AuthenticationFailed:   whole handshake attempt, pending state cleared
- ReplayRejected:         one message, never tears down a session
- KeyConfirmationFailed:  whole handshake attempt, critical severity
- DecryptionFailed:       one message, session key stays valid

Nothing here triggers a retry. The caller owns retry policy.
"""

from __future__ import annotations

from typing import Iterable, Optional


class KexError(Exception):
    """Base class for every error raised by the key-exchange layer."""

    def __init__(self, message: str, *, peer_id: Optional[str] = None):
        super().__init__(message)
        self.peer_id = peer_id


class ValidationError(KexError, ValueError):
    """Malformed message or missing field."""


class AuthenticationFailed(KexError):
    """Signature invalid, or the message is not addressed the way it claims."""


class ReplayRejected(KexError):
    """At least one replay layer refused the message."""

    def __init__(self, reasons: Iterable[str], *, peer_id: Optional[str] = None):
        self.reasons = tuple(reasons)
        super().__init__("replay rejected: " + "; ".join(self.reasons), peer_id=peer_id)


class KeyConfirmationFailed(KexError):
    """Signatures were valid but the two sides derived different keys."""


class DecryptionFailed(KexError):
    """AEAD tag mismatch on a single message."""


class HandshakeTimeout(KexError):
    """A pending handshake outlived the pending TTL and was evicted."""


class HandshakeCollision(KexError):
    """Both sides initiated at once and this side keeps the initiator role."""


class NoSession(KexError):
    """No confirmed session key exists for the peer."""
