from .config import KexSettings, PROTOCOL_VERSION
from .errors import (
    KexError,
    ValidationError,
    AuthenticationFailed,
    ReplayRejected,
    KeyConfirmationFailed,
    DecryptionFailed,
    HandshakeTimeout,
    HandshakeCollision,
    NoSession,
    )
from .identity import IdentityKeypair, EphemeralKeypair, PublicKeys
from .identity_store import save_identity_encrypted, load_identity_encrypted
from .directory import IdentityDirectory, InMemoryDirectory, PinningDirectory
from .messages import KexInit, KexResponse, KexConfirm, AppEnvelope, parse_envelope, parse_message
from .replay import ReplayPolicy, ReplayValidator, ReplayVerdict
from .sessions import SessionKey, PendingHandshake, SessionStore
from .conversation import ConversationKey, ConversationKeyDeriver, derive_conversation_key
from .handshake import HandshakeEngine, PendingSweeper, derive_session_key, confirmation_hash
from .channel import SecureChannel
