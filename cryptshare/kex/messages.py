"""
Wire messages for CryptShare-KEX.

Handshake messages form a tagged union on "type":
  kex_init -> kex_response -> kex_confirm
Application data travels in AppEnvelope ("message").

Wire field names are camelCase (senderId, ephemeralPublic, ...). Unknown
routing fields added by a relay are ignored and never signed.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .encoding import IV_BYTES, NONCE_BYTES, b64_decode, canon_json_bytes
from .errors import ValidationError


def _check_b64_len(value: str, n: int, name: str) -> str:
    if len(b64_decode(value, field=name)) != n:
        raise ValueError(f"{name} must encode {n} bytes")
    return value


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        strict=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class _SignedMessage(_WireModel):
    v: str = Field(min_length=1)
    timestamp: int
    sender_id: str = Field(min_length=1)
    receiver_id: str = Field(min_length=1)
    signature: str = ""

    def signing_bytes(self) -> bytes:
        """Canonical encoding of every field except the signature itself."""
        return canon_json_bytes(self.model_dump(by_alias=True, exclude={"signature"}))

    def with_signature(self, signature: str):
        return self.model_copy(update={"signature": signature})


class KexInit(_SignedMessage):
    type: Literal["kex_init"] = "kex_init"
    ephemeral_public: str = Field(min_length=1)
    nonce: str

    @field_validator("nonce")
    @classmethod
    def _nonce_len(cls, v: str) -> str:
        return _check_b64_len(v, NONCE_BYTES, "nonce")


class KexResponse(_SignedMessage):
    type: Literal["kex_response"] = "kex_response"
    ephemeral_public: str = Field(min_length=1)
    nonce: str
    initiator_nonce: str

    @field_validator("nonce", "initiator_nonce")
    @classmethod
    def _nonce_len(cls, v: str) -> str:
        return _check_b64_len(v, NONCE_BYTES, "nonce")


class KexConfirm(_SignedMessage):
    type: Literal["kex_confirm"] = "kex_confirm"
    confirmation_hash: str

    @field_validator("confirmation_hash")
    @classmethod
    def _hash_len(cls, v: str) -> str:
        return _check_b64_len(v, 32, "confirmation_hash")


class AppEnvelope(_WireModel):
    type: Literal["message"] = "message"
    key_kind: Literal["session", "conversation"] = "session"
    sender_id: str = Field(min_length=1)
    receiver_id: str = Field(min_length=1)
    ciphertext: str = Field(min_length=1)
    iv: str
    nonce: str
    timestamp: int
    sequence: int = Field(ge=0)

    @field_validator("iv")
    @classmethod
    def _iv_len(cls, v: str) -> str:
        return _check_b64_len(v, IV_BYTES, "iv")

    @field_validator("nonce")
    @classmethod
    def _nonce_len(cls, v: str) -> str:
        return _check_b64_len(v, NONCE_BYTES, "nonce")

    @staticmethod
    def associated_data(
        *,
        key_kind: str,
        sender_id: str,
        receiver_id: str,
        nonce: str,
        timestamp: int,
        sequence: int,
    ) -> bytes:
        # Binds routing and replay fields to the ciphertext
        return canon_json_bytes({
            "type": "message",
            "keyKind": key_kind,
            "senderId": sender_id,
            "receiverId": receiver_id,
            "nonce": nonce,
            "timestamp": timestamp,
            "sequence": sequence,
        })

    def aad(self) -> bytes:
        return self.associated_data(
            key_kind=self.key_kind,
            sender_id=self.sender_id,
            receiver_id=self.receiver_id,
            nonce=self.nonce,
            timestamp=self.timestamp,
            sequence=self.sequence,
        )


WireMessage = Union[KexInit, KexResponse, KexConfirm, AppEnvelope]

_WIRE_ADAPTER: TypeAdapter = TypeAdapter(
    Annotated[WireMessage, Field(discriminator="type")]
)


def parse_message(data: Any) -> WireMessage:
    """Parse a wire dict (or pass through a model). Raises ValidationError."""
    if isinstance(data, (KexInit, KexResponse, KexConfirm, AppEnvelope)):
        return data
    if not isinstance(data, dict):
        raise ValidationError("message must be a dict")
    try:
        return _WIRE_ADAPTER.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError(f"malformed {data.get('type', 'unknown')} message: {e.error_count()} error(s)") from e


def parse_envelope(data: Any) -> AppEnvelope:
    """Parse an application envelope; handshake messages are rejected."""
    msg = parse_message(data)
    if not isinstance(msg, AppEnvelope):
        raise ValidationError("expected an application envelope")
    return msg
