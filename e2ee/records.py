"""
Relay record models.

The relay returns loosely shaped JSON documents (optional sub-documents that
may be missing, empty or all-null). They are parsed here into closed pydantic
models; key exchange sessions become a union discriminated on `status`, so
callers handle each of the five states explicitly.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_serializer,
    field_validator,
    model_validator,
)

from .exceptions import CryptoError, InvalidTransitionError
from .primitives import jwk_to_public_key, public_key_to_jwk


STATUS_ORDER = {
    "initiated": 0,
    "responded": 1,
    "confirmed": 2,
    "completed": 3,
}
TERMINAL_STATUSES = ("completed", "abandoned")

Role = Literal["initiator", "responder"]


def check_transition(current: str, new: str):
    """
    Raise InvalidTransitionError unless current -> new moves forward.

    `abandoned` is reachable from every non-terminal status; terminal
    statuses never change.
    """
    if current == new:
        return
    if current in TERMINAL_STATUSES:
        raise InvalidTransitionError(f"Session already {current}, cannot become {new}")
    if new == "abandoned":
        return
    if new not in STATUS_ORDER or current not in STATUS_ORDER:
        raise InvalidTransitionError(f"Unknown status transition {current} -> {new}")
    if STATUS_ORDER[new] < STATUS_ORDER[current]:
        raise InvalidTransitionError(f"Status cannot regress from {current} to {new}")


def _empty_to_none(value: Any) -> Any:
    # Store documents carry empty or all-null sub-documents for absent messages
    if isinstance(value, dict) and all(v is None for v in value.values()):
        return None
    return value


def _key_from_wire(value: Any, curve: str) -> Any:
    # Public keys travel as OKP JWKs and are kept as raw base64 in memory
    if isinstance(value, dict):
        try:
            return jwk_to_public_key(value, curve)
        except CryptoError as e:
            raise ValueError(str(e))
    return value


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class SignedBundle(WireModel):
    """Signed ephemeral public key sent by either side of an exchange"""
    ephemeral_public_key: str = Field(..., alias="ephemeralPubJwk")
    signature: str = Field(..., alias="signatureB64")
    nonce: str = Field(..., alias="nonceB64")
    timestamp: int = Field(..., alias="timestampMs")

    @field_validator("ephemeral_public_key", mode="before")
    @classmethod
    def _ephemeral_from_jwk(cls, value):
        return _key_from_wire(value, "X25519")

    @field_serializer("ephemeral_public_key")
    def _ephemeral_to_jwk(self, value: str) -> Dict:
        return public_key_to_jwk(value, "X25519")


class Confirmation(WireModel):
    """Key confirmation ciphertext relayed between the two parties"""
    iv: str = Field(..., alias="ivB64")
    ciphertext: str = Field(..., alias="ciphertextB64")
    timestamp: int = Field(..., alias="timestampMs")


class Confirmations(WireModel):
    initiator: Optional[Confirmation] = None
    responder: Optional[Confirmation] = None

    @field_validator("initiator", "responder", mode="before")
    @classmethod
    def _normalize(cls, value):
        return _empty_to_none(value)

    def for_role(self, role: str) -> Optional[Confirmation]:
        return self.initiator if role == "initiator" else self.responder


class SessionRecord(WireModel):
    session_id: str = Field(..., alias="sessionId")
    initiator: str = Field(..., alias="initiatorUsername")
    responder: str = Field(..., alias="responderUsername")
    confirmations: Confirmations = Field(default_factory=Confirmations)

    @field_validator("confirmations", mode="before")
    @classmethod
    def _normalize_confirmations(cls, value):
        return value if value is not None else {}

    @model_validator(mode="before")
    @classmethod
    def _normalize_messages(cls, data):
        if isinstance(data, dict):
            data = dict(data)
            for key in ("initMsg", "respMsg", "init_msg", "resp_msg"):
                if key in data:
                    data[key] = _empty_to_none(data[key])
        return data

    def role_of(self, principal: str) -> Optional[str]:
        if principal == self.initiator:
            return "initiator"
        if principal == self.responder:
            return "responder"
        return None

    def peer_of(self, principal: str) -> str:
        return self.responder if principal == self.initiator else self.initiator


class InitiatedSession(SessionRecord):
    status: Literal["initiated"]
    init_msg: SignedBundle = Field(..., alias="initMsg")
    resp_msg: Optional[SignedBundle] = Field(default=None, alias="respMsg")


class RespondedSession(SessionRecord):
    status: Literal["responded"]
    init_msg: SignedBundle = Field(..., alias="initMsg")
    resp_msg: SignedBundle = Field(..., alias="respMsg")


class ConfirmedSession(SessionRecord):
    status: Literal["confirmed"]
    init_msg: SignedBundle = Field(..., alias="initMsg")
    resp_msg: SignedBundle = Field(..., alias="respMsg")

    @model_validator(mode="after")
    def _one_confirmation(self):
        if self.confirmations.initiator is None and self.confirmations.responder is None:
            raise ValueError("confirmed session without any confirmation")
        return self


class CompletedSession(SessionRecord):
    status: Literal["completed"]
    init_msg: SignedBundle = Field(..., alias="initMsg")
    resp_msg: SignedBundle = Field(..., alias="respMsg")

    @model_validator(mode="after")
    def _both_confirmations(self):
        if self.confirmations.initiator is None or self.confirmations.responder is None:
            raise ValueError("completed session requires both confirmations")
        return self


class AbandonedSession(SessionRecord):
    status: Literal["abandoned"]
    init_msg: Optional[SignedBundle] = Field(default=None, alias="initMsg")
    resp_msg: Optional[SignedBundle] = Field(default=None, alias="respMsg")


KeyExchangeSession = Annotated[
    Union[InitiatedSession, RespondedSession, ConfirmedSession, CompletedSession, AbandonedSession],
    Field(discriminator="status"),
]

_session_adapter = TypeAdapter(KeyExchangeSession)


def parse_session(data: Dict) -> KeyExchangeSession:
    """
    Parse a relay session document.

    Raises:
        pydantic.ValidationError: If the document does not match any status variant
    """
    return _session_adapter.validate_python(data)


class ChunkRecord(WireModel):
    index: int
    size: int
    iv: str = Field(..., alias="ivB64")


class FileTransfer(WireModel):
    """File manifest as listed by the relay"""
    file_id: str = Field(..., alias="fileId")
    original_name: str = Field(..., alias="originalName")
    mime_type: str = Field(..., alias="mimeType")
    total_size: int = Field(..., alias="totalSize", ge=0)
    total_chunks: int = Field(..., alias="totalChunks", ge=0)
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    chunks: List[ChunkRecord] = Field(default_factory=list)


class RelayMessage(WireModel):
    """Pending ciphertext as delivered by the message relay"""
    message_id: Optional[str] = Field(default=None, alias="_id")
    session_id: str = Field(..., alias="sessionId")
    iv: str = Field(..., alias="ivB64")
    ciphertext: str = Field(..., alias="ciphertextB64")
    nonce: str = Field(..., alias="nonceB64")
    sequence: int
    timestamp: int = Field(..., alias="timestampMs")


class DirectoryEntry(WireModel):
    principal: str = Field(..., alias="username")
    signing_public_key: str = Field(..., alias="publicSigningKeyJwk")

    @field_validator("signing_public_key", mode="before")
    @classmethod
    def _signing_key_from_jwk(cls, value):
        return _key_from_wire(value, "Ed25519")
