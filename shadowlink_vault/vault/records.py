"""
Vault Records — Plaintext models and their persisted (encrypted) forms.

Every human-readable field is persisted as its own ciphertext + IV pair.
Persisted field names use camelCase so blobs stay compatible with the
backup and cloud formats; legacy names (``timestamp``, ``type``,
``conversationId``) are accepted when reading.
"""
import time
import uuid
from dataclasses import dataclass, field
from typing import Generic, Iterator, Literal, Optional, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

GLOBAL_CONVERSATION = "global"

Role = Literal["user", "model", "system"]
Kind = Literal["text", "audio"]

T = TypeVar("T")


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_record_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class PlainMessage(BaseModel):
    """Decrypted message as seen by callers."""

    id: str = Field(default_factory=new_record_id, min_length=1)
    role: Role
    content: str
    kind: Kind = "text"
    media_payload: Optional[bytes] = None
    created_at: int = Field(default_factory=now_ms)
    expires_at: Optional[int] = None
    conversation: str = GLOBAL_CONVERSATION

    @model_validator(mode="after")
    def validate_expiry(self) -> "PlainMessage":
        """``expires_at`` must lie strictly after ``created_at``."""
        if self.expires_at is not None and self.expires_at <= self.created_at:
            raise ValueError(
                f"expires_at ({self.expires_at}) must be greater than "
                f"created_at ({self.created_at})"
            )
        return self

    @classmethod
    def compose(
        cls,
        role: Role,
        content: str,
        conversation: str = GLOBAL_CONVERSATION,
        kind: Kind = "text",
        media_payload: Optional[bytes] = None,
        ttl: int = 0,
        now: Optional[int] = None,
    ) -> "PlainMessage":
        """Build a new message; a positive ``ttl`` (ms) sets ``expires_at``."""
        created = now_ms() if now is None else now
        return cls(
            role=role,
            content=content,
            kind=kind,
            media_payload=media_payload,
            created_at=created,
            expires_at=created + ttl if ttl > 0 else None,
            conversation=conversation,
        )

    def is_expired(self, now: int) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class EncryptedMessage(BaseModel):
    """Persisted message record."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    role: Role
    iv: str
    ciphertext: str
    kind: Kind = Field(
        default="text",
        validation_alias=AliasChoices("kind", "type"),
    )
    iv_media: Optional[str] = Field(
        default=None,
        alias="ivMedia",
        validation_alias=AliasChoices("ivMedia", "iv_media"),
    )
    ciphertext_media: Optional[str] = Field(
        default=None,
        alias="ciphertextMedia",
        validation_alias=AliasChoices("ciphertextMedia", "ciphertext_media"),
    )
    created_at: int = Field(
        alias="createdAt",
        validation_alias=AliasChoices("createdAt", "created_at", "timestamp"),
    )
    expires_at: Optional[int] = Field(
        default=None,
        alias="expiresAt",
        validation_alias=AliasChoices("expiresAt", "expires_at"),
    )
    conversation: str = Field(
        default=GLOBAL_CONVERSATION,
        validation_alias=AliasChoices("conversation", "conversationId"),
    )

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------

class PlainContact(BaseModel):
    id: str = Field(default_factory=new_record_id, min_length=1)
    name: str
    note: str = ""


class EncryptedContact(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    ciphertext_name: str = Field(alias="ciphertextName")
    iv_name: str = Field(alias="ivName")
    ciphertext_note: str = Field(alias="ciphertextNote")
    iv_note: str = Field(alias="ivNote")

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------

class PlainProfile(BaseModel):
    """User profile; ``id`` is public, nickname and bio are encrypted."""

    id: str = Field(default_factory=new_record_id, min_length=1)
    nickname: str = ""
    bio: Optional[str] = None


class EncryptedProfile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    ciphertext_nickname: str = Field(alias="ciphertextNickname")
    iv_nickname: str = Field(alias="ivNickname")
    ciphertext_bio: Optional[str] = Field(default=None, alias="ciphertextBio")
    iv_bio: Optional[str] = Field(default=None, alias="ivBio")

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Load results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RecordFailure:
    """A persisted record that could not be decrypted or parsed."""

    record_id: Optional[str]
    field: Optional[str]
    reason: str


@dataclass
class DecryptedCollection(Generic[T]):
    """Records that decrypted, plus the ones that did not.

    Iterates over the decrypted items only.
    """

    items: list[T] = field(default_factory=list)
    failures: list[RecordFailure] = field(default_factory=list)

    def __iter__(self) -> Iterator[T]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, idx: int) -> T:
        return self.items[idx]

    @property
    def ok(self) -> bool:
        return not self.failures
