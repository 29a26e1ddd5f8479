"""Chat data model: identifiers, messages, attachments, chats.

Identifiers are a closed sum type. ClientId values are minted locally for
optimistic records and carry a "temp-" prefix on the wire; ServerId values
come from the backend. Code that reconciles or retries compares ids of the
same kind only.

Server JSON is camelCase; the *_from_json helpers convert it.
"""

from __future__ import annotations

import itertools
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

TEMP_PREFIX = "temp-"

# Roles
USER = "user"
ASSISTANT = "assistant"
SYSTEM = "system"
ROLES = (USER, ASSISTANT, SYSTEM)

# Attachment lifecycle
PENDING = "pending"
UPLOADING = "uploading"
UPLOADED = "uploaded"
ERROR = "error"
ATTACHMENT_STATUSES = (PENDING, UPLOADING, UPLOADED, ERROR)

DEFAULT_CHAT_TITLE = "New Chat"

_counter = itertools.count(1)


@dataclass(frozen=True)
class ClientId:
    """Locally generated identifier of an optimistic record."""

    value: str

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ServerId:
    """Identifier assigned by the backend."""

    value: str

    def __str__(self) -> str:
        return self.value


MessageId = Union[ClientId, ServerId]


def new_client_id(kind: str) -> ClientId:
    """Mint a unique ClientId, e.g. temp-user-1718000000000-3-1a2b3c."""
    millis = int(time.time() * 1000)
    return ClientId(f"{TEMP_PREFIX}{kind}-{millis}-{next(_counter)}-{uuid.uuid4().hex[:6]}")


def parse_id(raw: Any) -> MessageId:
    """Map a raw wire identifier to the right id kind."""
    if isinstance(raw, (ClientId, ServerId)):
        return raw
    text = str(raw)
    if text.startswith(TEMP_PREFIX):
        return ClientId(text)
    return ServerId(text)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp (accepts trailing Z). Falls back to now."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return utcnow()
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return utcnow()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LocalFile:
    """Raw bytes of a file the user selected locally."""

    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")


@dataclass(eq=False)
class Attachment:
    """Attachment metadata. Mutated in place across its lifecycle."""

    id: MessageId
    filename: str
    file_type: str
    file_size: int
    status: str = PENDING
    file: Optional[LocalFile] = None
    preview_url: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def from_local(cls, local: LocalFile, index: int = 0) -> "Attachment":
        return cls(
            id=new_client_id(f"attachment-{index}"),
            filename=local.filename,
            file_type=local.content_type,
            file_size=local.size,
            status=PENDING,
            file=local,
        )

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": str(self.id),
            "filename": self.filename,
            "fileType": self.file_type,
            "fileSize": self.file_size,
            "status": self.status,
        }
        if self.url:
            data["url"] = self.url
        return data


def attachment_from_json(data: Dict[str, Any]) -> Attachment:
    status = data.get("status") or UPLOADED
    if status not in ATTACHMENT_STATUSES:
        status = UPLOADED
    return Attachment(
        id=parse_id(data.get("id", "")),
        filename=data.get("filename", ""),
        file_type=data.get("fileType", "") or "",
        file_size=int(data.get("fileSize", 0) or 0),
        status=status,
        url=data.get("url"),
    )


@dataclass
class Message:
    """A chat message as held by the store."""

    id: MessageId
    chat_id: str
    role: str
    content: str = ""
    model_id: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    is_streaming: bool = False
    is_optimistic: bool = False

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role '{self.role}'")


def message_from_json(data: Dict[str, Any], chat_id: Optional[str] = None) -> Message:
    """Build a Message from a server record."""
    attachments = data.get("attachments") or []
    return Message(
        id=parse_id(data.get("id", "")),
        chat_id=data.get("chatId") or chat_id or "",
        role=data.get("role", ASSISTANT),
        content=data.get("content") or "",
        model_id=data.get("modelId"),
        attachments=[attachment_from_json(a) for a in attachments if isinstance(a, dict)],
        created_at=parse_timestamp(data.get("createdAt")),
        is_streaming=False,
        is_optimistic=False,
    )


@dataclass
class Chat:
    """Chat metadata. Only the id matters to streaming sessions."""

    id: str
    title: str = DEFAULT_CHAT_TITLE
    model_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    message_count: int = 0
    original_chat_id: Optional[str] = None
    is_branched: bool = False
    is_shared: bool = False
    share_id: Optional[str] = None


def chat_from_json(data: Dict[str, Any]) -> Chat:
    return Chat(
        id=str(data.get("id", "")),
        title=data.get("title") or DEFAULT_CHAT_TITLE,
        model_id=data.get("modelId"),
        created_at=parse_timestamp(data.get("createdAt")),
        updated_at=parse_timestamp(data.get("updatedAt")),
        message_count=int(data.get("messageCount", 0) or 0),
        original_chat_id=data.get("originalChatId"),
        is_branched=bool(data.get("isBranched", False)),
        is_shared=bool(data.get("isShared", False)),
        share_id=data.get("shareId"),
    )
