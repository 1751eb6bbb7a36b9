"""Data models shared across the bridge."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class LoginState(str, Enum):
    LOGGED_OUT = "logged_out"
    AWAITING_CREDENTIAL = "awaiting_credential"
    LOGGED_IN = "logged_in"
    EXPIRED = "expired"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VOICE = "voice"
    EMOJI = "emoji"
    APP = "app"
    UNKNOWN = "unknown"


class BridgeStage(str, Enum):
    INITIALIZING = "initializing"
    STARTING_ACCOUNT_TRANSPORT = "starting_account_transport"
    VERIFYING_LOGIN = "verifying_login"
    CONNECTING_GATEWAY = "connecting_gateway"
    SUBSCRIBING_MESSAGES = "subscribing_messages"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


@dataclass
class ImageMetadata:
    aes_key: str | None = None
    thumb_url: str | None = None
    thumb_length: int = 0
    mid_url: str | None = None
    big_url: str | None = None
    length: int = 0
    hd_length: int = 0
    md5: str | None = None

    @property
    def download_length(self) -> int:
        """Byte length to request: the HD size when known, else the normal size."""
        return self.hd_length or self.length


@dataclass
class NormalizedMessage:
    sender_id: str
    recipient_id: str
    raw_content: str
    message_type: MessageType = MessageType.TEXT
    message_id: int | str | None = None
    timestamp: int = 0
    image_metadata: ImageMetadata | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ImageTransfer:
    """In-progress reconstruction of one remote image, keyed by byte offset."""

    message_id: int | str
    total_length: int
    bytes_received: int = 0
    chunks: dict[int, bytes] = field(default_factory=dict)

    def add_chunk(self, offset: int, data: bytes) -> None:
        self.chunks[offset] = data
        self.bytes_received += len(data)

    @property
    def complete(self) -> bool:
        return self.bytes_received >= self.total_length

    def assemble(self) -> bytes:
        return b"".join(self.chunks[offset] for offset in sorted(self.chunks))


@dataclass
class AgentRequest:
    session_key: str
    agent_id: str
    message: str
    attachments: list[dict[str, Any]] = field(default_factory=list)
    deliver: bool = False

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "message": self.message,
            "agentId": self.agent_id,
            "sessionKey": self.session_key,
            "deliver": self.deliver,
        }
        if self.attachments:
            params["attachments"] = self.attachments
        return params


@dataclass
class AgentResponse:
    text: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class SenderRecord:
    sender_id: str
    label: str = ""
    approved_at: datetime = field(default_factory=lambda: datetime.now(UTC))
