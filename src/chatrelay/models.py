from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class Message:
    role: Role
    content: str
    author_name: str | None = None
    author_id: int | None = None
    timestamp: datetime = field(default_factory=utcnow)
    seq: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "author_name": self.author_name,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class LogEntry:
    level: LogLevel
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    event: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
        }


@dataclass(frozen=True)
class ChannelConfig:
    is_listening: bool = False
    shared_chat: bool = False
    listen_mode: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {
            "is_listening": self.is_listening,
            "shared_chat": self.shared_chat,
            "listen_mode": self.listen_mode,
        }


@dataclass
class ChannelEntry:
    channel_id: int
    guild_id: int
    config: ChannelConfig = field(default_factory=ChannelConfig)


@dataclass
class GuildConfig:
    guild_id: int
    chat_model: str
    system_prompt: str


@dataclass(frozen=True)
class BotStatus:
    running: bool
    enabled: bool

    def to_dict(self) -> dict[str, bool]:
        return {"running": self.running, "enabled": self.enabled}


MENTION_MARKUP = {"user": "<@{}>", "role": "<@&{}>", "channel": "<#{}>"}


@dataclass(frozen=True)
class MentionRef:
    """A user, role or channel mentioned in a message, resolved to its name."""

    kind: str
    entity_id: int
    name: str

    def markup(self) -> str:
        return MENTION_MARKUP[self.kind].format(self.entity_id)


@dataclass(frozen=True)
class ReplyRef:
    author_name: str
    content: str


@dataclass(frozen=True)
class InboundMessage:
    message_id: int
    guild_id: int
    channel_id: int
    author_id: int
    author_name: str
    content: str
    is_self: bool = False
    is_admin: bool = False
    mentions: tuple[MentionRef, ...] = ()
    reply_to: ReplyRef | None = None

    def to_message(self) -> Message:
        return Message(
            role=Role.USER,
            content=self.content,
            author_name=self.author_name,
            author_id=self.author_id,
        )


@dataclass(frozen=True)
class InboundCommand:
    name: str
    options: dict[str, Any]
    guild_id: int
    channel_id: int
    user_id: int
    user_name: str = ""
    is_admin: bool = False
