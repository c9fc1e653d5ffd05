from __future__ import annotations

import asyncio
import dataclasses
from typing import Any, Mapping

from chatrelay.config import Settings
from chatrelay.errors import ConfigError
from chatrelay.models import ChannelConfig, ChannelEntry, GuildConfig, InboundMessage
from chatrelay.services.log_broadcaster import LogBroadcaster
from chatrelay.services.message_store import MessageStore
from chatrelay.storage import MessagePackStore


CHANNEL_FLAGS = ("is_listening", "shared_chat", "listen_mode")


class ChannelRegistry:
    def __init__(self, settings: Settings, store: MessagePackStore, logger: LogBroadcaster) -> None:
        self.settings = settings
        self.store = store
        self.logger = logger
        self._guilds: dict[int, GuildConfig] = {}
        self._channels: dict[int, ChannelEntry] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    def hydrate(self) -> None:
        self._guilds.clear()
        self._channels.clear()
        for key, row in self.store.data.get("guilds", {}).items():
            guild_id = _to_id(key)
            if guild_id is None or not isinstance(row, dict):
                continue
            self._guilds[guild_id] = GuildConfig(
                guild_id=guild_id,
                chat_model=str(row.get("chat_model") or self.settings.chat_model),
                system_prompt=str(row.get("system_prompt") or self.settings.system_prompt),
            )
        for key, row in self.store.data.get("channels", {}).items():
            channel_id = _to_id(key)
            if channel_id is None or not isinstance(row, dict):
                continue
            guild_id = _to_id(row.get("guild_id"))
            if guild_id is None:
                continue
            self._ensure_guild(guild_id, persist=False)
            config = ChannelConfig(**{flag: bool(row.get(flag, False)) for flag in CHANNEL_FLAGS})
            self._channels[channel_id] = ChannelEntry(channel_id=channel_id, guild_id=guild_id, config=config)

    def lock(self, channel_id: int) -> asyncio.Lock:
        lock = self._locks.get(channel_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[channel_id] = lock
        return lock

    def guild(self, guild_id: int) -> GuildConfig:
        return self._guilds.get(guild_id) or GuildConfig(
            guild_id=guild_id,
            chat_model=self.settings.chat_model,
            system_prompt=self.settings.system_prompt,
        )

    def channel(self, channel_id: int) -> ChannelEntry | None:
        return self._channels.get(channel_id)

    def config(self, channel_id: int) -> ChannelConfig:
        entry = self._channels.get(channel_id)
        return entry.config if entry else ChannelConfig()

    def guild_of(self, channel_id: int) -> int | None:
        entry = self._channels.get(channel_id)
        return entry.guild_id if entry else None

    def guild_channels(self, guild_id: int) -> list[int]:
        return [cid for cid, entry in self._channels.items() if entry.guild_id == guild_id]

    def shared_channels(self, guild_id: int) -> list[int]:
        return [
            cid
            for cid, entry in self._channels.items()
            if entry.guild_id == guild_id and entry.config.shared_chat
        ]

    def ensure_channel(self, guild_id: int, channel_id: int) -> ChannelEntry:
        entry = self._channels.get(channel_id)
        if entry is not None:
            if entry.guild_id != guild_id:
                raise ConfigError(f"Channel {channel_id} already belongs to guild {entry.guild_id}.")
            return entry
        self._ensure_guild(guild_id)
        entry = ChannelEntry(channel_id=channel_id, guild_id=guild_id)
        self._channels[channel_id] = entry
        self._persist_channel(entry)
        self.logger.info(f"Tracking new channel {channel_id} in guild {guild_id}", "registry.channel_created")
        return entry

    def is_eligible(self, channel_id: int, message: InboundMessage) -> bool:
        entry = self._channels.get(channel_id)
        if entry is None or not entry.config.is_listening:
            return False
        if message.is_self:
            return False
        if not entry.config.shared_chat:
            return message.channel_id == channel_id
        return message.guild_id == entry.guild_id

    def update_config(
        self,
        channel_id: int,
        patch: Mapping[str, Any],
        guild_id: int | None = None,
    ) -> ChannelConfig:
        changes: dict[str, bool] = {}
        for key, value in patch.items():
            if key not in CHANNEL_FLAGS:
                raise ConfigError(f"Unknown channel setting `{key}`.")
            if not isinstance(value, bool):
                raise ConfigError(f"Channel setting `{key}` must be true or false.")
            changes[key] = value

        entry = self._channels.get(channel_id)
        if entry is None:
            if guild_id is None:
                raise ConfigError(f"Channel {channel_id} is unknown and no guild was given.")
            entry = self.ensure_channel(guild_id, channel_id)
        elif guild_id is not None and entry.guild_id != guild_id:
            raise ConfigError(f"Channel {channel_id} already belongs to guild {entry.guild_id}.")

        entry.config = dataclasses.replace(entry.config, **changes)
        self._persist_channel(entry)
        if changes:
            self.logger.info(
                f"Channel {channel_id} settings updated: {changes}",
                "registry.channel_updated",
                channel_id=channel_id,
            )
        return entry.config

    def update_guild(
        self,
        guild_id: int,
        *,
        chat_model: str | None = None,
        system_prompt: str | None = None,
    ) -> GuildConfig:
        if chat_model is not None and not chat_model.strip():
            raise ConfigError("Chat model must not be empty.")
        if system_prompt is not None and not system_prompt.strip():
            raise ConfigError("System prompt must not be empty.")
        guild = self._ensure_guild(guild_id)
        if chat_model is not None:
            guild.chat_model = chat_model.strip()
        if system_prompt is not None:
            guild.system_prompt = system_prompt.strip()
        self._persist_guild(guild)
        self.logger.info(f"Guild {guild_id} settings updated", "registry.guild_updated", guild_id=guild_id)
        return guild

    def reset_channel(self, channel_id: int) -> bool:
        entry = self._channels.get(channel_id)
        if entry is None:
            return False
        entry.config = ChannelConfig()
        self._persist_channel(entry)
        self.logger.info(f"Channel {channel_id} settings reset", "registry.channel_reset")
        return True

    def stats(self, messages: MessageStore) -> dict[str, Any]:
        guild_ids = set(self._guilds) | {entry.guild_id for entry in self._channels.values()}
        guilds: list[dict[str, Any]] = []
        total_messages = 0
        for guild_id in sorted(guild_ids):
            guild = self.guild(guild_id)
            channels: list[dict[str, Any]] = []
            for channel_id in sorted(self.guild_channels(guild_id)):
                entry = self._channels[channel_id]
                count = messages.count(channel_id)
                total_messages += count
                channels.append(
                    {
                        "channel_id": str(channel_id),
                        **entry.config.to_dict(),
                        "message_count": count,
                        "received_count": messages.received(channel_id),
                    }
                )
            guilds.append(
                {
                    "guild_id": str(guild_id),
                    "chat_model": guild.chat_model,
                    "channels": channels,
                }
            )
        return {
            "guilds": guilds,
            "totals": {
                "guilds": len(guilds),
                "channels": len(self._channels),
                "messages": total_messages,
            },
        }

    def _ensure_guild(self, guild_id: int, *, persist: bool = True) -> GuildConfig:
        guild = self._guilds.get(guild_id)
        if guild is None:
            guild = GuildConfig(
                guild_id=guild_id,
                chat_model=self.settings.chat_model,
                system_prompt=self.settings.system_prompt,
            )
            self._guilds[guild_id] = guild
            if persist:
                self._persist_guild(guild)
        return guild

    def _persist_guild(self, guild: GuildConfig) -> None:
        self.store.data.setdefault("guilds", {})[str(guild.guild_id)] = {
            "chat_model": guild.chat_model,
            "system_prompt": guild.system_prompt,
        }
        self.store.touch()

    def _persist_channel(self, entry: ChannelEntry) -> None:
        self.store.data.setdefault("channels", {})[str(entry.channel_id)] = {
            "guild_id": str(entry.guild_id),
            **entry.config.to_dict(),
        }
        self.store.touch()


def _to_id(raw: object) -> int | None:
    try:
        value = int(str(raw))
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None
