from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import Any

from chatrelay.errors import ConfigError
from chatrelay.models import InboundCommand, InboundMessage
from chatrelay.services.channel_registry import ChannelRegistry
from chatrelay.services.log_broadcaster import LogBroadcaster
from chatrelay.services.message_store import MessageStore


COMMAND_NAMES = ("settings", "clear")
CLEAR_SCOPES = ("channel", "guild")
SETTINGS_OPTIONS = {
    "listening": "is_listening",
    "is_listening": "is_listening",
    "shared": "shared_chat",
    "shared_chat": "shared_chat",
    "listen_mode": "listen_mode",
    "model": "chat_model",
    "chat_model": "chat_model",
    "prompt": "system_prompt",
    "system_prompt": "system_prompt",
    "reset": "reset",
}
CHANNEL_FLAG_LABELS = {
    "is_listening": "Listening",
    "shared_chat": "Shared chat",
    "listen_mode": "Listen mode",
}


@dataclass(frozen=True)
class ShowSettings:
    guild_id: int
    channel_id: int


@dataclass(frozen=True)
class UpdateSettings:
    guild_id: int
    channel_id: int
    channel_patch: dict[str, bool] = field(default_factory=dict)
    chat_model: str | None = None
    system_prompt: str | None = None


@dataclass(frozen=True)
class ResetChannel:
    guild_id: int
    channel_id: int


@dataclass(frozen=True)
class ClearMemory:
    guild_id: int
    channel_id: int
    scope: str = "channel"


Command = ShowSettings | UpdateSettings | ResetChannel | ClearMemory


def _to_bool(raw: Any) -> bool | None:
    if isinstance(raw, bool):
        return raw
    value = str(raw or "").strip().lower()
    if value in ("1", "true", "yes", "y", "on"):
        return True
    if value in ("0", "false", "no", "n", "off"):
        return False
    return None


class CommandRouter:
    def __init__(
        self,
        registry: ChannelRegistry,
        messages: MessageStore,
        logger: LogBroadcaster,
        *,
        prefix: str = "/",
    ) -> None:
        self.registry = registry
        self.messages = messages
        self.logger = logger
        self.prefix = prefix

    def classify(self, message: InboundMessage) -> InboundCommand | None:
        raw = message.content.strip()
        if not raw.startswith(self.prefix):
            return None
        body = raw[len(self.prefix) :]
        try:
            tokens = shlex.split(body)
        except ValueError:
            tokens = body.split()
        if not tokens or tokens[0].lower() not in COMMAND_NAMES:
            return None

        options: dict[str, Any] = {}
        args: list[str] = []
        for token in tokens[1:]:
            if "=" in token:
                key, value = token.split("=", 1)
                options[key.strip().lower()] = value
            else:
                args.append(token)
        if args:
            options["_args"] = args
        return InboundCommand(
            name=tokens[0].lower(),
            options=options,
            guild_id=message.guild_id,
            channel_id=message.channel_id,
            user_id=message.author_id,
            user_name=message.author_name,
            is_admin=message.is_admin,
        )

    def parse(self, invocation: InboundCommand) -> Command:
        name = (invocation.name or "").strip().lower()
        if name not in COMMAND_NAMES:
            raise ConfigError(f"Unknown command `/{name}`.")
        if not invocation.is_admin:
            raise ConfigError("You need the Administrator permission to use this command.")
        if not invocation.guild_id or not invocation.channel_id:
            raise ConfigError("This command can only be used inside a server channel.")
        if not isinstance(invocation.options, dict):
            raise ConfigError("Malformed command options.")
        if name == "clear":
            return self._parse_clear(invocation)
        return self._parse_settings(invocation)

    async def apply(self, command: Command) -> str:
        if isinstance(command, ClearMemory):
            return await self._clear_memory(command)
        async with self.registry.lock(command.channel_id):
            return self._apply_settings(command)

    def _apply_settings(self, command: Command) -> str:
        if isinstance(command, ShowSettings):
            return self._render_settings(command.guild_id, command.channel_id)
        if isinstance(command, ResetChannel):
            self.registry.ensure_channel(command.guild_id, command.channel_id)
            self.registry.reset_channel(command.channel_id)
            return "✅ Channel settings reset to defaults.\n" + self._render_settings(
                command.guild_id, command.channel_id
            )
        if isinstance(command, UpdateSettings):
            if command.channel_patch:
                self.registry.update_config(command.channel_id, command.channel_patch, guild_id=command.guild_id)
            if command.chat_model is not None or command.system_prompt is not None:
                self.registry.update_guild(
                    command.guild_id,
                    chat_model=command.chat_model,
                    system_prompt=command.system_prompt,
                )
            return "✅ Settings updated.\n" + self._render_settings(command.guild_id, command.channel_id)
        raise ConfigError("Unsupported command.")

    async def _clear_memory(self, command: ClearMemory) -> str:
        if command.scope == "guild":
            channel_ids = self.registry.guild_channels(command.guild_id)
        else:
            channel_ids = [command.channel_id]
        # Each channel is cleared under its own lock, one at a time.
        for channel_id in channel_ids:
            async with self.registry.lock(channel_id):
                self.messages.clear(channel_id)
        self.logger.info(
            f"Chat memory cleared ({command.scope}) in guild {command.guild_id}",
            "router.memory_cleared",
            channels=len(channel_ids),
        )
        return f"🧹 Chat memory cleared for this {command.scope}."

    async def execute(self, invocation: InboundCommand) -> str:
        try:
            command = self.parse(invocation)
            reply = await self.apply(command)
        except ConfigError as exc:
            self.logger.warn(
                f"Rejected /{invocation.name} from {invocation.user_name or invocation.user_id}: {exc}",
                "router.command_rejected",
                channel_id=invocation.channel_id,
            )
            return f"❌ {exc}"
        self.logger.info(
            f"Handled /{invocation.name} from {invocation.user_name or invocation.user_id}",
            "router.command_handled",
            channel_id=invocation.channel_id,
        )
        return reply

    def _parse_settings(self, invocation: InboundCommand) -> Command:
        options = dict(invocation.options)
        extra = options.pop("_args", None)
        if extra:
            raise ConfigError("Usage: `/settings [listening=on|off] [shared_chat=on|off] [listen_mode=on|off] [model=<name>] [system_prompt=<text>] [reset=true]`")

        patch: dict[str, bool] = {}
        chat_model: str | None = None
        system_prompt: str | None = None
        reset = False
        for key, raw in options.items():
            target = SETTINGS_OPTIONS.get(str(key).lower())
            if target is None:
                raise ConfigError(f"Unknown option `{key}`.")
            if target in ("is_listening", "shared_chat", "listen_mode", "reset"):
                value = _to_bool(raw)
                if value is None:
                    raise ConfigError(f"`{key}` must be true/false.")
                if target == "reset":
                    reset = value
                else:
                    patch[target] = value
            elif target == "chat_model":
                chat_model = str(raw or "").strip()
                if not chat_model:
                    raise ConfigError("`model` must not be empty.")
            else:
                system_prompt = str(raw or "").strip()
                if not system_prompt:
                    raise ConfigError("`system_prompt` must not be empty.")

        if reset:
            if patch or chat_model is not None or system_prompt is not None:
                raise ConfigError("`reset` cannot be combined with other options.")
            return ResetChannel(guild_id=invocation.guild_id, channel_id=invocation.channel_id)
        if not patch and chat_model is None and system_prompt is None:
            return ShowSettings(guild_id=invocation.guild_id, channel_id=invocation.channel_id)
        return UpdateSettings(
            guild_id=invocation.guild_id,
            channel_id=invocation.channel_id,
            channel_patch=patch,
            chat_model=chat_model,
            system_prompt=system_prompt,
        )

    def _parse_clear(self, invocation: InboundCommand) -> Command:
        options = dict(invocation.options)
        args = options.pop("_args", None) or []
        scope = options.pop("scope", None)
        if scope is None and args:
            scope = args[0]
            args = args[1:]
        if options or args:
            raise ConfigError("Usage: `/clear [scope=channel|guild]`")
        scope = str(scope or "channel").strip().lower()
        if scope not in CLEAR_SCOPES:
            raise ConfigError("`scope` must be `channel` or `guild`.")
        return ClearMemory(guild_id=invocation.guild_id, channel_id=invocation.channel_id, scope=scope)

    def _render_settings(self, guild_id: int, channel_id: int) -> str:
        config = self.registry.config(channel_id)
        guild = self.registry.guild(guild_id)
        lines = [f"**Settings for <#{channel_id}>**"]
        for flag, label in CHANNEL_FLAG_LABELS.items():
            lines.append(f"- {label}: `{'on' if getattr(config, flag) else 'off'}`")
        lines.append(f"- Chat model: `{guild.chat_model}`")
        prompt = guild.system_prompt if len(guild.system_prompt) <= 200 else guild.system_prompt[:197] + "..."
        lines.append(f"- System prompt: {prompt}")
        return "\n".join(lines)
