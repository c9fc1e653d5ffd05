from __future__ import annotations

from typing import Any, Literal

import aiohttp
import discord
from discord import app_commands

from chatrelay.errors import AuthError, NetworkError, RateLimited
from chatrelay.models import InboundCommand, InboundMessage, MentionRef, ReplyRef
from chatrelay.services.connection_manager import ConnectionManager
from chatrelay.utils.discord_utils import display_name, is_admin


AUTH_FAILED_CLOSE_CODE = 4004
TEXT_ATTACHMENT_MAX_BYTES = 200 * 1024


class DiscordGateway(discord.Client):
    """One Discord gateway session owned by a ConnectionManager."""

    def __init__(self, manager: ConnectionManager) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.messages = True
        intents.message_content = True
        super().__init__(intents=intents)
        self.manager = manager
        self.tree = app_commands.CommandTree(self)
        self._commands_synced = False
        self._register_commands()

    async def login(self, token: str) -> None:
        try:
            await super().login(token)
        except discord.LoginFailure as exc:
            raise AuthError(str(exc) or "Improper token has been passed.") from exc
        except (discord.HTTPException, aiohttp.ClientError, OSError) as exc:
            raise NetworkError(str(exc)) from exc

    async def connect(self, *, reconnect: bool = False) -> None:
        try:
            await super().connect(reconnect=reconnect)
        except discord.PrivilegedIntentsRequired as exc:
            raise AuthError(str(exc)) from exc
        except discord.ConnectionClosed as exc:
            if exc.code == AUTH_FAILED_CLOSE_CODE:
                raise AuthError("Gateway rejected the token.") from exc
            raise NetworkError(f"connection closed with code {exc.code}") from exc
        except (discord.GatewayNotFound, discord.HTTPException, aiohttp.ClientError, OSError) as exc:
            raise NetworkError(str(exc) or exc.__class__.__name__) from exc

    async def send_text(self, channel_id: int, content: str) -> None:
        try:
            channel = self.get_channel(channel_id) or await self.fetch_channel(channel_id)
            if not isinstance(channel, discord.abc.Messageable):
                raise NetworkError(f"Channel {channel_id} cannot receive messages.")
            await channel.send(content)
        except discord.HTTPException as exc:
            if exc.status == 429:
                retry_after = getattr(exc, "retry_after", None)
                raise RateLimited(str(exc), retry_after=retry_after) from exc
            raise NetworkError(f"HTTP {exc.status}: {exc.text}") from exc
        except (aiohttp.ClientError, OSError) as exc:
            raise NetworkError(str(exc)) from exc

    async def on_ready(self) -> None:
        self.manager.session_ready(self.user.id if self.user else None)
        if self._commands_synced:
            return
        try:
            synced = await self.tree.sync()
        except discord.HTTPException as exc:
            self.manager.logger.warn(f"Slash command sync failed: {exc}", "gateway.sync_failed")
            return
        self._commands_synced = True
        self.manager.logger.info(f"Registered {len(synced)} slash command(s)", "gateway.commands_synced")

    async def on_message(self, message: discord.Message) -> None:
        if message.guild is None:
            return
        me = self.user
        is_self = me is not None and message.author.id == me.id
        content = message.content or ""
        if not is_self:
            content += await self._inline_text_attachments(message)
        inbound = InboundMessage(
            message_id=message.id,
            guild_id=message.guild.id,
            channel_id=message.channel.id,
            author_id=message.author.id,
            author_name=display_name(message.author),
            content=content,
            is_self=is_self,
            is_admin=is_admin(message.author),
            mentions=self._resolve_mentions(message),
            reply_to=_reply_to(message),
        )
        self.manager.dispatch_message(inbound)

    def _resolve_mentions(self, message: discord.Message) -> tuple[MentionRef, ...]:
        refs = [MentionRef("user", user.id, display_name(user)) for user in message.mentions]
        refs.extend(MentionRef("role", role.id, role.name) for role in message.role_mentions)
        for channel_id in dict.fromkeys(message.raw_channel_mentions):
            channel = self.get_channel(channel_id)
            refs.append(MentionRef("channel", channel_id, getattr(channel, "name", None) or "unknown-channel"))
        return tuple(refs)

    async def _inline_text_attachments(self, message: discord.Message) -> str:
        parts: list[str] = []
        for attachment in message.attachments:
            content_type = attachment.content_type or ""
            if not content_type.startswith("text/") or attachment.size >= TEXT_ATTACHMENT_MAX_BYTES:
                continue
            try:
                raw = await attachment.read()
            except (discord.HTTPException, aiohttp.ClientError, OSError) as exc:
                self.manager.logger.warn(
                    f"Could not download attachment '{attachment.filename}': {exc}",
                    "gateway.attachment_failed",
                )
                continue
            text = raw.decode("utf-8", errors="replace")
            parts.append(f"\n\n[Attached File '{attachment.filename}']:\n```\n{text}\n```")
        return "".join(parts)

    def _register_commands(self) -> None:
        @self.tree.command(name="settings", description="Show or change how the bot listens in this channel")
        @app_commands.guild_only()
        @app_commands.default_permissions(administrator=True)
        @app_commands.describe(
            listening="Reply to messages in this channel",
            shared_chat="Share conversation memory with other shared channels of this server",
            listen_mode="Alternate listening mode for this channel",
            model="Chat model used in this server",
            system_prompt="System prompt (personality) used in this server",
            reset="Reset this channel to default settings",
        )
        async def settings(
            interaction: discord.Interaction,
            listening: bool | None = None,
            shared_chat: bool | None = None,
            listen_mode: bool | None = None,
            model: str | None = None,
            system_prompt: str | None = None,
            reset: bool | None = None,
        ) -> None:
            options = {
                "listening": listening,
                "shared_chat": shared_chat,
                "listen_mode": listen_mode,
                "model": model,
                "system_prompt": system_prompt,
                "reset": reset,
            }
            await self._run_command(interaction, "settings", options)

        @self.tree.command(name="clear", description="Clear the bot's chat memory")
        @app_commands.guild_only()
        @app_commands.default_permissions(administrator=True)
        @app_commands.describe(scope="Clear this channel only, or every channel in the server")
        async def clear(
            interaction: discord.Interaction,
            scope: Literal["channel", "guild"] = "channel",
        ) -> None:
            await self._run_command(interaction, "clear", {"scope": scope})

    async def _run_command(self, interaction: discord.Interaction, name: str, options: dict[str, Any]) -> None:
        permissions = interaction.permissions
        command = InboundCommand(
            name=name,
            options={key: value for key, value in options.items() if value is not None},
            guild_id=interaction.guild_id or 0,
            channel_id=interaction.channel_id or 0,
            user_id=interaction.user.id,
            user_name=display_name(interaction.user),
            is_admin=bool(permissions and permissions.administrator),
        )
        reply = await self.manager.dispatch_command(command)
        await interaction.response.send_message(reply or "The bot is not running.", ephemeral=True)


def _reply_to(message: discord.Message) -> ReplyRef | None:
    reference = message.reference
    resolved = reference.resolved if reference is not None else None
    if resolved is None or isinstance(resolved, discord.DeletedReferencedMessage):
        return None
    return ReplyRef(author_name=display_name(resolved.author), content=(resolved.content or "").replace("\n", " "))
