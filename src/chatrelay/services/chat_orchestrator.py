from __future__ import annotations

import asyncio
from typing import Any

from chatrelay.errors import ChannelNotFound, NetworkError, NotRunning, RateLimited
from chatrelay.models import InboundMessage, Message, Role
from chatrelay.services.ai_service import AIService
from chatrelay.services.channel_registry import ChannelRegistry
from chatrelay.services.connection_manager import ConnectionManager
from chatrelay.services.log_broadcaster import LogBroadcaster
from chatrelay.services.message_store import MessageStore
from chatrelay.utils.discord_utils import split_message


class _PromptValues(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_system_prompt(template: str, **values: Any) -> str:
    try:
        return template.format_map(_PromptValues(values))
    except (ValueError, IndexError, AttributeError):
        return template


def entity_context(message: InboundMessage) -> str:
    """Map mentioned names to their markup so the model can mention them back."""
    if not message.mentions:
        return ""
    sections = []
    for kind, title, sigil in (("user", "Users", "@"), ("role", "Roles", "@"), ("channel", "Channels", "#")):
        lines = [f"- {sigil}{ref.name}: {ref.markup()}" for ref in message.mentions if ref.kind == kind]
        if lines:
            sections.append(f"{title}:\n" + "\n".join(lines))
    return "\n\n[SYSTEM: ENTITY CONTEXT]\n" + "\n".join(sections)


class ChatOrchestrator:
    def __init__(
        self,
        registry: ChannelRegistry,
        messages: MessageStore,
        ai: AIService,
        connection: ConnectionManager,
        logger: LogBroadcaster,
        *,
        context_limit: int = 20,
        post_retries: int = 3,
        retry_base_delay: float = 1.0,
    ) -> None:
        self.registry = registry
        self.messages = messages
        self.ai = ai
        self.connection = connection
        self.logger = logger
        self.context_limit = context_limit
        self.post_retries = post_retries
        self.retry_base_delay = retry_base_delay

    def build_context(self, message: InboundMessage) -> list[dict[str, Any]]:
        guild = self.registry.guild(message.guild_id)
        config = self.registry.config(message.channel_id)
        system = render_system_prompt(
            guild.system_prompt,
            guild_id=message.guild_id,
            channel_id=message.channel_id,
            author=message.author_name,
        )
        system += (
            "\n\n[SYSTEM: CURRENT AUTHOR]\n"
            f"The user speaking to you now is: {message.author_name} (ID: {message.author_id})\n"
            f"Address them by their name: {message.author_name}"
        )
        system += entity_context(message)
        if message.reply_to is not None:
            system += (
                "\n\n[SYSTEM: USER REPLYING TO]\n"
                f"User is replying to message by @{message.reply_to.author_name}:\n"
                f"\"{message.reply_to.content}\""
            )
        if config.shared_chat:
            channel_ids = set(self.registry.shared_channels(message.guild_id))
            channel_ids.add(message.channel_id)
            history = self.messages.merged_history(channel_ids, self.context_limit)
        else:
            try:
                history = self.messages.history(message.channel_id, self.context_limit)
            except ChannelNotFound:
                history = []

        context: list[dict[str, Any]] = [{"role": "system", "content": system}]
        for row in history:
            if row.role is Role.USER and row.author_name:
                content = f"[{row.author_name}]: {row.content}"
            else:
                content = row.content
            context.append({"role": row.role.value, "content": content})
        return context

    async def respond(self, message: InboundMessage) -> Message | None:
        guild = self.registry.guild(message.guild_id)
        async with self.registry.lock(message.channel_id):
            context = self.build_context(message)

        try:
            reply = await self.ai.complete(context, model=guild.chat_model)
        except Exception as exc:  # noqa: BLE001
            self.logger.error(
                f"Chat completion failed in channel {message.channel_id}: {exc}",
                "chat.completion_failed",
                channel_id=message.channel_id,
                model=guild.chat_model,
            )
            return None

        chunks = split_message(reply)
        if not chunks:
            self.logger.warn(f"Model returned an empty reply in channel {message.channel_id}", "chat.empty_reply")
            return None

        posted: list[str] = []
        for chunk in chunks:
            if not await self._post_with_backoff(message.channel_id, chunk):
                break
            posted.append(chunk)
        if not posted:
            return None

        # Only what reached the channel is remembered.
        content = reply.strip() if len(posted) == len(chunks) else "\n".join(posted)
        async with self.registry.lock(message.channel_id):
            stored = self.messages.append(
                message.channel_id,
                Message(role=Role.ASSISTANT, content=content, author_id=self.connection.bot_user_id),
            )
        if len(posted) < len(chunks):
            self.logger.warn(
                f"Reply to channel {message.channel_id} was cut short after {len(posted)}/{len(chunks)} chunk(s)",
                "chat.reply_partial",
                channel_id=message.channel_id,
                chunks=len(posted),
            )
            return stored
        self.logger.info(
            f"Replied to {message.author_name} in channel {message.channel_id}",
            "chat.replied",
            channel_id=message.channel_id,
            chunks=len(chunks),
        )
        return stored

    async def _post_with_backoff(self, channel_id: int, content: str) -> bool:
        for attempt in range(1, self.post_retries + 1):
            try:
                await self.connection.post(channel_id, content)
                return True
            except NotRunning:
                self.logger.warn(
                    f"Session closed before the reply to channel {channel_id} could be posted",
                    "chat.reply_dropped",
                )
                return False
            except NetworkError as exc:
                self.logger.error(f"Could not post to channel {channel_id}: {exc}", "chat.post_failed")
                return False
            except RateLimited as exc:
                if attempt >= self.post_retries:
                    break
                delay = max(exc.retry_after or 0.0, self.retry_base_delay * (2 ** (attempt - 1)))
                self.logger.warn(
                    f"Rate limited posting to channel {channel_id}; retrying in {delay:.1f}s "
                    f"(attempt {attempt}/{self.post_retries})",
                    "chat.rate_limited",
                )
                await asyncio.sleep(delay)
        self.logger.error(
            f"Gave up posting to channel {channel_id} after {self.post_retries} rate-limited attempts",
            "chat.post_failed",
        )
        return False
