from __future__ import annotations

import asyncio
import signal
from typing import Any

from chatrelay.config import Settings
from chatrelay.errors import AuthError, ChannelNotFound, ConfigError, NetworkError, NotRunning, RateLimited
from chatrelay.gateway import DiscordGateway
from chatrelay.models import BotStatus, InboundCommand, InboundMessage, LogEntry, Message
from chatrelay.services.ai_service import AIService
from chatrelay.services.channel_registry import ChannelRegistry
from chatrelay.services.chat_orchestrator import ChatOrchestrator
from chatrelay.services.command_router import CommandRouter
from chatrelay.services.connection_manager import ConnectionManager, SessionFactory
from chatrelay.services.log_broadcaster import LogBroadcaster, LogSubscription
from chatrelay.services.message_store import MessageStore
from chatrelay.storage import MessagePackStore


AUTOSAVE_INTERVAL_SEC = 5.0


class BotService:
    """Owns the engine components and exposes the panel's command surface."""

    def __init__(
        self,
        settings: Settings,
        *,
        ai: AIService | None = None,
        session_factory: SessionFactory | None = None,
        store: MessagePackStore | None = None,
        logger: LogBroadcaster | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or MessagePackStore(settings.store_path)
        self.logger = logger or LogBroadcaster(
            settings.max_log_entries,
            subscriber_queue_size=settings.log_queue_size,
        )
        self.messages = MessageStore(settings.max_channel_messages)
        self.registry = ChannelRegistry(settings, self.store, self.logger)
        self.ai = ai or AIService(settings)
        self.connection = ConnectionManager(
            session_factory or DiscordGateway,
            self.logger,
            max_retries=settings.reconnect_max_retries,
            base_delay=settings.reconnect_base_delay_sec,
            max_delay=settings.reconnect_max_delay_sec,
            flush_timeout=settings.flush_timeout_sec,
        )
        self.router = CommandRouter(self.registry, self.messages, self.logger)
        self.chat = ChatOrchestrator(
            self.registry,
            self.messages,
            self.ai,
            self.connection,
            self.logger,
            context_limit=settings.context_limit,
            post_retries=settings.post_max_retries,
            retry_base_delay=settings.reconnect_base_delay_sec,
        )
        self.connection.set_handlers(self.handle_message, self.handle_command)
        self._autosave_task: asyncio.Task | None = None

    async def setup(self) -> None:
        await self.store.load()
        self.registry.hydrate()
        self._autosave_task = asyncio.create_task(
            self.store.autosave_loop(AUTOSAVE_INTERVAL_SEC),
            name="msgpack-autosave",
        )

    async def close(self) -> None:
        try:
            await self.connection.stop()
        except NotRunning:
            pass
        if self._autosave_task is not None:
            self._autosave_task.cancel()
            await asyncio.gather(self._autosave_task, return_exceptions=True)
            self._autosave_task = None
        if self.store.dirty:
            await self.store.save()

    async def __aenter__(self) -> "BotService":
        await self.setup()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def get_status(self) -> BotStatus:
        return BotStatus(running=self.connection.running, enabled=self._enabled())

    async def start(self, bot_token: str) -> None:
        await self.connection.start(bot_token)
        self._set_enabled(True)

    async def stop(self) -> None:
        await self.connection.stop()
        self._set_enabled(False)

    async def start_if_enabled(self, bot_token: str) -> bool:
        if not self._enabled():
            return False
        self.logger.info("Restoring previously enabled bot", "bot.autostart")
        try:
            await self.start(bot_token)
        except AuthError:
            return False
        return True

    def get_logs(self) -> list[LogEntry]:
        return self.logger.snapshot()

    def clear_logs(self) -> None:
        self.logger.clear()

    def subscribe_logs(self, maxsize: int | None = None) -> LogSubscription:
        return self.logger.subscribe(maxsize)

    def get_stats(self) -> dict[str, Any]:
        stats = self.registry.stats(self.messages)
        stats["status"] = self.get_status().to_dict()
        return stats

    def get_channel_messages(self, channel_id: int, limit: int | None = None) -> list[Message]:
        try:
            return self.messages.history(channel_id, limit)
        except ChannelNotFound:
            return []

    def clear_channel_messages(self, channel_id: int) -> None:
        self.messages.clear(channel_id)
        self.logger.info(f"Cleared stored messages for channel {channel_id}", "bot.channel_cleared")

    async def handle_message(self, message: InboundMessage) -> None:
        # The bot never acts on its own posts, including echoed command text.
        if message.is_self:
            return
        invocation = self.router.classify(message)
        if invocation is not None:
            reply = await self.router.execute(invocation)
            try:
                await self.connection.post(message.channel_id, reply)
            except (RateLimited, NotRunning, NetworkError) as exc:
                self.logger.warn(f"Could not deliver command reply: {exc}", "bot.command_reply_failed")
            return

        try:
            self.registry.ensure_channel(message.guild_id, message.channel_id)
        except ConfigError as exc:
            self.logger.warn(str(exc), "bot.channel_rejected", channel_id=message.channel_id)
            return
        async with self.registry.lock(message.channel_id):
            self.messages.append(message.channel_id, message.to_message())

        if not self.registry.is_eligible(message.channel_id, message):
            return
        await self.chat.respond(message)

    async def handle_command(self, invocation: InboundCommand) -> str:
        return await self.router.execute(invocation)

    def _enabled(self) -> bool:
        return bool(self.store.data.get("bot", {}).get("enabled", False))

    def _set_enabled(self, enabled: bool) -> None:
        self.store.data.setdefault("bot", {})["enabled"] = enabled
        self.store.touch()


async def start_headless(service: BotService) -> bool:
    """Start the session for a headless run; False when nothing was started."""
    token = service.settings.discord_token
    if service.settings.autostart:
        try:
            await service.start(token)
        except AuthError:
            return False
        return True
    if not service.get_status().enabled:
        service.logger.info("Autostart is off and the bot was not left enabled; not connecting", "bot.autostart_skipped")
        return False
    return await service.start_if_enabled(token)


async def _run(settings: Settings) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    async with BotService(settings) as service:
        if not await start_headless(service):
            return
        await stop_event.wait()


def main() -> None:
    settings = Settings.load()
    if not settings.discord_token:
        raise RuntimeError("DISCORD_TOKEN is missing from passwords.txt or the environment.")
    try:
        asyncio.run(_run(settings))
    except KeyboardInterrupt:
        pass
