from __future__ import annotations

from typing import Any, AsyncIterator, Awaitable, Callable, Mapping

from chatrelay.bot import BotService
from chatrelay.errors import AlreadyRunning, AuthError, ConfigError, NotRunning


LOG_EVENT = "discord-log"
COMMAND_FAILURES = (ConfigError, AuthError, AlreadyRunning, NotRunning)


class CommandBridge:
    """Translates panel command names and JSON payloads onto a BotService."""

    def __init__(self, service: BotService) -> None:
        self.service = service
        self._commands: dict[str, Callable[[Mapping[str, Any]], Awaitable[Any]]] = {
            "get_discord_bot_status": self._get_status,
            "start_discord_bot": self._start,
            "stop_discord_bot": self._stop,
            "get_discord_logs": self._get_logs,
            "clear_discord_logs": self._clear_logs,
            "get_discord_stats": self._get_stats,
            "get_channel_messages": self._get_channel_messages,
            "clear_channel_messages": self._clear_channel_messages,
        }

    @property
    def command_names(self) -> list[str]:
        return list(self._commands)

    async def invoke(self, name: str, payload: Mapping[str, Any] | None = None) -> dict[str, Any]:
        try:
            handler = self._commands.get(name)
            if handler is None:
                raise ConfigError(f"Unknown command `{name}`.")
            if payload is None:
                payload = {}
            if not isinstance(payload, Mapping):
                raise ConfigError("Payload must be an object.")
            data = await handler(payload)
        except COMMAND_FAILURES as exc:
            return {"ok": False, "error": exc.kind, "message": str(exc)}
        return {"ok": True, "data": data}

    async def stream_logs(self, maxsize: int | None = None) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        with self.service.subscribe_logs(maxsize) as subscription:
            async for entry in subscription:
                yield LOG_EVENT, entry.to_dict()

    async def _get_status(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        return self.service.get_status().to_dict()

    async def _start(self, payload: Mapping[str, Any]) -> None:
        token = payload.get("bot_token", payload.get("botToken"))
        if not isinstance(token, str):
            raise ConfigError("`bot_token` must be a string.")
        await self.service.start(token)

    async def _stop(self, payload: Mapping[str, Any]) -> None:
        await self.service.stop()

    async def _get_logs(self, payload: Mapping[str, Any]) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.service.get_logs()]

    async def _clear_logs(self, payload: Mapping[str, Any]) -> None:
        self.service.clear_logs()

    async def _get_stats(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        return self.service.get_stats()

    async def _get_channel_messages(self, payload: Mapping[str, Any]) -> list[dict[str, Any]]:
        channel_id = _channel_id(payload)
        limit = payload.get("limit")
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int)):
            raise ConfigError("`limit` must be an integer.")
        return [message.to_dict() for message in self.service.get_channel_messages(channel_id, limit)]

    async def _clear_channel_messages(self, payload: Mapping[str, Any]) -> None:
        self.service.clear_channel_messages(_channel_id(payload))


def _channel_id(payload: Mapping[str, Any]) -> int:
    raw = payload.get("channel_id", payload.get("channelId"))
    if isinstance(raw, bool):
        raise ConfigError("`channel_id` must be a Discord snowflake.")
    try:
        return int(str(raw))
    except (TypeError, ValueError) as exc:
        raise ConfigError("`channel_id` must be a Discord snowflake.") from exc
