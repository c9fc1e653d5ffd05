from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from fakes import inbound, make_settings

from chatrelay.errors import ConfigError
from chatrelay.models import ChannelConfig, InboundCommand, Message, Role
from chatrelay.services.channel_registry import ChannelRegistry
from chatrelay.services.command_router import (
    ClearMemory,
    CommandRouter,
    ResetChannel,
    ShowSettings,
    UpdateSettings,
)
from chatrelay.services.log_broadcaster import LogBroadcaster
from chatrelay.services.message_store import MessageStore
from chatrelay.storage import MessagePackStore


def _make_router(tmp_path: Path) -> CommandRouter:
    settings = make_settings(tmp_path)
    store = MessagePackStore(settings.store_path)
    asyncio.run(store.load())
    logger = LogBroadcaster(echo=False)
    registry = ChannelRegistry(settings, store, logger)
    return CommandRouter(registry, MessageStore(), logger)


def _command(name: str, options: dict | None = None, *, is_admin: bool = True, channel_id: int = 10) -> InboundCommand:
    return InboundCommand(
        name=name,
        options=options or {},
        guild_id=1,
        channel_id=channel_id,
        user_id=42,
        user_name="alice",
        is_admin=is_admin,
    )


def test_classify_parses_text_commands(tmp_path: Path) -> None:
    router = _make_router(tmp_path)

    command = router.classify(inbound('/settings listening=on system_prompt="Be kind."', is_admin=True))
    assert command is not None
    assert command.name == "settings"
    assert command.options == {"listening": "on", "system_prompt": "Be kind."}
    assert command.is_admin is True

    clear = router.classify(inbound("/clear guild"))
    assert clear is not None
    assert clear.options == {"_args": ["guild"]}

    assert router.classify(inbound("hello /settings")) is None
    assert router.classify(inbound("/shrug")) is None


def test_parse_produces_tagged_commands(tmp_path: Path) -> None:
    router = _make_router(tmp_path)

    assert isinstance(router.parse(_command("settings")), ShowSettings)
    assert isinstance(router.parse(_command("settings", {"reset": True})), ResetChannel)
    update = router.parse(_command("settings", {"listening": "on", "shared": False, "model": "m1"}))
    assert update == UpdateSettings(
        guild_id=1,
        channel_id=10,
        channel_patch={"is_listening": True, "shared_chat": False},
        chat_model="m1",
    )
    assert router.parse(_command("clear", {"_args": ["guild"]})) == ClearMemory(1, 10, "guild")
    assert router.parse(_command("clear")) == ClearMemory(1, 10, "channel")


@pytest.mark.parametrize(
    "command",
    [
        _command("settings", {"listening": "on"}, is_admin=False),
        _command("settings", {"volume": "11"}),
        _command("settings", {"listening": "maybe"}),
        _command("settings", {"reset": "true", "listening": "on"}),
        _command("settings", {"model": "  "}),
        _command("settings", {"_args": ["stray"]}),
        _command("clear", {"scope": "everything"}),
        _command("clear", {"_args": ["guild", "extra"]}),
        _command("ping"),
        _command("settings", channel_id=0),
    ],
)
def test_parse_rejects_invalid_invocations(tmp_path: Path, command: InboundCommand) -> None:
    router = _make_router(tmp_path)
    with pytest.raises(ConfigError):
        router.parse(command)


def test_execute_rejection_replies_and_leaves_state_unchanged(tmp_path: Path) -> None:
    router = _make_router(tmp_path)

    reply = asyncio.run(router.execute(_command("settings", {"listening": "on"}, is_admin=False)))
    assert reply.startswith("❌")
    assert router.registry.channel(10) is None
    assert router.logger.snapshot()[-1].event == "router.command_rejected"


def test_execute_updates_channel_and_guild_settings(tmp_path: Path) -> None:
    router = _make_router(tmp_path)

    reply = asyncio.run(
        router.execute(_command("settings", {"listening": True, "listen_mode": True, "system_prompt": "Be brief."}))
    )
    assert reply.startswith("✅ Settings updated.")
    assert "Listening: `on`" in reply
    assert router.registry.config(10) == ChannelConfig(is_listening=True, listen_mode=True)
    assert router.registry.guild(1).system_prompt == "Be brief."

    reply = asyncio.run(router.execute(_command("settings", {"reset": True})))
    assert "reset" in reply
    assert router.registry.config(10) == ChannelConfig()


def test_clear_guild_scope_clears_every_channel_of_the_guild(tmp_path: Path) -> None:
    router = _make_router(tmp_path)
    registry, messages = router.registry, router.messages
    registry.ensure_channel(1, 10)
    registry.ensure_channel(1, 11)
    registry.ensure_channel(2, 20)
    for channel_id in (10, 11, 20):
        messages.append(channel_id, Message(role=Role.USER, content="hi"))

    reply = asyncio.run(router.execute(_command("clear", {"scope": "guild"})))
    assert "guild" in reply
    assert messages.count(10) == 0
    assert messages.count(11) == 0
    assert messages.count(20) == 1

    messages.append(10, Message(role=Role.USER, content="again"))
    asyncio.run(router.execute(_command("clear")))
    assert messages.count(10) == 0


def test_guild_clear_waits_for_each_channel_lock(tmp_path: Path) -> None:
    router = _make_router(tmp_path)

    async def scenario() -> None:
        registry, messages = router.registry, router.messages
        registry.ensure_channel(1, 10)
        registry.ensure_channel(1, 11)
        for channel_id in (10, 11):
            messages.append(channel_id, Message(role=Role.USER, content="hi"))

        busy = registry.lock(11)
        await busy.acquire()
        clearing = asyncio.create_task(router.execute(_command("clear", {"scope": "guild"})))
        for _ in range(5):
            await asyncio.sleep(0)
        assert clearing.done() is False
        assert messages.count(10) == 0
        assert messages.count(11) == 1

        busy.release()
        assert "guild" in await clearing
        assert messages.count(11) == 0

    asyncio.run(scenario())
