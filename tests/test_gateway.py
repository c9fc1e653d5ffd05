from __future__ import annotations

import asyncio
from types import SimpleNamespace

import discord
import discord.gateway

from fakes import wait_for

from chatrelay.gateway import TEXT_ATTACHMENT_MAX_BYTES, DiscordGateway
from chatrelay.models import InboundCommand, InboundMessage, MentionRef, ReplyRef
from chatrelay.services.connection_manager import ConnectionManager, SessionState
from chatrelay.services.log_broadcaster import LogBroadcaster


class StubManager:
    def __init__(self) -> None:
        self.logger = LogBroadcaster(echo=False)
        self.messages: list[InboundMessage] = []
        self.commands: list[InboundCommand] = []

    def dispatch_message(self, message: InboundMessage) -> None:
        self.messages.append(message)

    async def dispatch_command(self, command: InboundCommand) -> str:
        self.commands.append(command)
        return "done"


class StubResponse:
    def __init__(self) -> None:
        self.sent: list[tuple[str, bool]] = []

    async def send_message(self, content: str, *, ephemeral: bool = False) -> None:
        self.sent.append((content, ephemeral))


def _author(**kwargs) -> SimpleNamespace:
    values = {"id": 42, "display_name": "Alice", "bot": False, "guild_permissions": SimpleNamespace(administrator=True)}
    values.update(kwargs)
    return SimpleNamespace(**values)


def _message(**kwargs) -> SimpleNamespace:
    values = {
        "id": 7,
        "guild": SimpleNamespace(id=1),
        "channel": SimpleNamespace(id=10),
        "author": _author(),
        "content": "hi there",
        "mentions": [],
        "role_mentions": [],
        "raw_channel_mentions": [],
        "reference": None,
        "attachments": [],
    }
    values.update(kwargs)
    return SimpleNamespace(**values)


def _attachment(filename: str, data: bytes, content_type: str | None = "text/plain", size: int | None = None, error=None):
    async def read() -> bytes:
        if error is not None:
            raise error
        return data

    return SimpleNamespace(
        filename=filename,
        content_type=content_type,
        size=len(data) if size is None else size,
        read=read,
    )


def test_registers_settings_and_clear_commands() -> None:
    async def scenario() -> None:
        gateway = DiscordGateway(StubManager())
        assert {command.name for command in gateway.tree.get_commands()} == {"settings", "clear"}
        assert gateway.intents.message_content is True

    asyncio.run(scenario())


def test_on_message_normalizes_guild_messages() -> None:
    async def scenario() -> None:
        manager = StubManager()
        gateway = DiscordGateway(manager)
        await gateway.on_message(_message())
        await gateway.on_message(_message(id=8, guild=None, content="dm"))

        assert manager.messages == [
            InboundMessage(
                message_id=7,
                guild_id=1,
                channel_id=10,
                author_id=42,
                author_name="Alice",
                content="hi there",
                is_admin=True,
            )
        ]

    asyncio.run(scenario())


def test_slash_invocation_is_forwarded_and_answered_ephemerally() -> None:
    async def scenario() -> None:
        manager = StubManager()
        gateway = DiscordGateway(manager)
        interaction = SimpleNamespace(
            guild_id=1,
            channel_id=10,
            user=_author(),
            permissions=SimpleNamespace(administrator=False),
            response=StubResponse(),
        )
        await gateway._run_command(interaction, "settings", {"listening": True, "model": None})

        assert manager.commands == [
            InboundCommand(
                name="settings",
                options={"listening": True},
                guild_id=1,
                channel_id=10,
                user_id=42,
                user_name="Alice",
                is_admin=False,
            )
        ]
        assert interaction.response.sent == [("done", True)]

    asyncio.run(scenario())


def test_on_message_resolves_mentions_and_reply() -> None:
    async def scenario() -> None:
        manager = StubManager()
        gateway = DiscordGateway(manager)
        channels = {55: SimpleNamespace(id=55, name="general")}
        gateway.get_channel = channels.get
        replied = SimpleNamespace(author=_author(id=7, display_name="Bob"), content="line one\nline two")
        await gateway.on_message(
            _message(
                content="<@7> <@&3> <#55> <#56> <#55>",
                mentions=[_author(id=7, display_name="Bob")],
                role_mentions=[SimpleNamespace(id=3, name="mods")],
                raw_channel_mentions=[55, 56, 55],
                reference=SimpleNamespace(resolved=replied),
            )
        )

        inbound = manager.messages[0]
        assert inbound.mentions == (
            MentionRef("user", 7, "Bob"),
            MentionRef("role", 3, "mods"),
            MentionRef("channel", 55, "general"),
            MentionRef("channel", 56, "unknown-channel"),
        )
        assert inbound.reply_to == ReplyRef(author_name="Bob", content="line one line two")

    asyncio.run(scenario())


def test_on_message_inlines_small_text_attachments() -> None:
    async def scenario() -> None:
        manager = StubManager()
        gateway = DiscordGateway(manager)
        attachments = [
            _attachment("notes.txt", b"remember the milk"),
            _attachment("photo.png", b"\x89PNG", content_type="image/png"),
            _attachment("huge.log", b"x", size=TEXT_ATTACHMENT_MAX_BYTES),
            _attachment("gone.txt", b"", error=OSError("connection reset")),
        ]
        await gateway.on_message(_message(content="see file", attachments=attachments))

        assert manager.messages[0].content == "see file\n\n[Attached File 'notes.txt']:\n```\nremember the milk\n```"
        events = [entry.event for entry in manager.logger.snapshot()]
        assert events == ["gateway.attachment_failed"]

    asyncio.run(scenario())


def test_real_client_is_rebuilt_for_every_reconnect(monkeypatch) -> None:
    attempts: list[DiscordGateway] = []

    async def fake_login(self, token: str) -> None:
        return None

    async def refuse_websocket(client, *args, **kwargs):
        attempts.append(client)
        raise OSError("connection reset")

    monkeypatch.setattr(discord.Client, "login", fake_login)
    monkeypatch.setattr(discord.gateway.DiscordWebSocket, "from_client", refuse_websocket)

    async def scenario() -> None:
        manager = ConnectionManager(DiscordGateway, LogBroadcaster(echo=False), max_retries=3, base_delay=0.0)
        await manager.start("token")
        await wait_for(lambda: manager.state is SessionState.STOPPED, timeout=10.0)

        assert len(attempts) == 4
        assert len({id(client) for client in attempts}) == 4
        assert all(client.is_closed() for client in attempts)
        assert "gateway.crashed" in [entry.event for entry in manager.logger.snapshot()]

    asyncio.run(scenario())
