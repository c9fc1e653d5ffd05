from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Protocol

from chatrelay.errors import AlreadyRunning, AuthError, NotRunning
from chatrelay.models import InboundCommand, InboundMessage
from chatrelay.services.log_broadcaster import LogBroadcaster


class SessionState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"


class GatewaySession(Protocol):
    async def login(self, token: str) -> None: ...

    async def connect(self) -> None: ...

    async def send_text(self, channel_id: int, content: str) -> None: ...

    async def close(self) -> None: ...


SessionFactory = Callable[["ConnectionManager"], GatewaySession]
MessageHandler = Callable[[InboundMessage], Awaitable[None]]
CommandHandler = Callable[[InboundCommand], Awaitable["str | None"]]


class ConnectionManager:
    def __init__(
        self,
        session_factory: SessionFactory,
        logger: LogBroadcaster,
        *,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        flush_timeout: float = 5.0,
    ) -> None:
        self.session_factory = session_factory
        self.logger = logger
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.flush_timeout = flush_timeout
        self.bot_user_id: int | None = None
        self._state = SessionState.STOPPED
        self._session: GatewaySession | None = None
        self._login_task: asyncio.Future | None = None
        self._supervisor: asyncio.Task | None = None
        self._handlers: set[asyncio.Task] = set()
        self._posts: set[asyncio.Future] = set()
        self._retries = 0
        self._token = ""
        self._message_handler: MessageHandler | None = None
        self._command_handler: CommandHandler | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is SessionState.RUNNING and self._session is not None

    def set_handlers(self, on_message: MessageHandler, on_command: CommandHandler) -> None:
        self._message_handler = on_message
        self._command_handler = on_command

    def backoff_delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** max(0, attempt - 1)), self.max_delay)

    async def start(self, token: str) -> None:
        if self._state is not SessionState.STOPPED:
            raise AlreadyRunning(f"Bot is already {self._state.value}.")
        if not token or not token.strip():
            self.logger.error("Bot token is empty!", "gateway.auth_failed")
            raise AuthError("Bot token is empty.")

        self._state = SessionState.STARTING
        self.logger.info("Discord bot starting...", "gateway.starting")
        session = self.session_factory(self)
        self._session = session
        login_task = asyncio.ensure_future(session.login(token.strip()))
        self._login_task = login_task
        try:
            await asyncio.wait({login_task})
        except asyncio.CancelledError:
            login_task.cancel()
            await self._close_session(session)
            self._reset()
            raise

        self._login_task = None
        if login_task.cancelled() or self._state is not SessionState.STARTING:
            raise NotRunning("Start was aborted by a concurrent stop.")
        exc = login_task.exception()
        if exc is not None:
            await self._close_session(session)
            self._reset()
            if isinstance(exc, AuthError):
                self.logger.error(f"Gateway rejected the bot token: {exc}", "gateway.auth_failed")
                raise exc
            self.logger.error(f"Gateway handshake failed: {exc}", "gateway.handshake_failed")
            raise AuthError(f"Gateway handshake failed: {exc}") from exc

        self._retries = 0
        self._token = token.strip()
        self._state = SessionState.RUNNING
        self._supervisor = asyncio.create_task(self._supervise(session), name="gateway-supervisor")
        self.logger.success("Bot token accepted; connecting to the gateway", "gateway.started")

    async def stop(self) -> None:
        if self._state in (SessionState.STOPPED, SessionState.STOPPING, SessionState.CRASHED):
            raise NotRunning(f"Bot is {self._state.value}.")

        was_starting = self._state is SessionState.STARTING
        self._state = SessionState.STOPPING
        self.logger.info("Stopping Discord bot...", "gateway.stopping")

        if was_starting and self._login_task is not None:
            self._login_task.cancel()
        await self._cancel_handlers()
        await self._flush_posts()
        await self._cancel_supervisor()
        # Read after the supervisor is gone; a reconnect may have replaced the session.
        session = self._session
        if session is not None:
            await self._close_session(session)
        self._reset()
        self.logger.success("Bot stopped successfully", "gateway.stopped")

    async def post(self, channel_id: int, content: str) -> None:
        session = self._session
        if not self.running or session is None:
            raise NotRunning("No active gateway session.")
        send = asyncio.ensure_future(session.send_text(channel_id, content))
        self._posts.add(send)
        send.add_done_callback(self._posts.discard)
        # Shielded so a cancelled caller cannot abort a half-finished send.
        await asyncio.shield(send)

    def dispatch_message(self, message: InboundMessage) -> asyncio.Task | None:
        if not self.running or self._message_handler is None:
            return None
        task = asyncio.create_task(self._message_handler(message), name=f"message-{message.message_id}")
        self._handlers.add(task)
        task.add_done_callback(self._on_handler_done)
        return task

    async def dispatch_command(self, command: InboundCommand) -> str | None:
        if not self.running or self._command_handler is None:
            return None
        return await self._command_handler(command)

    def session_ready(self, user_id: int | None) -> None:
        self.bot_user_id = user_id
        self._retries = 0
        self.logger.success("Connected to Discord; listening for messages", "gateway.ready", user_id=user_id)

    async def _supervise(self, session: GatewaySession) -> None:
        while self._state is SessionState.RUNNING:
            try:
                await session.connect()
            except asyncio.CancelledError:
                raise
            except AuthError as exc:
                await self._crash(f"authentication lost: {exc}")
                return
            except Exception as exc:  # noqa: BLE001
                reason = str(exc) or exc.__class__.__name__
            else:
                reason = "gateway closed the connection"

            # A closed client cannot connect again, so every retry starts from a fresh session.
            while True:
                if self._state is not SessionState.RUNNING:
                    return
                self._retries += 1
                if self._retries > self.max_retries:
                    await self._crash(f"{reason} (gave up after {self.max_retries} retries)")
                    return
                delay = self.backoff_delay(self._retries)
                self.logger.warn(
                    f"Gateway disconnected: {reason}. Reconnecting in {delay:.1f}s "
                    f"(attempt {self._retries}/{self.max_retries})",
                    "gateway.reconnecting",
                    attempt=self._retries,
                )
                await asyncio.sleep(delay)
                if self._state is not SessionState.RUNNING:
                    return
                try:
                    session = await self._reopen()
                except asyncio.CancelledError:
                    raise
                except AuthError as exc:
                    await self._crash(f"authentication lost: {exc}")
                    return
                except Exception as exc:  # noqa: BLE001
                    reason = str(exc) or exc.__class__.__name__
                    continue
                break

    async def _reopen(self) -> GatewaySession:
        old = self._session
        if old is not None:
            await self._close_session(old)
        session = self.session_factory(self)
        self._session = session
        await session.login(self._token)
        return session

    async def _crash(self, reason: str) -> None:
        self._state = SessionState.CRASHED
        self.logger.error(f"Bot crashed: {reason}", "gateway.crashed")
        await self._cancel_handlers()
        if self._session is not None:
            await self._close_session(self._session)
        self._reset()

    async def _cancel_handlers(self) -> None:
        current = asyncio.current_task()
        pending = [task for task in self._handlers if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _flush_posts(self) -> None:
        pending = [send for send in self._posts if not send.done()]
        if not pending:
            return
        _done, still_pending = await asyncio.wait(pending, timeout=self.flush_timeout)
        for send in still_pending:
            send.cancel()
        if still_pending:
            self.logger.warn(f"Dropped {len(still_pending)} unsent message(s) during shutdown", "gateway.flush_timeout")
            await asyncio.gather(*still_pending, return_exceptions=True)

    async def _cancel_supervisor(self) -> None:
        supervisor, self._supervisor = self._supervisor, None
        if supervisor is None or supervisor is asyncio.current_task() or supervisor.done():
            return
        supervisor.cancel()
        await asyncio.gather(supervisor, return_exceptions=True)

    async def _close_session(self, session: GatewaySession) -> None:
        try:
            await session.close()
        except Exception as exc:  # noqa: BLE001
            self.logger.warn(f"Error while closing gateway session: {exc}", "gateway.close_failed")

    def _on_handler_done(self, task: asyncio.Task) -> None:
        self._handlers.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(f"Message handler failed: {exc!r}", "gateway.handler_failed")

    def _reset(self) -> None:
        if self._supervisor is not None and self._supervisor is not asyncio.current_task():
            self._supervisor.cancel()
        self._supervisor = None
        self._session = None
        self._login_task = None
        self._token = ""
        self.bot_user_id = None
        self._retries = 0
        self._state = SessionState.STOPPED
