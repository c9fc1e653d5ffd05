from __future__ import annotations

import asyncio
from collections import deque
from typing import Any

from chatrelay.models import LogEntry, LogLevel


class LogSubscription:
    def __init__(self, broadcaster: "LogBroadcaster", maxsize: int) -> None:
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[LogEntry] = asyncio.Queue(maxsize=max(1, maxsize))
        self.dropped = 0
        self.closed = False

    def offer(self, entry: LogEntry) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            # Slow subscriber: drop the oldest undelivered entry.
            self._queue.get_nowait()
            self.dropped += 1
            self._queue.put_nowait(entry)

    def pending(self) -> int:
        return self._queue.qsize()

    def get_nowait(self) -> LogEntry:
        return self._queue.get_nowait()

    async def get(self) -> LogEntry:
        return await self._queue.get()

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)

    def __aiter__(self) -> "LogSubscription":
        return self

    async def __anext__(self) -> LogEntry:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()

    def __enter__(self) -> "LogSubscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class LogBroadcaster:
    def __init__(self, capacity: int = 200, *, subscriber_queue_size: int = 100, echo: bool = True) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.subscriber_queue_size = subscriber_queue_size
        self.echo = echo
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._subscribers: list[LogSubscription] = []

    def emit(self, entry: LogEntry) -> LogEntry:
        self._entries.append(entry)
        if self.echo:
            suffix = f" {entry.data}" if entry.data else ""
            print(f"[{entry.timestamp.isoformat()}] {entry.level.value.upper()} {entry.message}{suffix}")
        for subscriber in list(self._subscribers):
            subscriber.offer(entry)
        return entry

    def log(self, level: LogLevel, message: str, event: str = "", **data: Any) -> LogEntry:
        return self.emit(LogEntry(level=level, message=message, event=event, data=data))

    def info(self, message: str, event: str = "", **data: Any) -> LogEntry:
        return self.log(LogLevel.INFO, message, event, **data)

    def warn(self, message: str, event: str = "", **data: Any) -> LogEntry:
        return self.log(LogLevel.WARN, message, event, **data)

    def error(self, message: str, event: str = "", **data: Any) -> LogEntry:
        return self.log(LogLevel.ERROR, message, event, **data)

    def success(self, message: str, event: str = "", **data: Any) -> LogEntry:
        return self.log(LogLevel.SUCCESS, message, event, **data)

    def snapshot(self) -> list[LogEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def subscribe(self, maxsize: int | None = None) -> LogSubscription:
        subscription = LogSubscription(self, maxsize or self.subscriber_queue_size)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: LogSubscription) -> None:
        subscription.closed = True
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
