from __future__ import annotations

import dataclasses
import heapq
import itertools
from collections import deque
from typing import Iterable

from chatrelay.errors import ChannelNotFound
from chatrelay.models import Message


class MessageStore:
    """Bounded per-channel conversation history.

    Each channel keeps at most ``max_messages`` entries; the oldest entry is
    evicted first. Stored messages are stamped with a process-wide ``seq`` so
    histories of different channels can be merged in arrival order.
    """

    def __init__(self, max_messages: int = 200) -> None:
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self.max_messages = max_messages
        self._messages: dict[int, deque[Message]] = {}
        self._received: dict[int, int] = {}
        self._seq = itertools.count(1)

    def append(self, channel_id: int, message: Message) -> Message:
        rows = self._messages.get(channel_id)
        if rows is None:
            rows = deque(maxlen=self.max_messages)
            self._messages[channel_id] = rows
        stored = dataclasses.replace(message, seq=next(self._seq))
        rows.append(stored)
        self._received[channel_id] = self._received.get(channel_id, 0) + 1
        return stored

    def history(self, channel_id: int, limit: int | None = None) -> list[Message]:
        rows = self._messages.get(channel_id)
        if rows is None:
            raise ChannelNotFound(f"channel {channel_id} has no history")
        if limit is None:
            return list(rows)
        if limit <= 0:
            return []
        return list(rows)[-limit:]

    def merged_history(self, channel_ids: Iterable[int], limit: int | None = None) -> list[Message]:
        streams = [list(self._messages.get(cid, ())) for cid in set(channel_ids)]
        merged = list(heapq.merge(*streams, key=lambda row: row.seq))
        if limit is None:
            return merged
        if limit <= 0:
            return []
        return merged[-limit:]

    def clear(self, channel_id: int) -> None:
        rows = self._messages.get(channel_id)
        if rows is not None:
            rows.clear()

    def count(self, channel_id: int) -> int:
        return len(self._messages.get(channel_id, ()))

    def received(self, channel_id: int) -> int:
        return self._received.get(channel_id, 0)

    def channel_ids(self) -> list[int]:
        return list(self._messages.keys())
