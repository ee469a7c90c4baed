"""Control channel transports: one-way editor notifications"""

import asyncio
import logging
import sys
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from pydantic import BaseModel, ValidationError


LOGGER = logging.getLogger(__name__)


class Notification(BaseModel):
    """{"method": "preview", "params": ["/abs/path.md"]}"""
    method: str
    params: list[Any] = []

    @property
    def path(self) -> str | None:
        return str(self.params[0]) if self.params else None


class ControlChannel(ABC):
    """A source of notifications; the transport behind it is interchangeable."""

    @abstractmethod
    def notifications(self) -> AsyncIterator[Notification]:
        raise NotImplementedError


def parse_line(line: bytes | str) -> Notification | None:
    """Decode one JSON line; malformed input is logged and yields None."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        return Notification.model_validate_json(line)
    except ValidationError as e:
        LOGGER.warning("ignoring malformed notification %r: %s", line[:200], e.errors()[0]["msg"])
        return None


class StreamControlChannel(ControlChannel):
    """Newline-delimited JSON notifications read from an asyncio stream (pipe, socket, stdin)."""

    def __init__(self, reader: asyncio.StreamReader):
        self.reader = reader

    async def notifications(self) -> AsyncIterator[Notification]:
        while True:
            line = await self.reader.readline()
            if not line:
                LOGGER.info("control stream closed")
                return
            note = parse_line(line)
            if note is not None:
                yield note


class QueueControlChannel(ControlChannel):
    """In-process channel; the HTTP control route and tests push into it."""

    def __init__(self):
        self.queue: asyncio.Queue[Notification | None] = asyncio.Queue()

    def put(self, note: Notification) -> None:
        self.queue.put_nowait(note)

    def close(self) -> None:
        self.queue.put_nowait(None)

    async def notifications(self) -> AsyncIterator[Notification]:
        while True:
            note = await self.queue.get()
            if note is None:
                return
            yield note


async def stdin_channel() -> StreamControlChannel:
    """Attach a StreamControlChannel to this process's stdin."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return StreamControlChannel(reader)
