"""Client-facing event-stream channel and the relay that writes to it."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from daytona_relay.errors import ChannelClosedError
from daytona_relay.runner.protocol import (
    ClaudeMessage,
    ErrorEvent,
    Event,
    Progress,
    ToolResult,
    ToolUse,
)

__all__ = [
    "DONE_FRAME",
    "ClientChannel",
    "ConnectionMonitor",
    "EventRelay",
    "encode_frame",
    "serialize_event",
]

logger = logging.getLogger(__name__)

DONE_FRAME = b"data: [DONE]\n\n"


def encode_frame(payload: dict[str, Any]) -> bytes:
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"data: {body}\n\n".encode()


def serialize_event(event: Event) -> dict[str, Any] | None:
    if isinstance(event, ClaudeMessage):
        return {"type": "claude_message", "content": event.content}
    if isinstance(event, ToolUse):
        return {"type": "tool_use", "name": event.name, "input": event.input}
    if isinstance(event, Progress):
        return {"type": "progress", "message": event.text}
    if isinstance(event, ErrorEvent):
        return {"type": "error", "message": event.message}
    if isinstance(event, ToolResult):
        return None
    raise TypeError(f"Unsupported event type: {type(event).__name__}")


class ClientChannel:
    """Byte channel between the relay (writer) and the HTTP response (reader).

    The reader side marks the channel disconnected when it is torn down
    before the writer closed it; later writes raise
    :class:`ChannelClosedError`.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._closed = False
        self._disconnected = False

    @property
    def closed(self) -> bool:
        return self._closed or self._disconnected

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    async def write(self, data: bytes) -> None:
        if self._disconnected:
            raise ChannelClosedError("Client channel is closed")
        if self._closed:
            raise RuntimeError("write() called after close()")
        await self._queue.put(data)

    def close(self) -> None:
        if self.closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def disconnect(self) -> None:
        """Mark the reading side as gone."""

        self._disconnected = True

    async def stream(self) -> AsyncIterator[bytes]:
        finished = False
        try:
            while True:
                data = await self._queue.get()
                if data is None:
                    finished = True
                    return
                yield data
        finally:
            if not finished:
                self.disconnect()


class ConnectionMonitor:
    """Fan out a single client-disconnect notification to registered callbacks."""

    def __init__(self) -> None:
        self._callbacks: list[Callable[[], None]] = []
        self._disconnected = False

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    def on_disconnect(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._callbacks.append(callback)

        def _remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:  # pragma: no cover - already removed
                pass

        return _remove

    def notify(self) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        logger.info("client.disconnected")
        for callback in list(self._callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Disconnect callback failed")


class EventRelay:
    """Serialize events onto a :class:`ClientChannel` and track its open state."""

    def __init__(self, channel: ClientChannel, monitor: ConnectionMonitor | None = None) -> None:
        self.channel = channel
        self.monitor = monitor or ConnectionMonitor()
        self._closed = False
        self._released = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event: Event) -> None:
        payload = serialize_event(event)
        if payload is not None:
            await self.send(payload)

    async def send(self, payload: dict[str, Any]) -> None:
        await self._write(encode_frame(payload))

    async def send_done(self) -> None:
        await self._write(DONE_FRAME)

    def close(self) -> None:
        """Release the channel exactly once; safe to call repeatedly."""

        self._closed = True
        if self._released:
            return
        self._released = True
        self.channel.close()

    async def _write(self, data: bytes) -> None:
        if self._closed:
            return
        try:
            await self.channel.write(data)
        except ChannelClosedError:
            self._closed = True
            self.monitor.notify()
        except Exception:
            logger.exception("Failed to write event to client")
