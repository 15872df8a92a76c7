from __future__ import annotations

import asyncio

import pytest

from daytona_relay.api.streams import (
    DONE_FRAME,
    ClientChannel,
    ConnectionMonitor,
    EventRelay,
    encode_frame,
    serialize_event,
)
from daytona_relay.errors import ChannelClosedError
from daytona_relay.runner.protocol import ClaudeMessage, Progress, ToolResult, ToolUse


async def _drain(channel: ClientChannel) -> list[bytes]:
    return [frame async for frame in channel.stream()]


def test_encode_frame_uses_event_stream_framing() -> None:
    frame = encode_frame({"type": "progress", "message": "Installing dépendances"})
    assert frame == 'data: {"type":"progress","message":"Installing dépendances"}\n\n'.encode()
    assert DONE_FRAME == b"data: [DONE]\n\n"


def test_serialize_event_shapes() -> None:
    assert serialize_event(ClaudeMessage(content="hi")) == {
        "type": "claude_message",
        "content": "hi",
    }
    assert serialize_event(ToolUse(name="bash", input={"cmd": "ls"})) == {
        "type": "tool_use",
        "name": "bash",
        "input": {"cmd": "ls"},
    }
    assert serialize_event(Progress(text="step")) == {"type": "progress", "message": "step"}
    assert serialize_event(ToolResult(payload={})) is None


def test_relay_writes_frames_then_closes_once() -> None:
    async def scenario() -> list[bytes]:
        channel = ClientChannel()
        relay = EventRelay(channel)
        await relay.emit(Progress(text="one"))
        await relay.emit(ToolResult(payload={"ignored": True}))
        await relay.send_done()
        relay.close()
        relay.close()
        await relay.emit(Progress(text="after close"))
        return await _drain(channel)

    frames = asyncio.run(scenario())
    assert frames == [encode_frame({"type": "progress", "message": "one"}), DONE_FRAME]


def test_write_failure_closes_relay_and_notifies_monitor() -> None:
    async def scenario() -> tuple[EventRelay, list[str]]:
        channel = ClientChannel()
        monitor = ConnectionMonitor()
        calls: list[str] = []
        monitor.on_disconnect(lambda: calls.append("kill"))
        relay = EventRelay(channel, monitor)
        stream = channel.stream()
        await relay.emit(Progress(text="first"))
        assert await stream.__anext__() == encode_frame({"type": "progress", "message": "first"})
        await stream.aclose()
        assert channel.disconnected
        await relay.emit(Progress(text="second"))
        await relay.emit(Progress(text="third"))
        await relay.send_done()
        relay.close()
        return relay, calls

    relay, calls = asyncio.run(scenario())
    assert relay.closed
    assert calls == ["kill"]


def test_other_write_failures_do_not_close_relay() -> None:
    class FlakyChannel(ClientChannel):
        def __init__(self) -> None:
            super().__init__()
            self.failures = 1

        async def write(self, data: bytes) -> None:
            if self.failures:
                self.failures -= 1
                raise OSError("transient")
            await super().write(data)

    async def scenario() -> tuple[EventRelay, list[bytes]]:
        channel = FlakyChannel()
        relay = EventRelay(channel)
        await relay.emit(Progress(text="lost"))
        await relay.emit(Progress(text="kept"))
        relay.close()
        return relay, await _drain(channel)

    relay, frames = asyncio.run(scenario())
    assert not relay.monitor.disconnected
    assert frames == [encode_frame({"type": "progress", "message": "kept"})]


def test_channel_rejects_writes_after_disconnect() -> None:
    async def scenario() -> None:
        channel = ClientChannel()
        channel.disconnect()
        with pytest.raises(ChannelClosedError):
            await channel.write(b"data: x\n\n")
        channel.close()

    asyncio.run(scenario())


def test_monitor_notifies_once() -> None:
    monitor = ConnectionMonitor()
    calls: list[int] = []
    remove = monitor.on_disconnect(lambda: calls.append(1))
    monitor.on_disconnect(lambda: calls.append(2))
    monitor.notify()
    monitor.notify()
    remove()
    assert calls == [1, 2]
    assert monitor.disconnected
