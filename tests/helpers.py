"""Helpers for driving orchestrators and decoding event-stream frames."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

from daytona_relay.api.streams import ClientChannel
from daytona_relay.config import RelaySettings
from daytona_relay.runner.orchestrator import GenerationOrchestrator

SettingsFactory = Callable[..., RelaySettings]


async def collect_frames(orchestrator: GenerationOrchestrator, channel: ClientChannel) -> list[bytes]:
    task = asyncio.create_task(orchestrator.run())
    frames = [frame async for frame in channel.stream()]
    await task
    return frames


def decode_frames(frames: list[bytes]) -> list[Any]:
    decoded: list[Any] = []
    for frame in frames:
        text = frame.decode("utf-8")
        assert text.startswith("data: ") and text.endswith("\n\n"), text
        body = text[len("data: ") : -2]
        decoded.append(body if body == "[DONE]" else json.loads(body))
    return decoded


def parse_stream(body: str) -> list[Any]:
    return decode_frames([f"{part}\n\n".encode() for part in body.split("\n\n") if part])
