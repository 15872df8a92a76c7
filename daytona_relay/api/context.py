"""Application context helpers shared across routers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any, cast

from fastapi import Request

from daytona_relay.config import RelaySettings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AppContext:
    """Container for shared application dependencies.

    ``tasks`` keeps strong references to in-flight generation tasks so they
    are not garbage collected mid-stream and can be cancelled on shutdown.
    """

    settings: RelaySettings
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)

    def start_task(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    async def shutdown(self) -> None:
        pending = [task for task in self.tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self.tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Generation task failed", exc_info=task.exception())


def get_app_context(request: Request) -> AppContext:
    """Return the configured :class:`AppContext`."""

    context = getattr(request.app.state, "context", None)
    if context is None:  # pragma: no cover - defensive guard
        raise RuntimeError("Application context missing")
    return cast(AppContext, context)


__all__ = ["AppContext", "get_app_context"]
