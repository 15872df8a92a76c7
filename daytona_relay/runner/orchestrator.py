"""Per-request state machine relaying worker output to a client stream."""

from __future__ import annotations

import asyncio
import enum
import logging
import signal as signals
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from daytona_relay.config import RelaySettings
from daytona_relay.errors import SpawnError, WorkerTimeoutError
from daytona_relay.runner.protocol import LineParser, SessionResult, StderrParser, StdoutParser
from daytona_relay.runner.supervisor import ExitStatus, ProcessSupervisor, WorkerProcess

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from daytona_relay.api.streams import EventRelay

__all__ = ["GenerationOrchestrator", "OrchestratorState", "describe_timeout"]

logger = logging.getLogger(__name__)

NO_PREVIEW_WARNING = "No preview URL found"
DRAIN_LIMIT = 5.0


def describe_timeout(seconds: float) -> str:
    unit = "second" if seconds == 1 else "seconds"
    return f"Worker exceeded timeout of {seconds:g} {unit}"


class OrchestratorState(str, enum.Enum):
    INIT = "init"
    SPAWNING = "spawning"
    STREAMING = "streaming"
    COMPLETING = "completing"
    FAILING = "failing"
    CLOSED = "closed"


class GenerationOrchestrator:
    """Run one worker and relay its output, ending with a terminal event.

    All request state (worker handle, parse buffers, session result, relay)
    lives on the instance. ``run`` always finishes through :meth:`close`,
    which terminates a still-running worker and releases the relay.
    """

    def __init__(
        self,
        *,
        prompt: str,
        settings: RelaySettings,
        relay: EventRelay,
        env: Mapping[str, str],
        supervisor: ProcessSupervisor | None = None,
    ) -> None:
        self.prompt = prompt
        self.settings = settings
        self.relay = relay
        self.env = dict(env)
        self.supervisor = supervisor or ProcessSupervisor(
            kill_grace_period=settings.kill_grace_period
        )
        self.result = SessionResult()
        self.stdout_parser = StdoutParser(self.result)
        self.stderr_parser = StderrParser()
        self.state = OrchestratorState.INIT
        self.exit_status: ExitStatus | None = None
        self.outcome: OrchestratorState | None = None
        self._readers: list[asyncio.Task[None]] = []
        self._closed = False
        relay.monitor.on_disconnect(self._on_disconnect)

    async def run(self) -> OrchestratorState | None:
        """Drive the request to completion and return its outcome."""

        logger.info("generation.start", extra={"prompt": self.prompt})
        try:
            terminal = await self._execute()
            await self.relay.send(terminal)
            await self.relay.send_done()
        finally:
            await self.close()
        return self.outcome

    async def close(self) -> None:
        """Cancel the readers, release the relay and reap the worker; runs once."""

        if self._closed:
            return
        self._closed = True
        for task in self._readers:
            task.cancel()
        if self._readers:
            await asyncio.gather(*self._readers, return_exceptions=True)
        self.relay.close()
        try:
            await self.supervisor.terminate()
        finally:
            self.state = OrchestratorState.CLOSED

    # ------------------------------------------------------------------ helpers
    async def _execute(self) -> dict[str, Any]:
        try:
            self.state = OrchestratorState.SPAWNING
            worker = await self.supervisor.spawn(
                self.settings.worker_command,
                [self.prompt],
                self.env,
                cwd=self.settings.worker_cwd,
            )
            self.state = OrchestratorState.STREAMING
            self.exit_status = await self._stream(worker)
        except (SpawnError, WorkerTimeoutError) as exc:
            return self._fail(str(exc))
        except Exception as exc:
            logger.exception("Error during generation")
            return self._fail(str(exc) or type(exc).__name__)
        if self.exit_status.succeeded:
            return self._complete()
        return self._fail(self.exit_status.describe())

    async def _stream(self, worker: WorkerProcess) -> ExitStatus:
        self._readers = [
            asyncio.create_task(self._pump(worker.stdout, self.stdout_parser)),
            asyncio.create_task(self._pump(worker.stderr, self.stderr_parser)),
        ]
        timeout = self.settings.worker_timeout
        try:
            status = await self.supervisor.wait(timeout=timeout)
        except TimeoutError:
            self.supervisor.kill()
            raise WorkerTimeoutError(describe_timeout(timeout)) from None
        if not self.relay.closed:
            await self._drain()
        return status

    async def _drain(self) -> None:
        # Output written before exit stays readable; descendants still holding
        # the pipes are signalled so the terminal event is not held back.
        self.supervisor.signal_stragglers()
        limit = self._drain_limit()
        _, pending = await asyncio.wait(self._readers, timeout=limit)
        if pending:
            self.supervisor.signal_stragglers(signals.SIGKILL)
            _, pending = await asyncio.wait(pending, timeout=limit)
        if pending:
            logger.warning("worker.output_abandoned", extra={"readers": len(pending)})
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        for task in self._readers:
            if not task.cancelled():
                task.result()

    def _drain_limit(self) -> float:
        limit = self.settings.kill_grace_period or DRAIN_LIMIT
        if self.settings.worker_timeout is not None:
            limit = min(limit, self.settings.worker_timeout)
        return limit

    async def _pump(self, stream: asyncio.StreamReader, parser: LineParser) -> None:
        while chunk := await stream.read(self.settings.read_chunk_size):
            for event in parser.feed(chunk):
                await self.relay.emit(event)
        for event in parser.flush():
            await self.relay.emit(event)

    def _complete(self) -> dict[str, Any]:
        self.state = self.outcome = OrchestratorState.COMPLETING
        if self.result.preview_url:
            logger.info("generation.complete", extra={"preview_url": self.result.preview_url})
        else:
            self.result.warning = NO_PREVIEW_WARNING
            logger.warning("No preview URL found, but generation completed")
        payload: dict[str, Any] = {
            "type": "complete",
            "sandboxId": self.result.sandbox_id or "",
            "previewUrl": self.result.preview_url,
        }
        if self.result.warning:
            payload["warning"] = self.result.warning
        return payload

    def _fail(self, message: str) -> dict[str, Any]:
        self.state = self.outcome = OrchestratorState.FAILING
        logger.error("generation.failed", extra={"reason": message})
        return {"type": "error", "message": message}

    def _on_disconnect(self) -> None:
        logger.info("Connection closed by client; terminating worker")
        self.supervisor.kill()
