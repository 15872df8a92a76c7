"""Worker process supervisor for a single generation request."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import os
import signal as signals
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from daytona_relay.errors import SpawnError

__all__ = [
    "ExitStatus",
    "ProcessSupervisor",
    "WorkerProcess",
    "WorkerProtocol",
    "WorkerState",
]

logger = logging.getLogger(__name__)

STREAM_LIMIT = 2**16


class WorkerState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"
    SPAWN_ERROR = "spawn_error"


@dataclass(slots=True, frozen=True)
class ExitStatus:
    """How the worker finished: an exit code, or the signal that ended it."""

    exit_code: int | None = None
    signal: int | None = None

    @classmethod
    def from_returncode(cls, returncode: int) -> ExitStatus:
        if returncode < 0:
            return cls(signal=-returncode)
        return cls(exit_code=returncode)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    def describe(self) -> str:
        if self.signal is not None:
            try:
                name = signals.Signals(self.signal).name
            except ValueError:
                name = str(self.signal)
            return f"Process terminated by signal {name}"
        return f"Process exited with code {self.exit_code}"


class WorkerProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that resolves :attr:`exited` as soon as the worker exits.

    ``Process.wait()`` only returns once every pipe has closed as well, and a
    descendant that inherited stdout can hold those open long after the
    worker itself is gone.
    """

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(limit=limit, loop=loop)
        self.exited: asyncio.Future[int] = loop.create_future()
        self.subprocess_transport: asyncio.SubprocessTransport | None = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        super().connection_made(transport)
        self.subprocess_transport = transport  # type: ignore[assignment]

    def process_exited(self) -> None:
        if not self.exited.done() and self.subprocess_transport is not None:
            self.exited.set_result(self.subprocess_transport.get_returncode())
        super().process_exited()


@dataclass(slots=True)
class WorkerProcess:
    """Handle to the spawned worker and its output pipes."""

    process: asyncio.subprocess.Process
    transport: asyncio.SubprocessTransport
    protocol: WorkerProtocol
    argv: Sequence[str]

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def stdout(self) -> asyncio.StreamReader:
        assert self.process.stdout is not None
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        assert self.process.stderr is not None
        return self.process.stderr


class ProcessSupervisor:
    """Own exactly one worker process for the lifetime of a request."""

    def __init__(self, *, kill_grace_period: float | None = None) -> None:
        self.kill_grace_period = kill_grace_period
        self.state = WorkerState.PENDING
        self.worker: WorkerProcess | None = None
        self.exit_status: ExitStatus | None = None
        self._escalation: asyncio.TimerHandle | None = None

    @property
    def running(self) -> bool:
        return self.worker is not None and self.worker.process.returncode is None

    async def spawn(
        self,
        command: Sequence[str],
        args: Sequence[str],
        env: Mapping[str, str],
        *,
        cwd: Path | None = None,
    ) -> WorkerProcess:
        if self.worker is not None:
            raise SpawnError("Worker already spawned for this request")
        argv = [*command, *args]
        if not argv:
            self.state = WorkerState.SPAWN_ERROR
            raise SpawnError("Worker command is empty")
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.subprocess_exec(
                lambda: WorkerProtocol(limit=STREAM_LIMIT, loop=loop),
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(env),
                cwd=str(cwd) if cwd is not None else None,
                start_new_session=True,
            )
        except OSError as exc:
            self.state = WorkerState.SPAWN_ERROR
            raise SpawnError(str(exc)) from exc
        process = asyncio.subprocess.Process(transport, protocol, loop)
        self.worker = WorkerProcess(
            process=process, transport=transport, protocol=protocol, argv=argv
        )
        self.state = WorkerState.RUNNING
        logger.info("worker.spawned", extra={"pid": process.pid, "command": list(command)})
        return self.worker

    def kill(self, sig: int = signals.SIGTERM) -> None:
        """Signal the worker; repeated calls after the first are no-ops."""

        if self.state is not WorkerState.RUNNING or not self.running:
            return
        self.state = WorkerState.KILLED
        self._send(sig)
        if self.kill_grace_period is not None and sig != signals.SIGKILL:
            loop = asyncio.get_running_loop()
            self._escalation = loop.call_later(self.kill_grace_period, self._force_kill)

    async def wait(self, timeout: float | None = None) -> ExitStatus:
        """Wait for the worker to exit.

        Returns as soon as the worker process itself exits, whether or not
        its pipes are still held open. Raises :class:`TimeoutError` when
        ``timeout`` elapses first; the worker is left running for the
        caller to terminate.
        """

        if self.worker is None:
            raise SpawnError("Worker was never spawned")
        if self.exit_status is not None:
            return self.exit_status
        returncode = await asyncio.wait_for(asyncio.shield(self.worker.protocol.exited), timeout)
        status = ExitStatus.from_returncode(returncode)
        self.exit_status = status
        if self.state is WorkerState.RUNNING:
            self.state = WorkerState.EXITED
        if self._escalation is not None:
            self._escalation.cancel()
            self._escalation = None
        logger.info(
            "worker.exited",
            extra={"pid": self.worker.pid, "exit_code": status.exit_code, "signal": status.signal},
        )
        return status

    async def terminate(self) -> ExitStatus | None:
        """Make sure the worker is gone and release its transport.

        A running worker gets SIGTERM, then SIGKILL once the grace period
        passes without an exit. Safe to call after the worker exited.
        """

        if self.worker is None:
            return None
        try:
            if self.running:
                self.kill()
                try:
                    return await self.wait(timeout=self.kill_grace_period)
                except TimeoutError:
                    self._force_kill()
            return await self.wait()
        finally:
            self.worker.transport.close()

    def signal_stragglers(self, sig: int = signals.SIGTERM) -> bool:
        """Signal what is left of the worker's process group after it exited.

        Returns ``False`` when the group is already empty.
        """

        if self.worker is None or self.running:
            return False
        try:
            os.killpg(self.worker.pid, sig)
        except (ProcessLookupError, PermissionError):
            return False
        logger.info("worker.stragglers_signalled", extra={"pid": self.worker.pid, "signal": sig})
        return True

    # ------------------------------------------------------------------ helpers
    def _send(self, sig: int) -> None:
        # The worker leads its own process group (npx -> node children).
        assert self.worker is not None
        process = self.worker.process
        try:
            os.killpg(process.pid, sig)
        except (ProcessLookupError, PermissionError):
            with contextlib.suppress(ProcessLookupError):
                process.send_signal(sig)

    def _force_kill(self) -> None:
        if self._escalation is not None:
            self._escalation.cancel()
            self._escalation = None
        if self.worker is None or self.worker.process.returncode is not None:
            return
        logger.warning("worker.force_kill", extra={"pid": self.worker.pid})
        self._send(signals.SIGKILL)
