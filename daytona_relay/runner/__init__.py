"""Worker supervision, output protocol parsing, and request orchestration."""

from .orchestrator import GenerationOrchestrator, OrchestratorState
from .protocol import (
    ClaudeMessage,
    ErrorEvent,
    Event,
    Progress,
    SessionResult,
    StderrParser,
    StdoutParser,
    ToolResult,
    ToolUse,
)
from .supervisor import ExitStatus, ProcessSupervisor, WorkerProcess, WorkerState

__all__ = [
    "ClaudeMessage",
    "ErrorEvent",
    "Event",
    "ExitStatus",
    "GenerationOrchestrator",
    "OrchestratorState",
    "ProcessSupervisor",
    "Progress",
    "SessionResult",
    "StderrParser",
    "StdoutParser",
    "ToolResult",
    "ToolUse",
    "WorkerProcess",
    "WorkerState",
]
