"""Relay configuration loaded from TOML with environment overrides."""

from __future__ import annotations

import os
import shlex
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from daytona_relay.errors import ConfigurationError

__all__ = ["RelaySettings", "load_settings"]

_DEFAULT_WORKER_COMMAND = ("npx", "tsx", "scripts/generate-in-daytona.ts")
_DEFAULT_GRACE_PERIOD = 5.0
_ENV_CONFIG = "DAYTONA_RELAY_CONFIG"
_ENV_COMMAND = "DAYTONA_RELAY_WORKER_COMMAND"
_ENV_TIMEOUT = "DAYTONA_RELAY_WORKER_TIMEOUT"
_ENV_DAYTONA_KEY = "DAYTONA_API_KEY"
_ENV_ANTHROPIC_KEY = "ANTHROPIC_API_KEY"


@dataclass(slots=True)
class RelaySettings:
    """Worker invocation and credential settings."""

    worker_command: list[str] = field(default_factory=lambda: list(_DEFAULT_WORKER_COMMAND))
    worker_cwd: Path | None = None
    worker_timeout: float | None = None
    kill_grace_period: float | None = _DEFAULT_GRACE_PERIOD
    daytona_api_key: str | None = None
    anthropic_api_key: str | None = None
    read_chunk_size: int = 4096

    @classmethod
    def from_toml(cls, path: Path) -> RelaySettings:
        data = tomllib.loads(Path(path).read_text("utf-8"))
        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> RelaySettings:
        worker = data.get("worker", {})
        command = worker.get("command", list(_DEFAULT_WORKER_COMMAND))
        if isinstance(command, str):
            command = shlex.split(command)
        cwd = worker.get("cwd")
        return cls(
            worker_command=[str(part) for part in command],
            worker_cwd=Path(cwd) if cwd else None,
            worker_timeout=_optional_float(worker.get("timeout")),
            kill_grace_period=_optional_float(
                worker.get("kill_grace_period", _DEFAULT_GRACE_PERIOD)
            ),
            read_chunk_size=int(worker.get("read_chunk_size", 4096)),
        )

    def merged(
        self,
        *,
        worker_command: list[str] | None = None,
        worker_timeout: float | None = None,
        daytona_api_key: str | None = None,
        anthropic_api_key: str | None = None,
    ) -> RelaySettings:
        """Return a copy that applies environment overrides."""

        return replace(
            self,
            worker_command=worker_command or self.worker_command,
            worker_timeout=self.worker_timeout if worker_timeout is None else worker_timeout,
            daytona_api_key=daytona_api_key or self.daytona_api_key,
            anthropic_api_key=anthropic_api_key or self.anthropic_api_key,
        )

    def worker_environment(self, base_env: Mapping[str, str] | None = None) -> dict[str, str]:
        """Return the worker environment, or raise if credentials are missing."""

        if not self.daytona_api_key or not self.anthropic_api_key:
            raise ConfigurationError("Missing API keys")
        env = dict(os.environ if base_env is None else base_env)
        env[_ENV_DAYTONA_KEY] = self.daytona_api_key
        env[_ENV_ANTHROPIC_KEY] = self.anthropic_api_key
        env.setdefault("PYTHONUNBUFFERED", "1")
        return env


def load_settings(
    path: Path | None = None, environ: Mapping[str, str] | None = None
) -> RelaySettings:
    """Load settings from disk, then apply environment overrides."""

    environ = os.environ if environ is None else environ
    config_file = path or (Path(environ[_ENV_CONFIG]) if environ.get(_ENV_CONFIG) else None)
    if config_file is not None and Path(config_file).exists():
        settings = RelaySettings.from_toml(Path(config_file))
    else:
        settings = RelaySettings()

    env_command = environ.get(_ENV_COMMAND)
    return settings.merged(
        worker_command=shlex.split(env_command) if env_command else None,
        worker_timeout=_optional_float(environ.get(_ENV_TIMEOUT)),
        daytona_api_key=environ.get(_ENV_DAYTONA_KEY),
        anthropic_api_key=environ.get(_ENV_ANTHROPIC_KEY),
    )


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)
