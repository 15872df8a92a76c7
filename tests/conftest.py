"""Shared pytest fixtures."""

from __future__ import annotations

import sys
import textwrap
from pathlib import Path
from typing import Any

import pytest

from daytona_relay.config import RelaySettings
from tests.helpers import SettingsFactory


@pytest.fixture()
def make_settings(tmp_path: Path) -> SettingsFactory:
    """Build settings whose worker is a throwaway Python script."""

    def _make(script: str, **overrides: Any) -> RelaySettings:
        path = tmp_path / "worker.py"
        path.write_text(textwrap.dedent(script), encoding="utf-8")
        values: dict[str, Any] = {
            "worker_command": [sys.executable, str(path)],
            "kill_grace_period": 2.0,
            "daytona_api_key": "daytona-key",
            "anthropic_api_key": "anthropic-key",
        }
        values.update(overrides)
        return RelaySettings(**values)

    return _make
