"""Daytona generation relay package."""

from .version import __version__  # noqa: F401
