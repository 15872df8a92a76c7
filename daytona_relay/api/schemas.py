"""Pydantic schemas for the HTTP surface."""

from __future__ import annotations

from pydantic import BaseModel, Field


class APIMessage(BaseModel):
    """Simple message envelope."""

    message: str


class ErrorResponse(BaseModel):
    """Body returned when a request fails before streaming starts."""

    error: str


class GenerateRequest(BaseModel):
    prompt: str | None = Field(default=None, description="Free-text generation prompt")


__all__ = ["APIMessage", "ErrorResponse", "GenerateRequest"]
