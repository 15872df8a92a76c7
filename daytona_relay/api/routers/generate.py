"""Streaming generation endpoint."""

# ruff: noqa: B008

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError as PydanticValidationError

from daytona_relay.api.context import AppContext, get_app_context
from daytona_relay.api.schemas import ErrorResponse, GenerateRequest
from daytona_relay.api.streams import ClientChannel, EventRelay
from daytona_relay.errors import ValidationError
from daytona_relay.runner.orchestrator import GenerationOrchestrator

router = APIRouter(prefix="/api", tags=["generate"])
logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


@router.post(
    "/generate-daytona",
    response_class=StreamingResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def generate(
    request: Request,
    context: AppContext = Depends(get_app_context),
) -> StreamingResponse:
    payload = await _read_payload(request)
    if not payload.prompt:
        raise ValidationError("Prompt is required")
    env = context.settings.worker_environment()
    logger.info("Starting Daytona generation", extra={"prompt": payload.prompt})

    channel = ClientChannel()
    orchestrator = GenerationOrchestrator(
        prompt=payload.prompt,
        settings=context.settings,
        relay=EventRelay(channel),
        env=env,
    )
    context.start_task(orchestrator.run())
    return StreamingResponse(
        channel.stream(),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )


async def _read_payload(request: Request) -> GenerateRequest:
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Invalid JSON body") from exc
    if not isinstance(data, dict):
        raise ValidationError("Prompt is required")
    try:
        return GenerateRequest.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError("Prompt is required") from exc


__all__ = ["router"]
