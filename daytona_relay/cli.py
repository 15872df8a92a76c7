"""Command-line entry points for serving and running generations."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer

from daytona_relay.api.streams import ClientChannel, EventRelay
from daytona_relay.config import RelaySettings, load_settings
from daytona_relay.errors import ConfigurationError
from daytona_relay.runner.orchestrator import GenerationOrchestrator, OrchestratorState

app = typer.Typer(help="Relay Daytona generation workers as event streams.")


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind"),
    port: int = typer.Option(8000, help="Port to listen on"),
    config: Path | None = typer.Option(None, envvar="DAYTONA_RELAY_CONFIG", help="TOML config"),
    log_level: str = typer.Option("info", help="Logging level"),
) -> None:
    """Run the HTTP API with uvicorn."""

    import uvicorn

    from daytona_relay.api.context import AppContext
    from daytona_relay.api.main import create_app

    logging.basicConfig(level=log_level.upper())
    application = create_app(AppContext(settings=load_settings(config)))
    uvicorn.run(application, host=host, port=port, log_level=log_level.lower())


@app.command("generate")
def generate(
    prompt: str = typer.Argument(..., help="Prompt forwarded to the worker"),
    config: Path | None = typer.Option(None, envvar="DAYTONA_RELAY_CONFIG", help="TOML config"),
) -> None:
    """Run one generation locally and print the event-stream frames."""

    settings = load_settings(config)
    try:
        env = settings.worker_environment()
    except ConfigurationError as exc:
        typer.echo(exc.message, err=True)
        raise typer.Exit(code=2) from exc
    outcome = asyncio.run(_relay_to_stdout(prompt, settings, env))
    if outcome is not OrchestratorState.COMPLETING:
        raise typer.Exit(code=1)


async def _relay_to_stdout(
    prompt: str, settings: RelaySettings, env: dict[str, str]
) -> OrchestratorState | None:
    channel = ClientChannel()
    orchestrator = GenerationOrchestrator(
        prompt=prompt,
        settings=settings,
        relay=EventRelay(channel),
        env=env,
    )
    task = asyncio.create_task(orchestrator.run())
    async for frame in channel.stream():
        typer.echo(frame.decode("utf-8"), nl=False)
    return await task


if __name__ == "__main__":
    app()
