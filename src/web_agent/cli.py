"""Command line interface for web-agent."""

from __future__ import annotations

import logging
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version
from pathlib import Path
from typing import Annotated, Any, Optional

import typer

from .config import load_config
from .errors import RunStateError
from .factory import build_orchestrator
from .models import RunState

app = typer.Typer(help="Web Agent entry point")


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure logging before executing any command."""

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@app.command()
def version() -> None:
    """Print the package version."""

    try:
        typer.echo(get_version("web-agent"))
    except PackageNotFoundError:  # pragma: no cover - when running from source tree
        typer.echo("0.0.0")


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", help="Interface to bind.")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", help="Port to listen on.")] = 8000,
    reload: Annotated[bool, typer.Option("--reload", help="Reload on code changes.")] = False,
) -> None:
    """Serve the HTTP API."""

    import uvicorn

    from .api.service import app as service_app

    uvicorn.run(service_app, host=host, port=port, reload=reload)


@app.command()
def run(
    goal: Annotated[str, typer.Option("--goal", "-g", help="What the agent should achieve.")],
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to YAML configuration."),
    ] = None,
    env_file: Annotated[
        Optional[Path],
        typer.Option("--env-file", help="Path to an .env file with default configuration values."),
    ] = None,
    session_id: Annotated[
        Optional[str],
        typer.Option("--session-id", help="Reuse or name the browser session."),
    ] = None,
    model: Annotated[
        Optional[str],
        typer.Option("--model", help="LLM model identifier."),
    ] = None,
    api_key: Annotated[
        Optional[str],
        typer.Option("--api-key", help="API key for the LLM provider."),
    ] = None,
    max_steps: Annotated[
        Optional[int],
        typer.Option("--max-steps", min=1, help="Maximum planning iterations per run."),
    ] = None,
    headless: Annotated[
        Optional[bool],
        typer.Option("--headless/--headed", help="Run a local browser headless (or headed)."),
    ] = None,
    connect_url: Annotated[
        Optional[str],
        typer.Option("--connect-url", help="CDP endpoint template for a remote browser session."),
    ] = None,
    screenshot: Annotated[
        Optional[Path],
        typer.Option("--screenshot", help="Write the final screenshot to this file."),
    ] = None,
) -> None:
    """Run a goal in the browser, asking for a choice whenever the agent needs one."""

    overrides: dict[str, Any] = {}
    if model or api_key:
        overrides.setdefault("llm", {})
        if model:
            overrides["llm"]["model"] = model
        if api_key:
            overrides["llm"]["api_key"] = api_key
    if headless is not None or connect_url is not None:
        overrides.setdefault("browser", {})
        if headless is not None:
            overrides["browser"]["headless"] = headless
        if connect_url is not None:
            overrides["browser"]["connect_url_template"] = connect_url
    if max_steps is not None:
        overrides["loop"] = {"max_steps": max_steps}

    config = load_config(config_path, env_file=env_file, **overrides)
    orchestrator = build_orchestrator(config)

    agent_run = orchestrator.start_task(goal, session_id=session_id)
    try:
        while agent_run.state is RunState.SUSPENDED:
            choices = agent_run.pending_choices()
            for index, choice in enumerate(choices):
                typer.echo(f"  [{index}] {choice.description}")
            index = typer.prompt("Choose an action", type=int)
            try:
                orchestrator.resume_with_chosen_action(agent_run, index)
            except RunStateError as exc:
                typer.echo(str(exc), err=True)
    finally:
        final_screenshot = orchestrator.terminate(agent_run.session_id)
    if screenshot and final_screenshot:
        screenshot.write_bytes(final_screenshot)
        typer.echo(f"Final screenshot written to {screenshot}")

    if agent_run.state is not RunState.COMPLETE:
        typer.echo(f"Run failed: {agent_run.message}", err=True)
        raise typer.Exit(code=1)
    typer.echo(agent_run.message or "Task completed successfully.")


if __name__ == "__main__":
    app()
