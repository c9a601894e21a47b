"""CLI runner for the image-to-video client.

Usage:
    python -m i2v_client.runner token set YOUR_TOKEN
    python -m i2v_client.runner generate --image https://i.ibb.co/xxxxx/face.jpg
    python -m i2v_client.runner status TASK_ID
    python -m i2v_client.runner list
    python -m i2v_client.runner test-connection
    python -m i2v_client.runner normalize "https://drive.google.com/file/d/ID/view"
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from i2v_client.client import I2VClient
from i2v_client.config import Settings, load_settings
from i2v_client.credentials import FileCredentialStore, redact
from i2v_client.errors import GenerationError
from i2v_client.models import DurationUnit, GenerationTask, ModelVariant, TaskStatus
from i2v_client.orchestrator import (
    GenerationOrchestrator,
    GenerationParams,
    GenerationState,
    Phase,
)
from i2v_client.urls import normalize_source_url

console = Console()

_PHASE_STYLES = {
    Phase.IDLE: "dim",
    Phase.VALIDATING: "cyan",
    Phase.SUBMITTING: "cyan",
    Phase.AWAITING_RESPONSE: "yellow",
    Phase.POLLING: "yellow",
    Phase.COMPLETED: "green",
    Phase.FAILED: "red",
}

_TASK_STYLES = {
    TaskStatus.QUEUED: "dim",
    TaskStatus.PROCESSING: "yellow",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
}


def _setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quiet down httpx unless debugging
    if not verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


class ConsoleRenderer:
    """Prints each orchestrator state as a status line."""

    def __init__(self, out: Console) -> None:
        self.out = out

    def __call__(self, state: GenerationState) -> None:
        if state.phase is Phase.IDLE:
            return
        style = _PHASE_STYLES[state.phase]
        label = state.phase.value.upper().replace("_", " ")
        self.out.print(f"[{style}]{label}[/{style}] {state.message}")
        if state.phase is Phase.COMPLETED and state.result_url:
            self.out.print(f"[green bold]Result:[/green bold] {state.result_url}")


def _store(settings: Settings) -> FileCredentialStore:
    return FileCredentialStore(settings.credentials_path, settings.credentials_key)


def _require_token(settings: Settings) -> str:
    token = _store(settings).get()
    if not token:
        console.print("[red]Error: no API token stored. Run 'token set <TOKEN>' first.[/red]")
        sys.exit(1)
    return token


def _task_table(tasks: list[GenerationTask], title: str) -> Table:
    table = Table(title=title, show_lines=True)
    table.add_column("Task ID", style="cyan", max_width=26)
    table.add_column("Name")
    table.add_column("Created")
    table.add_column("Status", justify="center")
    table.add_column("Result / Error", max_width=60)

    for task in sorted(tasks, key=lambda t: t.created_at, reverse=True):
        style = _TASK_STYLES[task.status]
        detail = task.result_url or task.failure_reason or ""
        table.add_row(
            task.id or "N/A",
            task.name or "",
            task.created_at.strftime("%Y-%m-%d %H:%M"),
            f"[{style}]{task.status.value.upper()}[/{style}]",
            detail,
        )
    return table


@click.group()
@click.option("--config", "-c", default=None, help="Path to config.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging and echo requests")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """Image-to-video generation client."""
    ctx.ensure_object(dict)
    _setup_logging(verbose)
    try:
        ctx.obj["settings"] = load_settings(config)
    except FileNotFoundError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    except ValueError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        sys.exit(1)
    ctx.obj["verbose"] = verbose


# ----------------------------------------------------------------------
# Token management
# ----------------------------------------------------------------------

@cli.group("token")
def cmd_token() -> None:
    """Manage the stored API token."""


@cmd_token.command("set")
@click.argument("value")
@click.pass_context
def cmd_token_set(ctx: click.Context, value: str) -> None:
    """Store the API token (just the token, without "Bearer")."""
    value = value.strip()
    if value.lower().startswith("bearer "):
        value = value[len("bearer "):].strip()
    _store(ctx.obj["settings"]).set(value)
    console.print(f"[green]API token saved:[/green] {redact(value)}")


@cmd_token.command("clear")
@click.pass_context
def cmd_token_clear(ctx: click.Context) -> None:
    """Remove the stored API token."""
    _store(ctx.obj["settings"]).clear()
    console.print("[yellow]API token cleared[/yellow]")


@cmd_token.command("show")
@click.pass_context
def cmd_token_show(ctx: click.Context) -> None:
    """Show the stored API token, redacted."""
    console.print(f"API token: {redact(_store(ctx.obj['settings']).get())}")


# ----------------------------------------------------------------------
# Generation
# ----------------------------------------------------------------------

@cli.command("normalize")
@click.argument("url")
def cmd_normalize(url: str) -> None:
    """Print the directly fetchable form of an image link."""
    click.echo(normalize_source_url(url))


async def _generate(
    settings: Settings,
    params: GenerationParams,
    wait: bool,
    download: bool,
    output: str | None,
    verbose: bool,
) -> GenerationState:
    async with I2VClient(settings.api, verbose=verbose) as client:
        orchestrator = GenerationOrchestrator(
            client,
            _store(settings),
            settings.polling,
            render=ConsoleRenderer(console),
        )
        try:
            state = await orchestrator.submit(params)
            if wait and not state.is_terminal:
                state = await orchestrator.wait()
        finally:
            await orchestrator.close()

        if download and state.result_url:
            name = state.request.name if state.request else "video"
            target = Path(output) if output else settings.output_dir / f"{name}.mp4"
            path = await client.download_file(state.result_url, target)
            console.print(f"[green]Saved:[/green] {path}")
        return state


@cli.command("generate")
@click.option("--image", "-i", "image_url", required=True, help="Source image URL")
@click.option("--end-image", default=None, help="Last frame URL (first_last_frame variant)")
@click.option("--prompt", "-p", default=None, help="Motion/style prompt")
@click.option("--negative-prompt", default=None, help="Things to avoid")
@click.option("--duration", "-d", type=int, default=None, help="5/10/15 seconds or 81/129 frames")
@click.option(
    "--unit", type=click.Choice([u.value for u in DurationUnit]), default=None,
    help="Duration unit",
)
@click.option(
    "--variant", type=click.Choice([v.value for v in ModelVariant]), default=None,
    help="Model variant",
)
@click.option("--extend-prompt/--no-extend-prompt", default=None, help="Let the service expand the prompt")
@click.option("--count", "-n", type=int, default=None, help="Number of videos (1-5)")
@click.option("--name", default=None, help="Job name (default: Video_<timestamp>)")
@click.option("--wait/--no-wait", default=True, help="Poll until the task finishes")
@click.option("--download", is_flag=True, help="Download the finished video")
@click.option("--output", "-o", default=None, help="Download path")
@click.pass_context
def cmd_generate(
    ctx: click.Context,
    image_url: str,
    end_image: str | None,
    prompt: str | None,
    negative_prompt: str | None,
    duration: int | None,
    unit: str | None,
    variant: str | None,
    extend_prompt: bool | None,
    count: int | None,
    name: str | None,
    wait: bool,
    download: bool,
    output: str | None,
) -> None:
    """Submit an image-to-video generation and follow it to completion."""
    settings: Settings = ctx.obj["settings"]
    defaults = settings.defaults
    params = GenerationParams(
        image_url=image_url,
        prompt=defaults.prompt if prompt is None else prompt,
        negative_prompt=defaults.negative_prompt if negative_prompt is None else negative_prompt,
        duration=defaults.duration if duration is None else duration,
        duration_unit=unit or defaults.duration_unit,
        variant=variant or defaults.variant,
        extend_prompt=defaults.extend_prompt if extend_prompt is None else extend_prompt,
        count=defaults.count if count is None else count,
        end_image_url=end_image,
        name=name,
    )

    try:
        state = asyncio.run(
            _generate(settings, params, wait, download, output, ctx.obj["verbose"])
        )
    except GenerationError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted. The remote task keeps running.[/yellow]")
        sys.exit(130)

    if state.phase is Phase.FAILED:
        sys.exit(1)
    if state.phase is Phase.POLLING and state.task is not None:
        console.print(f"Task id: [cyan]{state.task.id}[/cyan]. Check later with 'status'.")


# ----------------------------------------------------------------------
# Inspection
# ----------------------------------------------------------------------

async def _fetch(settings: Settings, token: str, task_id: str | None, verbose: bool) -> GenerationTask:
    async with I2VClient(settings.api, verbose=verbose) as client:
        return await client.fetch_task(task_id, token)


async def _list(settings: Settings, token: str, verbose: bool) -> list[GenerationTask]:
    async with I2VClient(settings.api, verbose=verbose) as client:
        return await client.list_tasks(token)


@cli.command("status")
@click.argument("task_id", required=False)
@click.pass_context
def cmd_status(ctx: click.Context, task_id: str | None) -> None:
    """Check a task now (the newest task if TASK_ID is omitted)."""
    settings: Settings = ctx.obj["settings"]
    token = _require_token(settings)
    try:
        task = asyncio.run(_fetch(settings, token, task_id, ctx.obj["verbose"]))
    except GenerationError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    console.print(_task_table([task], title="Task"))


@cli.command("list")
@click.pass_context
def cmd_list(ctx: click.Context) -> None:
    """List all generation tasks for this account."""
    settings: Settings = ctx.obj["settings"]
    token = _require_token(settings)
    try:
        tasks = asyncio.run(_list(settings, token, ctx.obj["verbose"]))
    except GenerationError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    if not tasks:
        console.print("[yellow]No tasks found.[/yellow]")
        return
    console.print(_task_table(tasks, title="Tasks"))


@cli.command("test-connection")
@click.pass_context
def cmd_test_connection(ctx: click.Context) -> None:
    """Check that the API is reachable with the stored token."""
    settings: Settings = ctx.obj["settings"]
    token = _require_token(settings)
    console.print("Testing API connection...")
    try:
        tasks = asyncio.run(_list(settings, token, ctx.obj["verbose"]))
    except GenerationError as exc:
        console.print(f"[red]Connection test failed: {exc}[/red]")
        sys.exit(1)
    console.print(
        f"[green]API connection successful![/green] Found {len(tasks)} existing videos."
    )


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
